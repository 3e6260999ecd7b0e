"""
Mobile backend CLI entry point.

Runs the background parts of the push pipeline outside the web process
and exposes the cron jobs for manual or scheduled use.

Commands:
    workers                       Delivery worker pool + push-task dispatcher
    cleanup-notifications         Purge processed-notification markers
    process-feedback              Queue removal of devices reported inactive
    clear-subscriptions           Start the clear-all sweep
    purge-expired-subscriptions   Drop continuous queries past their duration
"""

import signal
import sys
import threading

import click
import httpx

from mobile_backend.src.config.settings import AppSettings, get_settings
from mobile_backend.src.db.database import SessionLocal, dispose_engine
from mobile_backend.src.services.backend_config_service import BackendConfigService
from mobile_backend.src.services.delivery_worker import DeliveryWorkerPool
from mobile_backend.src.services.device_subscription_service import DeviceSubscriptionService
from mobile_backend.src.services.prospective_search_service import ProspectiveSearchService
from mobile_backend.src.services.push.apns_sender import ApnsSender
from mobile_backend.src.services.push.feedback_store import ApnsFeedbackStore
from mobile_backend.src.services.push_cleanup_service import (
    PushCleanupService,
    purge_processed_tasks,
)
from mobile_backend.src.services.push_task_dispatcher import PushTaskDispatcher
from mobile_backend.src.services.subscription_service import SubscriptionService
from mobile_backend.src.services.task_queue_service import TaskQueueService
from mobile_backend.src.utils.cache import MemoryCache, init_cache
from mobile_backend.src.utils.logging_config import init_logging


def _subscription_service(db, settings: AppSettings, cache: MemoryCache) -> SubscriptionService:
    task_queue = TaskQueueService(db)
    device_subscriptions = DeviceSubscriptionService(
        db, cache, task_queue, page_size=settings.sweep_page_size
    )
    return SubscriptionService(
        db,
        device_subscriptions,
        ProspectiveSearchService(db),
        BackendConfigService(db, cache),
    )


@click.group()
@click.pass_context
def cli(ctx: click.Context) -> None:
    """
    Mobile backend - continuous queries and push delivery.

    Use 'mobile-backend COMMAND --help' for more information on a command.
    """
    ctx.ensure_object(dict)
    init_logging()
    ctx.obj["settings"] = get_settings()
    ctx.call_on_close(dispose_engine)


@cli.command()
@click.option(
    "--workers", "worker_count", type=int, default=None,
    help="Number of delivery workers (default: MOBILE_BACKEND_DELIVERY_WORKERS)",
)
@click.option(
    "--no-dispatcher", is_flag=True, default=False,
    help="Do not deliver internal push tasks from this process",
)
@click.pass_context
def workers(ctx: click.Context, worker_count, no_dispatcher: bool) -> None:
    """
    Run the delivery worker pool until stopped.

    Workers lease notification-delivery tasks and send them over APNS.
    Unless --no-dispatcher is given, the push-task dispatcher runs too,
    POSTing queued internal tasks to MOBILE_BACKEND_TASK_DISPATCH_URL.

    The process runs until stopped with Ctrl+C or SIGTERM.

    Example:

        mobile-backend workers --workers 4
    """
    settings: AppSettings = ctx.obj["settings"]
    if worker_count is not None:
        settings = settings.model_copy(update={"delivery_workers": worker_count})

    if not settings.apns_configured:
        click.echo(
            click.style("Error: ", fg="red", bold=True)
            + "MOBILE_BACKEND_APNS_CERT_PATH is not set."
        )
        ctx.exit(1)

    shutdown_event = threading.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, lambda signum, frame: shutdown_event.set())

    cache = init_cache(settings.cache_max_entries)
    pool = DeliveryWorkerPool.from_settings(settings, SessionLocal, cache, shutdown_event)

    dispatcher = None
    dispatch_client = None
    if not no_dispatcher:
        dispatch_client = httpx.Client(base_url=settings.task_dispatch_url)
        dispatcher = PushTaskDispatcher(SessionLocal, dispatch_client, settings, shutdown_event)

    click.echo(f"Starting {settings.delivery_workers} delivery workers...")
    if dispatcher is not None:
        click.echo(f"  Task dispatch URL: {settings.task_dispatch_url}")
    click.echo()
    click.echo("Press Ctrl+C to stop")

    pool.start()
    if dispatcher is not None:
        dispatcher.start()
    try:
        while not shutdown_event.wait(1.0):
            pass
    finally:
        click.echo("Stopping workers...")
        if dispatcher is not None:
            dispatcher.stop(timeout=30)
        pool.stop(timeout=30)
        if dispatch_client is not None:
            dispatch_client.close()


@cli.command("cleanup-notifications")
@click.pass_context
def cleanup_notifications(ctx: click.Context) -> None:
    """Delete processed-notification markers older than the retention window."""
    db = SessionLocal()
    try:
        deleted = purge_processed_tasks(db, ctx.obj["settings"])
    finally:
        db.close()
    click.echo(f"Deleted {deleted} processed notification records")


@cli.command("process-feedback")
@click.pass_context
def process_feedback(ctx: click.Context) -> None:
    """Queue removal of devices the provider reported inactive."""
    settings: AppSettings = ctx.obj["settings"]
    if not settings.apns_configured:
        click.echo("APNS is not configured; nothing to do")
        return

    sender = ApnsSender.from_settings(settings, ApnsFeedbackStore(SessionLocal))
    cache = init_cache(settings.cache_max_entries)
    db = SessionLocal()
    try:
        subscriptions = _subscription_service(db, settings, cache)
        service = PushCleanupService(
            db,
            settings,
            subscriptions,
            subscriptions.device_subscriptions,
            TaskQueueService(db),
        )
        count = service.process_feedback(sender)
    finally:
        db.close()
        sender.stop_connection()
    click.echo(f"Queued removal of {count} inactive devices")


@cli.command("clear-subscriptions")
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def clear_subscriptions(ctx: click.Context, yes: bool) -> None:
    """
    Start removal of every device subscription.

    The sweep itself runs through the subscription-removal queue, so a
    push-task dispatcher must be running for it to make progress.
    """
    if not yes and not click.confirm("Remove all device subscriptions?"):
        click.echo("Aborted")
        sys.exit(1)

    settings: AppSettings = ctx.obj["settings"]
    cache = init_cache(settings.cache_max_entries)
    db = SessionLocal()
    try:
        _subscription_service(db, settings, cache).clear_all_subscription_and_device_entity()
    finally:
        db.close()
    click.echo("Subscription removal started")


@cli.command("purge-expired-subscriptions")
def purge_expired_subscriptions() -> None:
    """Delete continuous queries whose duration has elapsed."""
    db = SessionLocal()
    try:
        purged = ProspectiveSearchService(db).purge_expired()
    finally:
        db.close()
    click.echo(f"Purged {purged} expired continuous queries")


def main() -> None:
    """Main entry point for CLI."""
    cli()


if __name__ == "__main__":
    main()
