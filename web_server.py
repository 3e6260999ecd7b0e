#!/usr/bin/env python3
"""
CLI tool to start the mobile backend FastAPI web server.

This script provides a convenient command-line interface to start the
FastAPI backend server using uvicorn.

Usage:
    python3 web_server.py                    # Start with defaults
    python3 web_server.py --host 0.0.0.0     # Listen on all interfaces
    python3 web_server.py --port 8080        # Use custom port
    python3 web_server.py --reload           # Enable auto-reload for development
    python3 web_server.py --with-workers     # Also run delivery workers in-process

Environment Variables:
    MOBILE_BACKEND_DB_URL: PostgreSQL database URL
    MOBILE_BACKEND_ENV: Environment (production/development, default: development)
    MOBILE_BACKEND_LOG_LEVEL: Log level (DEBUG/INFO/WARNING/ERROR/CRITICAL)
    MOBILE_BACKEND_START_WORKERS: Run the delivery pool and task dispatcher in-process
"""

import argparse
import os
import sys
from pathlib import Path

import uvicorn
from dotenv import load_dotenv


def parse_arguments() -> argparse.Namespace:
    """
    Parse command-line arguments.

    Returns:
        Parsed arguments namespace with host, port, reload and workers flags
    """
    parser = argparse.ArgumentParser(
        description="Start the mobile backend FastAPI web server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Start development server with auto-reload
  python3 web_server.py --reload

  # Start server on all interfaces with background delivery
  python3 web_server.py --host 0.0.0.0 --with-workers

Environment Variables:
  MOBILE_BACKEND_DB_URL         PostgreSQL database URL
  MOBILE_BACKEND_ENV            Environment (production/development)
  MOBILE_BACKEND_LOG_LEVEL      Log level (DEBUG/INFO/WARNING/ERROR/CRITICAL)
        """
    )

    parser.add_argument(
        "--host",
        type=str,
        default="127.0.0.1",
        help="Host to bind the server to (default: 127.0.0.1). "
             "Use 0.0.0.0 to listen on all interfaces."
    )

    parser.add_argument(
        "--port",
        type=int,
        default=8000,
        help="Port to bind the server to (default: 8000)"
    )

    parser.add_argument(
        "--reload",
        action="store_true",
        help="Enable auto-reload for development. Not recommended for production."
    )

    parser.add_argument(
        "--with-workers",
        action="store_true",
        help="Start the delivery worker pool and push-task dispatcher in the "
             "web process (same as MOBILE_BACKEND_START_WORKERS=true)."
    )

    return parser.parse_args()


def main() -> None:
    """
    Main entry point for the web server CLI tool.

    Exit Codes:
        0: Server stopped normally
    """
    args = parse_arguments()

    # Ensure the repo root is on sys.path so "mobile_backend.src.main" is importable
    repo_root = str(Path(__file__).parent)
    if repo_root not in sys.path:
        sys.path.insert(0, repo_root)

    # Explicit environment variables take precedence over mobile_backend/.env
    load_dotenv(Path(__file__).parent / "mobile_backend" / ".env", override=False)

    if args.with_workers:
        os.environ["MOBILE_BACKEND_START_WORKERS"] = "true"
        # internal tasks are POSTed back to this server
        os.environ.setdefault(
            "MOBILE_BACKEND_TASK_DISPATCH_URL", f"http://{args.host}:{args.port}"
        )

    print("\nStarting mobile backend web server...")
    print(f"Host: {args.host}")
    print(f"Port: {args.port}")
    print(f"Auto-reload: {'enabled' if args.reload else 'disabled'}")
    print(f"Background workers: {'enabled' if args.with_workers else 'disabled'}")
    print(f"\nAPI documentation: http://{args.host}:{args.port}/docs")
    print(f"Health check: http://{args.host}:{args.port}/health")
    print("\nPress CTRL+C to stop the server\n")

    try:
        uvicorn.run(
            "mobile_backend.src.main:app",
            host=args.host,
            port=args.port,
            reload=args.reload,
            log_level="info",
        )
    except KeyboardInterrupt:
        print("\n\nServer stopped by user (CTRL+C)")
        sys.exit(0)


if __name__ == "__main__":
    main()
