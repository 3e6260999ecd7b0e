"""
Pytest configuration and fixtures for mobile backend tests.

Provides shared fixtures for:
- Test database engine, sessions and session factory
- In-memory cache, test settings and caller headers
- Service instances wired to the test session
- Device subscription and record factories
- FastAPI test client with dependency overrides
"""

import os
from datetime import datetime
from unittest.mock import Mock

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Set test environment variables before importing app modules
os.environ['MOBILE_BACKEND_DB_URL'] = 'sqlite:///:memory:'
os.environ.setdefault('MOBILE_BACKEND_ENV', 'development')

from mobile_backend.src.config.settings import AppSettings
from mobile_backend.src.config.super_admins import generate_user_hash
from mobile_backend.src.models import Base, CloudEntity, DeviceSubscription, DeviceType
from mobile_backend.src.services.backend_config_service import BackendConfigService
from mobile_backend.src.services.device_subscription_service import DeviceSubscriptionService
from mobile_backend.src.services.entity_service import build_property_index
from mobile_backend.src.services.prospective_search_service import ProspectiveSearchService
from mobile_backend.src.services.push.gcm_sender import GcmSender
from mobile_backend.src.services.subscription_service import SubscriptionService
from mobile_backend.src.services.task_queue_service import TaskQueueService
from mobile_backend.src.utils.cache import MemoryCache


ADMIN_USER_ID = 'USER:admin'


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture(scope='function')
def test_db_engine():
    """Create an in-memory SQLite database engine for testing."""
    engine = create_engine(
        'sqlite:///:memory:',
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
    )

    # Enable foreign key constraints for SQLite
    # This must be set for each connection
    def _fk_pragma_on_connect(dbapi_con, con_record):
        dbapi_con.execute('pragma foreign_keys=ON')

    event.listen(engine, 'connect', _fk_pragma_on_connect)

    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture(scope='function')
def test_session_factory(test_db_engine):
    """Session factory bound to the test engine (used by workers)."""
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=test_db_engine
    )


@pytest.fixture(scope='function')
def test_db_session(test_session_factory):
    """Create a test database session."""
    session = test_session_factory()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


# ============================================================================
# Utility Fixtures
# ============================================================================

@pytest.fixture(scope='function')
def test_cache():
    """Create an in-memory MemoryCache for testing."""
    return MemoryCache(max_entries=1000)


@pytest.fixture(scope='function')
def test_settings():
    """Settings with push enabled and no waiting between worker steps."""
    return AppSettings().model_copy(update={
        'push_enabled': True,
        'gcm_key': 'test-gcm-key',
        'gcm_send_retries': 0,
        'apns_topic': 'com.example.mobile',
        'idle_wait_seconds': 0,
        'cooldown_seconds': 0,
        'lease_seconds': 1800,
        'lease_batch_size': 100,
        'freshness_window_hours': 4,
        'processed_task_retention_hours': 12,
        'sweep_page_size': 250,
        'allow_anonymous': True,
        'super_admin_hashes': generate_user_hash(ADMIN_USER_ID),
        'task_queue_secret': 'test-queue-secret',
    })


@pytest.fixture
def admin_headers():
    """Headers of a super admin caller."""
    return {'X-User-Id': ADMIN_USER_ID}


@pytest.fixture
def task_headers(test_settings):
    """Headers the push-task dispatcher sends to internal handlers."""
    return {
        'X-Task-Queue-Name': 'test-queue',
        'X-Task-Queue-Secret': test_settings.task_queue_secret,
    }


@pytest.fixture
def mock_gcm_sender():
    """GcmSender double; tests set ``send.return_value`` / ``side_effect``."""
    return Mock(spec=GcmSender)


# ============================================================================
# Service Fixtures
# ============================================================================

@pytest.fixture
def task_queue(test_db_session):
    return TaskQueueService(test_db_session)


@pytest.fixture
def device_subscriptions(test_db_session, test_cache, task_queue):
    return DeviceSubscriptionService(test_db_session, test_cache, task_queue)


@pytest.fixture
def backend_config(test_db_session, test_cache):
    return BackendConfigService(test_db_session, test_cache)


@pytest.fixture
def prospective_search(test_db_session):
    return ProspectiveSearchService(test_db_session)


@pytest.fixture
def subscription_service(test_db_session, device_subscriptions, prospective_search, backend_config):
    return SubscriptionService(
        test_db_session,
        device_subscriptions,
        prospective_search,
        backend_config,
    )


# ============================================================================
# Sample Data Factories
# ============================================================================

@pytest.fixture
def sample_device(test_db_session):
    """Factory for DeviceSubscription rows with a chosen updated_at."""
    def _create(
        device_id='device-1',
        device_type=DeviceType.ANDROID,
        subscription_ids=None,
        updated_at=None,
    ):
        record = DeviceSubscription(
            device_id=device_id,
            device_type=device_type,
            updated_at=updated_at or datetime.utcnow(),
        )
        record.subscription_ids = subscription_ids or []
        test_db_session.add(record)
        test_db_session.commit()
        test_db_session.refresh(record)
        return record
    return _create


@pytest.fixture
def sample_entity(test_db_session):
    """Factory for CloudEntity rows with their property index."""
    def _create(entity_id, properties, kind_name='Message', namespace=''):
        entity = CloudEntity(
            kind_name=kind_name,
            entity_id=entity_id,
            namespace=namespace,
            properties=dict(properties),
        )
        entity.indexed_properties = build_property_index(properties)
        test_db_session.add(entity)
        test_db_session.commit()
        test_db_session.refresh(entity)
        return entity
    return _create


# ============================================================================
# API Fixtures
# ============================================================================

@pytest.fixture
def test_client(test_db_session, test_session_factory, test_cache, test_settings):
    """Create a test client for FastAPI application."""
    from fastapi.testclient import TestClient
    from mobile_backend.src.main import app

    # Override dependencies
    def get_test_db():
        try:
            yield test_db_session
        finally:
            pass

    from mobile_backend.src.api.dependencies import (
        get_apns_sender,
        get_gcm_sender,
        get_memory_cache,
        get_session_factory,
    )
    from mobile_backend.src.config.settings import get_settings
    from mobile_backend.src.db.database import get_db

    app.dependency_overrides[get_db] = get_test_db
    app.dependency_overrides[get_settings] = lambda: test_settings
    app.dependency_overrides[get_memory_cache] = lambda: test_cache
    app.dependency_overrides[get_session_factory] = lambda: test_session_factory
    app.dependency_overrides[get_gcm_sender] = lambda: None
    app.dependency_overrides[get_apns_sender] = lambda: None

    with TestClient(app) as client:
        yield client

    # Clear overrides
    app.dependency_overrides.clear()
