"""
Global pytest Configuration and Fixtures

Every test gets a fresh in-memory record store, an audit trail writing to an
in-memory sink, an isolated Prometheus registry and a wired
``DirectoryAdminService``. Integration tests additionally get a Flask
application built by ``create_app('testing')`` around the same store.
"""

from pathlib import Path
from typing import Callable, List

import pytest

from directory_ops.app import create_app
from directory_ops.auth.audit import AuditTrail, InMemoryAuditSink
from directory_ops.auth.authorization import StaticAdminAuthorizer
from directory_ops.business.models import BusinessRecord, ChildRecord
from directory_ops.business.services import DirectoryAdminService
from directory_ops.config.settings import EngineSettings
from directory_ops.data.store import InMemoryRecordStore
from directory_ops.monitoring.metrics import DirectoryOpsMetrics
from tests.fixtures import ADMIN_ACTOR
from tests.fixtures.factory_fixtures import BusinessRecordFactory, ChildRecordFactory


def pytest_collection_modifyitems(config, items):
    """Mark tests by directory so ``-m unit`` and ``-m integration`` work."""
    for item in items:
        parts = Path(str(item.fspath)).parts
        if 'unit' in parts:
            item.add_marker(pytest.mark.unit)
        elif 'integration' in parts:
            item.add_marker(pytest.mark.integration)


@pytest.fixture
def admin() -> str:
    return ADMIN_ACTOR


@pytest.fixture
def store() -> InMemoryRecordStore:
    return InMemoryRecordStore()


@pytest.fixture
def audit_sink() -> InMemoryAuditSink:
    return InMemoryAuditSink()


@pytest.fixture
def metrics() -> DirectoryOpsMetrics:
    return DirectoryOpsMetrics()


@pytest.fixture
def audit(audit_sink, metrics):
    trail = AuditTrail(audit_sink, metrics=metrics, flush_timeout=2.0)
    yield trail
    trail.shutdown()


@pytest.fixture
def settings() -> EngineSettings:
    return EngineSettings(batch_timeout_seconds=5.0)


@pytest.fixture
def service(store, audit, settings, metrics) -> DirectoryAdminService:
    return DirectoryAdminService(
        store=store,
        authorizer=StaticAdminAuthorizer([ADMIN_ACTOR]),
        audit=audit,
        settings=settings,
        metrics=metrics,
    )


@pytest.fixture
def add_business(store) -> Callable[..., BusinessRecord]:
    """Insert a factory-built business and return it."""

    def _add(**overrides) -> BusinessRecord:
        return store.insert_business(BusinessRecordFactory(**overrides))

    return _add


@pytest.fixture
def add_businesses(add_business) -> Callable[..., List[BusinessRecord]]:
    def _add_many(count: int, **overrides) -> List[BusinessRecord]:
        return [add_business(**overrides) for _ in range(count)]

    return _add_many


@pytest.fixture
def add_child(store) -> Callable[..., ChildRecord]:
    def _add(business_id: str, **overrides) -> ChildRecord:
        return store.insert_child(ChildRecordFactory(business_id=business_id, **overrides))

    return _add


@pytest.fixture
def app(store):
    flask_app = create_app('testing', store=store)
    yield flask_app
    flask_app.extensions['directory_ops'].shutdown()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def admin_headers():
    return {'X-Actor-Id': ADMIN_ACTOR}
