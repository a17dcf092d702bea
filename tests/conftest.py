import os
from types import SimpleNamespace

os.environ.setdefault("DB_BACKEND", "sqlite")
os.environ.setdefault("VECTOR_BACKEND", "none")
os.environ.setdefault("TOMBSTONE_SWEEP_INTERVAL_SECONDS", "0")

import pytest
from sqlalchemy.orm import sessionmaker

from core.audit import set_audit_sink
from core.context import (
    AUTH_API_KEY,
    AUTH_JWT,
    RequestContext,
    reset_current_request_context,
    set_current_request_context,
)
from core.db import DB, build_engine
from core.errors import DependencyDegraded
from core.models import Base
from core.notifications import Notifier, set_notifier
from core.services.graph_export import invalidate_export_cache
from core.services.session_context import set_token_estimator
from core.vector_index import VectorIndex, set_vector_index


class FakeVectorIndex(VectorIndex):
    """In-memory index; ids in ``fail_ids`` (or everything when ``down``) raise."""

    name = "fake"

    def __init__(self):
        self.stored = {}
        self.deleted = []
        self.search_hits = []
        self.fail_ids = set()
        self.down = False

    def _check(self, external_id):
        if self.down or external_id in self.fail_ids:
            raise DependencyDegraded(f"vector index unavailable for {external_id}")

    def store(self, record):
        self._check(record["id"])
        self.stored[record["id"]] = record

    def search(self, query, tenant_id, limit=20):
        if self.down:
            raise DependencyDegraded("vector index unavailable")
        return list(self.search_hits)[:limit]

    def delete(self, external_id):
        self._check(external_id)
        self.stored.pop(external_id, None)
        self.deleted.append(external_id)


class RecordingNotifier(Notifier):
    def __init__(self, fail=False):
        self.fail = fail
        self.messages = []

    def send(self, message):
        if self.fail:
            raise RuntimeError("webhook unreachable")
        self.messages.append(message)


@pytest.fixture
def server_db(tmp_path):
    db_path = tmp_path / "neural.sqlite"
    engine = build_engine(f"sqlite:///{db_path}")
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine)
    previous_engine = DB.engine
    previous_session = DB.SessionLocal
    DB.engine = engine
    DB.SessionLocal = SessionLocal
    invalidate_export_cache()
    try:
        yield SessionLocal
    finally:
        invalidate_export_cache()
        DB.engine = previous_engine
        DB.SessionLocal = previous_session
        engine.dispose()


@pytest.fixture
def db_session(server_db):
    db = server_db()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def engine_ports(server_db):
    index = FakeVectorIndex()
    notifier = RecordingNotifier()
    previous_index = set_vector_index(index)
    previous_notifier = set_notifier(notifier)
    previous_sink = set_audit_sink(None)
    set_token_estimator(None)
    try:
        yield SimpleNamespace(index=index, notifier=notifier)
    finally:
        set_token_estimator(None)
        set_audit_sink(previous_sink)
        set_notifier(previous_notifier)
        set_vector_index(previous_index)


@pytest.fixture
def dev_context():
    return RequestContext.dev(tenant_id="tenant-a")


@pytest.fixture
def make_context():
    def factory(kind="dev", tenant_id="tenant-a", roles=(), scopes=(), user_id=None, api_key_id=None):
        if kind == "dev":
            return RequestContext.dev(tenant_id=tenant_id)
        if kind == "api_key":
            return RequestContext.from_values(
                tenant_id,
                AUTH_API_KEY,
                user_id=user_id,
                api_key_id=api_key_id or "key-1",
                scopes=scopes,
            )
        if kind == "jwt":
            return RequestContext.from_values(tenant_id, AUTH_JWT, user_id=user_id or "user-1", roles=roles)
        raise ValueError(f"unknown context kind {kind}")
    return factory


@pytest.fixture
def current_context(dev_context):
    token = set_current_request_context(dev_context)
    try:
        yield dev_context
    finally:
        reset_current_request_context(token)
