import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock
from uuid import uuid4
from fastapi.testclient import TestClient

from slimbuddy.app.main import app
from slimbuddy.app.auth import get_db, get_current_user, get_key_service
from slimbuddy.app.connect_keys import ConnectKeyService
from slimbuddy.app.logging_config import KeyConflict, StoreUnavailable
from slimbuddy.app.rate_limiter import rate_limiter
from slimbuddy.app.schemas import CurrentUser


class FakeClock:
    """Callable clock that only moves when told to"""

    def __init__(self, start=None):
        self.now = start or datetime(2025, 1, 15, 9, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class InMemoryKeyStore:
    """KeyStore over a dict; can emulate the single-active-key unique index and failures"""

    def __init__(self, enforce_single_active=False):
        self.rows = {}
        self.enforce_single_active = enforce_single_active
        self.fail_revoke = False
        self.fail_insert = None
        self.fail_touch = False
        self.conflicts_remaining = 0
        self.touched = []
        self.lookups = 0

    def revoke_active_keys(self, owner_user_id):
        if self.fail_revoke:
            raise StoreUnavailable("revoke", "connection reset")
        count = 0
        for key_id, row in self.rows.items():
            if row.user_id == owner_user_id and row.active and not row.revoked:
                self.rows[key_id] = row.model_copy(update={"revoked": True})
                count += 1
        return count

    def insert_key(self, record):
        if self.fail_insert is not None:
            raise self.fail_insert
        if self.conflicts_remaining:
            self.conflicts_remaining -= 1
            raise KeyConflict("insert", "duplicate key value violates unique constraint")
        if self.enforce_single_active and self.active_keys(record.user_id):
            raise KeyConflict("insert", "duplicate key value violates unique constraint")
        key_id = str(uuid4())
        self.rows[key_id] = record.model_copy(update={"id": key_id})
        return key_id

    def find_by_hash(self, key_hash):
        self.lookups += 1
        return next((row for row in self.rows.values() if row.key_hash == key_hash), None)

    def touch_last_used(self, key_hash, at):
        if self.fail_touch:
            raise StoreUnavailable("touch", "timeout")
        for key_id, row in self.rows.items():
            if row.key_hash == key_hash:
                self.rows[key_id] = row.model_copy(update={"last_used_at": at})
        self.touched.append(key_hash)

    def active_keys(self, owner_user_id):
        return [r for r in self.rows.values() if r.user_id == owner_user_id and r.active and not r.revoked]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def key_store():
    return InMemoryKeyStore()


@pytest.fixture
def key_service(key_store, clock):
    return ConnectKeyService(key_store, clock=clock)


@pytest.fixture
def db():
    """MagicMock standing in for the supabase Client"""
    db = MagicMock()
    db.table.return_value.insert.return_value.execute.return_value = MagicMock(data=[{"id": "row-1"}])
    db.table.return_value.upsert.return_value.execute.return_value = MagicMock(data=[{"id": "row-1"}])
    return db


@pytest.fixture
def user():
    return CurrentUser(id="user-1", email="test@example.com")


@pytest.fixture(autouse=True)
def clean_app_state():
    rate_limiter.reset()
    yield
    app.dependency_overrides.clear()


@pytest.fixture
def client(db, user):
    """Client with a signed-in user and mocked database"""
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_current_user] = lambda: user
    return TestClient(app)


@pytest.fixture
def auth_client(db, key_service):
    """Client that goes through the real authentication dependencies"""
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_key_service] = lambda: key_service
    return TestClient(app)


@pytest.fixture
def session_headers(db):
    """Bearer headers for a Supabase session belonging to user-1"""
    db.auth.get_user.return_value = MagicMock(user=MagicMock(id="user-1", email="test@example.com"))
    return {"Authorization": "Bearer aaa.bbb.ccc"}

