"""
Pytest configuration and shared fixtures.
"""

import os
import tempfile
from datetime import datetime, timedelta

os.environ.setdefault(
    "BITESPEED_DB_PATH", os.path.join(tempfile.mkdtemp(prefix="bitespeed-"), "contacts.db")
)

import pytest

from contact_store import CheckedContactStore, SqliteContactStore
from db_models import LinkPrecedence
from reconciler import Reconciler

BASE_TIME = datetime(2023, 4, 1, 0, 0, 0)


@pytest.fixture
def sqlite_store(tmp_path) -> SqliteContactStore:
    """Fresh SQLite store with the schema in place."""
    store = SqliteContactStore(str(tmp_path / "contacts.db"))
    store.init_schema()
    return store


@pytest.fixture
def store(sqlite_store) -> CheckedContactStore:
    return CheckedContactStore(sqlite_store)


@pytest.fixture
def reconciler(store) -> Reconciler:
    return Reconciler(store, cascade=False)


@pytest.fixture
def seed(store):
    """Insert a row directly, minutes after BASE_TIME."""

    def _seed(email=None, phone=None, linked_id=None, precedence=LinkPrecedence.PRIMARY,
              minutes=0, contact_id=None):
        return store.create(
            email, phone, linked_id, precedence,
            contact_id=contact_id,
            created_at=BASE_TIME + timedelta(minutes=minutes),
        )

    return _seed
