"""Pytest configuration and fixtures for split-ledger tests."""

import pytest

from split_ledger.config import Settings
from split_ledger.db import Database
from split_ledger.service import LedgerService


@pytest.fixture
def settings(tmp_path):
    """Create settings pointing at a temporary database."""
    return Settings(database_path=tmp_path / "server.db", replica_name="test-server")


@pytest.fixture
def db(settings):
    """Create a temporary database."""
    db = Database(settings.database_path)
    yield db
    db.close()


@pytest.fixture
def service(settings, db):
    """Create a LedgerService instance."""
    return LedgerService(settings, db)
