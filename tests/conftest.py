"""Shared test fixtures."""

from __future__ import annotations

import pytest

from fakes import CHAPTER_ID, FakeAggregator
from treasury.adapters.db.facade import DB
from treasury.adapters.db.models import BankConnection


@pytest.fixture
def db() -> DB:
    """In-memory database with the full schema."""
    database = DB("sqlite:///:memory:")
    database.create_schema()
    return database


@pytest.fixture
def aggregator() -> FakeAggregator:
    return FakeAggregator()


@pytest.fixture
def connection(db: DB) -> BankConnection:
    """An active connection for CHAPTER_ID with no cursor yet."""
    return db.create_connection(
        chapter_id=CHAPTER_ID,
        item_id="item_1",
        access_token="access-sandbox-1",
        institution_id="ins_1",
        institution_name="First Campus Bank",
        created_by="user_treasurer",
    )
