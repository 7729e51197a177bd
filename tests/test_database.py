"""SQLModel-backed datastore for operation status records."""

import pytest

from core.config import Settings
from core.database import Database


@pytest.fixture
async def database(tmp_path):
    db = Database(Settings(database_url=f"sqlite+aiosqlite:///{tmp_path}/status.db"))
    await db.startup()
    yield db
    await db.shutdown()


async def test_persist_and_fetch(database):
    record = {"id": "ai_1", "type": "embedding", "user_id": "u-1", "status": "pending"}

    assert await database.persist("ai_operation:ai_1", record) is True
    assert await database.fetch("ai_operation:ai_1") == record
    assert await database.fetch("ai_operation:missing") is None


async def test_persist_replaces_existing(database):
    await database.persist("k", {"id": "ai_1", "type": "embedding", "status": "pending"})
    await database.persist("k", {"id": "ai_1", "type": "embedding", "status": "completed",
                                 "result": [0.1, 0.2]})

    stored = await database.fetch("k")

    assert stored["status"] == "completed"
    assert stored["result"] == [0.1, 0.2]


async def test_list_user_records_newest_first(database):
    await database.persist("a", {"id": "a", "type": "embedding", "user_id": "u-1", "status": "completed"})
    await database.persist("b", {"id": "b", "type": "bias_detection", "user_id": "u-1", "status": "pending"})
    await database.persist("c", {"id": "c", "type": "embedding", "user_id": "u-2", "status": "pending"})
    await database.persist("a", {"id": "a", "type": "embedding", "user_id": "u-1", "status": "failed"})

    records = await database.list_user_records("u-1")

    assert [r["id"] for r in records] == ["a", "b"]
    assert records[0]["status"] == "failed"


async def test_cleanup_old_records(database):
    await database.persist("a", {"id": "a", "type": "embedding"})
    await database.persist("b", {"id": "b", "type": "embedding"})

    assert await database.cleanup_old_records(max_age_hours=24) == 0
    assert await database.cleanup_old_records(max_age_hours=0) == 2
    assert await database.fetch("a") is None


async def test_uninitialized_database_fails_soft():
    db = Database(Settings(database_url="sqlite+aiosqlite:///:memory:"))

    assert await db.persist("k", {"id": "k"}) is False
    assert await db.fetch("k") is None
