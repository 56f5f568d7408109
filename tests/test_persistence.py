import pytest

from delivery_queue.errors import InvalidStateError, StoreUnavailableError
from delivery_queue.queue_db import QueueDb
from delivery_queue.sql import SqliteAdapter, create_adapter

NOW = 1_750_000_000


def record(recipient="ranger@example.org", **overrides):
    data = {
        "recipient": recipient,
        "cc": None,
        "bcc": ["audit@example.org"],
        "subject": "Shift roster",
        "html_body": None,
        "text_body": "See attached roster",
        "template_id": None,
        "priority": 2,
        "status": "pending",
        "scheduled_ts": NOW,
        "attempts": 0,
        "max_attempts": 3,
        "error_message": None,
        "metadata": {"park": "stelvio"},
        "created_ts": NOW,
        "updated_ts": NOW,
        "sent_ts": None,
    }
    data.update(overrides)
    return data


async def make_db(tmp_path) -> QueueDb:
    db = QueueDb(str(tmp_path / "queue.db"))
    await db.init_db()
    return db


@pytest.mark.asyncio
async def test_entries_round_trip_json_columns(tmp_path):
    db = await make_db(tmp_path)

    entry_id = await db.entries.add(record())
    row = await db.entries.get(entry_id)

    assert row["bcc"] == ["audit@example.org"]
    assert row["cc"] is None
    assert row["metadata"] == {"park": "stelvio"}
    assert await db.entries.get(entry_id + 1) is None


@pytest.mark.asyncio
async def test_fetch_due_orders_and_filters(tmp_path):
    db = await make_db(tmp_path)
    low = await db.entries.add(record("low@example.org", priority=3))
    urgent_late = await db.entries.add(record("u2@example.org", priority=0, created_ts=NOW + 5))
    urgent = await db.entries.add(record("u1@example.org", priority=0))
    await db.entries.add(record("future@example.org", priority=0, scheduled_ts=NOW + 60))
    await db.entries.add(record("spent@example.org", attempts=3))
    await db.entries.add(record("done@example.org", status="sent"))

    due = await db.entries.fetch_due(now_ts=NOW, limit=10)
    assert [row["id"] for row in due] == [urgent, urgent_late, low]

    limited = await db.entries.fetch_due(now_ts=NOW, limit=1)
    assert [row["id"] for row in limited] == [urgent]


@pytest.mark.asyncio
async def test_transitions_are_conditional(tmp_path):
    db = await make_db(tmp_path)
    entry_id = await db.entries.add(record(max_attempts=1))

    assert await db.entries.claim(entry_id, NOW + 1) is True
    # Already sending: a second claim loses
    assert await db.entries.claim(entry_id, NOW + 1) is False
    assert await db.entries.cancel(entry_id, NOW + 1) is False

    assert await db.entries.reschedule(entry_id, "busy", NOW + 300, NOW + 1) is True
    row = await db.entries.get(entry_id)
    assert row["status"] == "pending"
    assert row["attempts"] == 1
    assert row["scheduled_ts"] == NOW + 300
    assert row["error_message"] == "busy"

    # Attempt budget spent: no further claims
    assert await db.entries.claim(entry_id, NOW + 400) is False
    assert await db.entries.fetch_due(now_ts=NOW + 400, limit=10) == []


@pytest.mark.asyncio
async def test_reset_for_retry_only_from_failed(tmp_path):
    db = await make_db(tmp_path)
    entry_id = await db.entries.add(record())

    assert await db.entries.reset_for_retry(entry_id, NOW) is False

    await db.entries.claim(entry_id, NOW)
    await db.entries.mark_failed(entry_id, "rejected", NOW + 1)
    assert await db.entries.reset_for_retry(entry_id, NOW + 10) is True

    row = await db.entries.get(entry_id)
    assert row["status"] == "pending"
    assert row["attempts"] == 0
    assert row["error_message"] is None
    assert row["scheduled_ts"] == NOW + 10


@pytest.mark.asyncio
async def test_illegal_transition_is_refused_before_touching_the_store(tmp_path):
    db = await make_db(tmp_path)
    from delivery_queue.models import QueueStatus

    with pytest.raises(InvalidStateError):
        await db.entries._transition(1, QueueStatus.SENT, QueueStatus.PENDING, "updated_ts = 0", {})


@pytest.mark.asyncio
async def test_count_by_status_and_pending(tmp_path):
    db = await make_db(tmp_path)
    await db.entries.add(record())
    await db.entries.add(record())
    await db.entries.add(record(status="failed"))

    assert await db.entries.count_by_status() == {"pending": 2, "failed": 1}
    assert await db.entries.count_pending() == 2


@pytest.mark.asyncio
async def test_list_page_newest_first(tmp_path):
    db = await make_db(tmp_path)
    ids = [await db.entries.add(record(created_ts=NOW + i)) for i in range(4)]

    rows = await db.entries.list_page(limit=2, offset=1)

    assert [row["id"] for row in rows] == [ids[2], ids[1]]


@pytest.mark.asyncio
async def test_lease_acquire_renew_release(tmp_path):
    db = await make_db(tmp_path)
    lease = db.lease

    assert await lease.acquire("tick", "a", NOW, 60) is True
    assert await lease.acquire("tick", "b", NOW + 30, 60) is False
    # Re-entrant for the same holder
    assert await lease.acquire("tick", "a", NOW + 30, 60) is True
    assert await lease.renew("tick", "b", NOW + 30, 60) is False
    assert await lease.renew("tick", "a", NOW + 50, 60) is True

    # Renewed until NOW + 110
    assert await lease.acquire("tick", "b", NOW + 100, 60) is False
    assert await lease.acquire("tick", "b", NOW + 110, 60) is True
    assert await lease.current_holder("tick") == "b"

    await lease.release("tick", "a")
    assert await lease.current_holder("tick") == "b"
    await lease.release("tick", "b")
    assert await lease.current_holder("tick") is None
    assert await lease.acquire("tick", "a", NOW + 111, 60) is True


@pytest.mark.asyncio
async def test_instance_config_upsert(tmp_path):
    db = await make_db(tmp_path)

    assert await db.config.get("paused", "0") == "0"
    await db.config.set("paused", "1")
    await db.config.set("paused", "0")
    await db.config.set("owner", "back-office")

    assert await db.config.get("paused") == "0"
    assert await db.config.get("owner") == "back-office"
    assert await db.config.get("missing") is None


@pytest.mark.asyncio
async def test_template_update_fields_and_remove(tmp_path):
    db = await make_db(tmp_path)
    template_id = await db.templates.add({"name": "roster", "subject": "Roster", "text": "x"}, created_ts=NOW)
    other_id = await db.templates.add({"name": "other", "subject": "Other", "text": "y"}, created_ts=NOW)

    assert await db.templates.update_fields(template_id, {"subject": "Roster {{week}}", "active": False})
    row = await db.templates.get(template_id)
    assert row["subject"] == "Roster {{week}}"
    assert row["active"] == 0
    assert row["text"] == "x"
    assert (await db.templates.get(other_id))["subject"] == "Other"

    assert await db.templates.update_fields(template_id, {}) is True
    assert await db.templates.update_fields(999, {"name": "ghost"}) is False

    assert await db.templates.remove(template_id) is True
    assert await db.templates.remove(template_id) is False
    assert [t["id"] for t in await db.templates.list_all()] == [other_id]


@pytest.mark.asyncio
async def test_delivery_log_prune(tmp_path):
    db = await make_db(tmp_path)
    for offset in (0, 10, 20):
        await db.delivery_log.append(
            entry_id=1,
            outcome="sent",
            recipient="ranger@example.org",
            subject="s",
            template_id=None,
            attempts=1,
            error_message=None,
            created_ts=NOW + offset,
        )

    assert await db.delivery_log.delete_before(NOW + 10) == 1
    assert [row["created_ts"] for row in await db.delivery_log.list_for_entry(1)] == [NOW + 10, NOW + 20]


@pytest.mark.asyncio
async def test_sync_schema_adds_missing_columns(tmp_path):
    path = str(tmp_path / "old.db")
    adapter = SqliteAdapter(path)
    await adapter.execute(
        "CREATE TABLE queue_entries (id INTEGER PRIMARY KEY AUTOINCREMENT, recipient TEXT NOT NULL, "
        "subject TEXT NOT NULL, status TEXT NOT NULL DEFAULT 'pending')"
    )
    await adapter.insert(
        "INSERT INTO queue_entries (recipient, subject) VALUES (:recipient, :subject)",
        {"recipient": "old@example.org", "subject": "legacy"},
    )

    db = QueueDb(path)
    await db.init_db()

    columns = {row["name"] for row in await adapter.fetch_all("PRAGMA table_info(queue_entries)")}
    assert {"priority", "scheduled_ts", "metadata", "sent_ts"} <= columns
    row = await db.entries.get(1)
    assert row["recipient"] == "old@example.org"
    assert row["priority"] == 2
    assert row["attempts"] == 0


def test_create_adapter_formats(tmp_path):
    assert isinstance(create_adapter(str(tmp_path / "a.db")), SqliteAdapter)
    assert create_adapter("sqlite:/tmp/x.db").db_path == "/tmp/x.db"
    with pytest.raises(ValueError):
        create_adapter("postgresql://user@host/db")


@pytest.mark.asyncio
async def test_unreachable_store_maps_to_store_unavailable(tmp_path):
    db = QueueDb(str(tmp_path / "no" / "such" / "dir.db"))

    with pytest.raises(StoreUnavailableError):
        await db.init_db()
