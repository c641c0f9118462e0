"""Tests for PostgresRemoteStore: item writes under RLS and the NOTIFY change feed."""

from __future__ import annotations

import asyncio
from uuid import uuid4

import asyncpg
import pytest

from backend import db
from backend.repos.item_repo import PostgresRemoteStore, _translate_errors
from engine.kernel.errors import AuthorizationError, NotFoundError, SyncError, ValidationError
from engine.kernel.types import FieldChanges, ItemDraft

pytestmark = pytest.mark.asyncio(loop_scope="session")


async def wait_for(predicate, timeout=5.0):
    """Poll until predicate() holds; notifications arrive on the listener connection."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.02)


# ============================================================================
# Reads and writes
# ============================================================================


async def test_create_record(list_id, editor_id):
    """Test creating an item as an editor."""
    store = PostgresRemoteStore(editor_id)

    record = await store.create_record(list_id, ItemDraft(text="Milk", quantity=2), position=0, client_token="t-1")

    assert record.text == "Milk"
    assert record.quantity == 2
    assert record.version == 1
    assert record.created_by == editor_id
    assert record.created_by_name == "Editor"
    assert record.client_token == "t-1"


async def test_create_records_in_order(list_id, owner_id):
    """Test bulk create assigns consecutive positions."""
    store = PostgresRemoteStore(owner_id)
    drafts = [ItemDraft(text=t) for t in ("Milk", "Eggs", "Bread")]

    created = await store.create_records(list_id, drafts, start_position=4, client_token="t-1")

    assert [r.text for r in created] == ["Milk", "Eggs", "Bread"]
    assert [r.position for r in created] == [4, 5, 6]
    assert [r.id for r in await store.list_records(list_id)] == [r.id for r in created]


async def test_update_bumps_version(list_id, editor_id):
    """Test an update is stamped with a new version and the writer's token."""
    store = PostgresRemoteStore(editor_id)
    record = await store.create_record(list_id, ItemDraft(text="Milk"), position=0, client_token="t-1")

    updated = await store.update_record(record.id, FieldChanges(text="Oat milk", notes=None), client_token="t-2")

    assert updated.text == "Oat milk"
    assert updated.version == 2
    assert updated.client_token == "t-2"
    assert updated.updated_at >= record.updated_at
    fetched = await store.get_record(record.id)
    assert fetched.text == "Oat milk"


async def test_check_constraint_maps_to_validation_error(list_id, editor_id):
    store = PostgresRemoteStore(editor_id)
    record = await store.create_record(list_id, ItemDraft(text="Milk"), position=0, client_token="t-1")

    with pytest.raises(ValidationError):
        await store.update_record(record.id, FieldChanges(quantity=5000), client_token="t-2")


async def test_soft_delete(list_id, editor_id):
    """Test soft-deleted items disappear from reads and cannot be deleted twice."""
    store = PostgresRemoteStore(editor_id)
    record = await store.create_record(list_id, ItemDraft(text="Milk"), position=0, client_token="t-1")

    await store.soft_delete_record(record.id, client_token="t-2")

    assert await store.list_records(list_id) == []
    with pytest.raises(NotFoundError):
        await store.get_record(record.id)
    with pytest.raises(NotFoundError):
        await store.soft_delete_record(record.id, client_token="t-3")


async def test_batch_update_positions_skips_unchanged_rows(list_id, editor_id):
    store = PostgresRemoteStore(editor_id)
    milk, eggs, bread = await store.create_records(
        list_id, [ItemDraft(text=t) for t in ("Milk", "Eggs", "Bread")], start_position=0, client_token="t-1"
    )

    await store.batch_update_positions(list_id, {bread.id: 0, eggs.id: 1, milk.id: 2}, client_token="t-2")

    records = await store.list_records(list_id)
    assert [r.text for r in records] == ["Bread", "Eggs", "Milk"]
    versions = {r.text: r.version for r in records}
    assert versions == {"Bread": 2, "Eggs": 1, "Milk": 2}


async def test_batch_update_positions_unknown_id(list_id, editor_id):
    store = PostgresRemoteStore(editor_id)
    (milk,) = await store.create_records(list_id, [ItemDraft(text="Milk")], start_position=0, client_token="t-1")

    with pytest.raises(NotFoundError):
        await store.batch_update_positions(list_id, {milk.id: 1, str(uuid4()): 0}, client_token="t-2")

    assert (await store.get_record(milk.id)).position == 0


async def test_clear_done_returns_count(list_id, editor_id):
    store = PostgresRemoteStore(editor_id)
    milk, eggs, bread = await store.create_records(
        list_id, [ItemDraft(text=t) for t in ("Milk", "Eggs", "Bread")], start_position=0, client_token="t-1"
    )
    await store.update_record(milk.id, FieldChanges(done=True), client_token="t-2")
    await store.update_record(bread.id, FieldChanges(done=True), client_token="t-3")

    assert await store.clear_done(list_id, client_token="t-4") == 2
    assert [r.text for r in await store.list_records(list_id)] == ["Eggs"]
    assert await store.clear_done(list_id, client_token="t-5") == 0


async def test_list_members_owner_first(list_id, owner_id, editor_id, viewer_id):
    store = PostgresRemoteStore(viewer_id)

    members = await store.list_members(list_id)

    assert members[0].user_id == owner_id
    assert {m.user_id: m.role for m in members} == {owner_id: "owner", editor_id: "editor", viewer_id: "viewer"}
    assert {m.label for m in members} == {"Owner", "Editor", "Viewer"}


# ============================================================================
# Access control
# ============================================================================


async def test_viewer_cannot_write(list_id, owner_id, viewer_id):
    """Test a viewer reads the list but every write is refused."""
    record = await PostgresRemoteStore(owner_id).create_record(
        list_id, ItemDraft(text="Milk"), position=0, client_token="t-1"
    )
    store = PostgresRemoteStore(viewer_id)

    assert [r.id for r in await store.list_records(list_id)] == [record.id]
    with pytest.raises(AuthorizationError):
        await store.create_record(list_id, ItemDraft(text="Eggs"), position=1, client_token="t-2")
    with pytest.raises(AuthorizationError):
        await store.update_record(record.id, FieldChanges(done=True), client_token="t-3")
    with pytest.raises(AuthorizationError):
        await store.clear_done(list_id, client_token="t-4")


async def test_outsider_cannot_see_list(list_id, owner_id, outsider_id):
    """Verify that a non-member cannot read or touch the list's items."""
    record = await PostgresRemoteStore(owner_id).create_record(
        list_id, ItemDraft(text="Secret"), position=0, client_token="t-1"
    )
    store = PostgresRemoteStore(outsider_id)

    with pytest.raises(AuthorizationError):
        await store.list_records(list_id)
    with pytest.raises(AuthorizationError):
        await store.list_members(list_id)
    with pytest.raises(NotFoundError):
        await store.get_record(record.id)
    with pytest.raises(NotFoundError):
        await store.update_record(record.id, FieldChanges(text="Mine"), client_token="t-2")


async def test_malformed_id_is_not_found(editor_id):
    with pytest.raises(NotFoundError):
        await PostgresRemoteStore(editor_id).get_record("not-a-uuid")


async def test_unmapped_postgres_error_is_a_sync_error():
    with pytest.raises(SyncError) as exc:
        with _translate_errors():
            raise asyncpg.exceptions.InvalidParameterValueError("payload string too long")
    assert "InvalidParameterValueError" in str(exc.value)


# ============================================================================
# Change feed
# ============================================================================


async def test_subscription_receives_changes(list_id, owner_id, editor_id):
    """Test insert, update and soft delete arrive as change events in order."""
    events = []
    listener = PostgresRemoteStore(editor_id)
    handle = await listener.subscribe(list_id, events.append)
    try:
        writer = PostgresRemoteStore(owner_id)
        record = await writer.create_record(list_id, ItemDraft(text="Milk"), position=0, client_token="t-1")
        await writer.update_record(record.id, FieldChanges(done=True), client_token="t-2")
        await writer.soft_delete_record(record.id, client_token="t-3")

        await wait_for(lambda: len(events) == 3)
    finally:
        await listener.unsubscribe(handle)

    assert [e.kind for e in events] == ["insert", "update", "delete"]
    assert [e.record.client_token for e in events] == ["t-1", "t-2", "t-3"]
    assert [e.record.version for e in events] == [1, 2, 3]
    assert events[0].record.created_by_name == "Owner"
    assert events[1].previous.done is False


async def test_subscription_ignores_other_lists(list_id, owner_id, editor_id, outsider_id):
    async with db.system_conn() as conn:
        other_list_id = await conn.fetchval(
            "INSERT INTO lists (name, owner_id) VALUES ($1, $2) RETURNING id", "Private", outsider_id
        )
        await conn.execute(
            "INSERT INTO list_members (list_id, user_id, role) VALUES ($1, $2, 'owner')", other_list_id, outsider_id
        )

    events = []
    listener = PostgresRemoteStore(editor_id)
    handle = await listener.subscribe(list_id, events.append)
    try:
        await PostgresRemoteStore(outsider_id).create_record(
            other_list_id, ItemDraft(text="Private"), position=0, client_token="o-1"
        )
        writer = PostgresRemoteStore(owner_id)
        await writer.create_record(list_id, ItemDraft(text="Milk"), position=0, client_token="t-1")
        await wait_for(lambda: len(events) >= 1)
        # Notifications are delivered in commit order, so nothing else is on its way
        await asyncio.sleep(0.1)
    finally:
        await listener.unsubscribe(handle)

    assert [e.record.text for e in events] == ["Milk"]


async def test_subscribe_requires_membership(list_id, outsider_id):
    store = PostgresRemoteStore(outsider_id)
    with pytest.raises(AuthorizationError):
        await store.subscribe(list_id, lambda e: None)


async def test_unsubscribe_closes_listener(list_id, editor_id):
    store = PostgresRemoteStore(editor_id)
    first = await store.subscribe(list_id, lambda e: None)
    second = await store.subscribe(list_id, lambda e: None)
    conn = first.resource
    assert second.resource is conn

    await store.unsubscribe(first)
    assert not conn.is_closed()
    await store.unsubscribe(second)
    assert conn.is_closed()
    assert first.closed and second.closed


async def test_max_length_multibyte_rows_still_notify(list_id, owner_id, editor_id):
    """Test rows at the text and notes limits in 3-byte characters keep notifying on every write."""
    events = []
    listener = PostgresRemoteStore(editor_id)
    handle = await listener.subscribe(list_id, events.append)
    try:
        writer = PostgresRemoteStore(owner_id)
        draft = ItemDraft(text="牛" * 500, notes="乳" * 1000)
        record = await writer.create_record(list_id, draft, position=0, client_token="t-1")
        await writer.update_record(record.id, FieldChanges(done=True), client_token="t-2")
        assert await writer.clear_done(list_id, client_token="t-3") == 1

        await wait_for(lambda: len(events) == 3)
    finally:
        await listener.unsubscribe(handle)

    assert [e.kind for e in events] == ["insert", "update", "delete"]
    assert events[1].record.notes == "乳" * 1000
    assert events[1].previous.done is False


async def test_oversized_notification_is_fetched(list_id, owner_id, editor_id):
    """Test a row whose JSON does not fit a notification still reaches subscribers in full."""
    # Control characters take six bytes each once escaped in JSON
    text = "\x01" * 499 + "x"
    notes = "\x02" * 1000
    events = []
    listener = PostgresRemoteStore(editor_id)
    handle = await listener.subscribe(list_id, events.append)
    try:
        writer = PostgresRemoteStore(owner_id)
        record = await writer.create_record(list_id, ItemDraft(text=text, notes=notes), position=0, client_token="t-1")
        await wait_for(lambda: len(events) == 1)
        await writer.soft_delete_record(record.id, client_token="t-2")
        await wait_for(lambda: len(events) == 2)
    finally:
        await listener.unsubscribe(handle)

    inserted, deleted = events
    assert inserted.kind == "insert"
    assert inserted.record.text == text
    assert inserted.record.notes == notes
    assert inserted.record.client_token == "t-1"
    assert deleted.kind == "delete"
    assert deleted.record.id == record.id
    assert deleted.record.version == 2



async def test_concurrent_subscribes_share_one_listener(list_id, owner_id, editor_id):
    events = []
    store = PostgresRemoteStore(editor_id)
    first, second = await asyncio.gather(
        store.subscribe(list_id, events.append),
        store.subscribe(list_id, events.append),
    )
    try:
        assert first.resource is second.resource
        await PostgresRemoteStore(owner_id).create_record(
            list_id, ItemDraft(text="Milk"), position=0, client_token="t-1"
        )
        await wait_for(lambda: len(events) == 2)
        await asyncio.sleep(0.1)
    finally:
        await store.unsubscribe(first)
        await store.unsubscribe(second)

    # One notification, once per subscription
    assert len(events) == 2
    assert first.resource.is_closed()
