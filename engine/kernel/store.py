"""
ListSync Kernel — Remote store interface

The engine talks to the source of truth only through RemoteStore. Implement
with Postgres for production (backend.repos.item_repo), or in-memory for
tests.

A store instance acts on behalf of one user: every call is authorised as
that user, the way an RLS-scoped connection is.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field, replace
from typing import Any

from engine.kernel.errors import AuthorizationError, NotFoundError
from engine.kernel.events import make_change
from engine.kernel.types import FieldChanges, ItemDraft, Member, Record, utcnow

logger = logging.getLogger(__name__)

ChangeHandler = Callable[[Any], None]
ErrorHandler = Callable[[Exception], None]


@dataclass
class SubscriptionHandle:
    """Store-side resource for one partition subscription."""

    id: int
    list_id: str
    channel: str
    closed: bool = False
    resource: Any = field(default=None, repr=False)


# ---------------------------------------------------------------------------
# Store protocol
# ---------------------------------------------------------------------------


class RemoteStore:
    """
    Abstract store interface.
    Every write takes the client's correlation token so change events can be
    matched back to the write that caused them.
    """

    async def list_records(self, list_id: str) -> list[Record]:
        """Non-tombstoned records of a list, ordered by position."""
        raise NotImplementedError

    async def get_record(self, record_id: str) -> Record:
        """Fetch one live record. Raises NotFoundError."""
        raise NotImplementedError

    async def list_members(self, list_id: str) -> list[Member]:
        """Members of a list, owners first. Raises AuthorizationError for non-members."""
        raise NotImplementedError

    async def create_record(self, list_id: str, draft: ItemDraft, *, position: int, client_token: str) -> Record:
        raise NotImplementedError

    async def create_records(
        self,
        list_id: str,
        drafts: Sequence[ItemDraft],
        *,
        start_position: int,
        client_token: str,
    ) -> list[Record]:
        """Bulk create in one round trip. All or nothing."""
        raise NotImplementedError

    async def update_record(self, record_id: str, changes: FieldChanges, *, client_token: str) -> Record:
        raise NotImplementedError

    async def soft_delete_record(self, record_id: str, *, client_token: str) -> None:
        raise NotImplementedError

    async def batch_update_positions(self, list_id: str, positions: dict[str, int], *, client_token: str) -> None:
        raise NotImplementedError

    async def clear_done(self, list_id: str, *, client_token: str) -> int:
        """Soft-delete every done record in a list. Returns how many."""
        raise NotImplementedError

    async def subscribe(
        self,
        list_id: str,
        handler: ChangeHandler,
        *,
        on_error: ErrorHandler | None = None,
    ) -> SubscriptionHandle:
        """
        Start delivering ChangeEvents for list_id to handler.
        on_error is called if the transport drops after subscribing.
        """
        raise NotImplementedError

    async def unsubscribe(self, handle: SubscriptionHandle) -> None:
        raise NotImplementedError


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------


@dataclass
class _Subscriber:
    handle: SubscriptionHandle
    user_id: str
    handler: ChangeHandler
    on_error: ErrorHandler | None


class MemoryDatabase:
    """
    Shared server state for in-memory stores: rows, list membership and
    subscribers. Several MemoryRemoteStore clients can point at one database
    to simulate collaborators.
    """

    def __init__(self) -> None:
        self.rows: dict[str, Record] = {}
        self.members: dict[str, dict[str, Member]] = {}
        self._subscribers: dict[str, list[_Subscriber]] = {}
        self._ids = itertools.count(1)
        self._handles = itertools.count(1)

    # -- membership --

    def add_member(
        self,
        list_id: str,
        user_id: str,
        role: str = "editor",
        *,
        display_name: str | None = None,
        email: str | None = None,
    ) -> Member:
        member = Member(user_id=user_id, role=role, display_name=display_name, email=email)  # type: ignore[arg-type]
        self.members.setdefault(list_id, {})[user_id] = member
        return member

    def member(self, list_id: str, user_id: str) -> Member | None:
        return self.members.get(list_id, {}).get(user_id)

    # -- rows --

    def next_id(self) -> str:
        return f"r{next(self._ids)}"

    def live_rows(self, list_id: str) -> list[Record]:
        rows = [r for r in self.rows.values() if r.list_id == list_id and not r.deleted]
        return sorted(rows, key=lambda r: (r.position, r.created_at, r.id))

    # -- change feed --

    def add_subscriber(self, subscriber: _Subscriber) -> None:
        self._subscribers.setdefault(subscriber.handle.list_id, []).append(subscriber)

    def remove_subscriber(self, handle: SubscriptionHandle) -> None:
        subs = self._subscribers.get(handle.list_id, [])
        self._subscribers[handle.list_id] = [s for s in subs if s.handle.id != handle.id]

    def subscriber_count(self, list_id: str) -> int:
        return len(self._subscribers.get(list_id, []))

    def new_handle(self, list_id: str) -> SubscriptionHandle:
        return SubscriptionHandle(id=next(self._handles), list_id=list_id, channel=f"list-items-{list_id}")

    def publish(self, kind: str, record: Record, previous: Record | None = None) -> None:
        """Fan an event out to every subscriber still allowed to see the list."""
        event = make_change(kind, record, previous)
        for sub in list(self._subscribers.get(record.list_id, [])):
            if self.member(record.list_id, sub.user_id) is None:
                continue
            sub.handler(event)

    def drop_subscriptions(self, list_id: str, error: Exception | None = None) -> int:
        """Simulate a transport drop: detach every subscriber and report the error."""
        subs = self._subscribers.pop(list_id, [])
        for sub in subs:
            sub.handle.closed = True
            if sub.on_error is not None:
                sub.on_error(error or ConnectionError("change feed transport dropped"))
        return len(subs)


class MemoryRemoteStore(RemoteStore):
    """
    In-memory store for one user, backed by a MemoryDatabase.

    Test controls:
      fail_next(op, exc)  the next call to op raises exc without touching state
      hold(op)            calls to op commit, publish, then wait until the
                            returned event is set before responding
      latency             seconds every call sleeps before running
    """

    def __init__(
        self,
        db: MemoryDatabase,
        user_id: str,
        *,
        latency: float = 0.0,
    ) -> None:
        self.db = db
        self.user_id = user_id
        self.latency = latency
        self.calls: list[tuple[str, Any]] = []
        self._faults: dict[str, list[Exception]] = {}
        self._holds: dict[str, asyncio.Event] = {}

    # -- test controls --

    def fail_next(self, op: str, exc: Exception) -> None:
        self._faults.setdefault(op, []).append(exc)

    def hold(self, op: str) -> asyncio.Event:
        gate = asyncio.Event()
        self._holds[op] = gate
        return gate

    async def _enter(self, op: str, arg: Any = None) -> None:
        self.calls.append((op, arg))
        if self.latency:
            await asyncio.sleep(self.latency)
        faults = self._faults.get(op)
        if faults:
            raise faults.pop(0)

    async def _respond(self, op: str) -> None:
        gate = self._holds.pop(op, None)
        if gate is not None:
            await gate.wait()

    # -- access control --

    def _require_member(self, list_id: str) -> Member:
        member = self.db.member(list_id, self.user_id)
        if member is None:
            raise AuthorizationError(f"User '{self.user_id}' is not a member of list '{list_id}'")
        return member

    def _require_writer(self, list_id: str) -> Member:
        member = self._require_member(list_id)
        if not member.can_write:
            raise AuthorizationError(f"User '{self.user_id}' has read-only access to list '{list_id}'")
        return member

    def _live_row(self, record_id: str) -> Record:
        row = self.db.rows.get(record_id)
        # Rows of lists we can't see look exactly like missing rows
        if row is None or row.deleted or self.db.member(row.list_id, self.user_id) is None:
            raise NotFoundError(record_id)
        return row

    # -- reads --

    async def list_records(self, list_id: str) -> list[Record]:
        await self._enter("list_records", list_id)
        self._require_member(list_id)
        rows = self.db.live_rows(list_id)
        # A held load returns the snapshot taken before the hold
        await self._respond("list_records")
        return rows

    async def get_record(self, record_id: str) -> Record:
        await self._enter("get_record", record_id)
        return self._live_row(record_id)

    async def list_members(self, list_id: str) -> list[Member]:
        await self._enter("list_members", list_id)
        self._require_member(list_id)
        members = self.db.members.get(list_id, {}).values()
        return sorted(members, key=lambda m: (m.role != "owner", m.added_at))

    # -- writes --

    def _new_row(self, list_id: str, draft: ItemDraft, position: int, client_token: str, member: Member) -> Record:
        now = utcnow()
        return Record(
            id=self.db.next_id(),
            list_id=list_id,
            text=draft.text,
            quantity=draft.quantity,
            notes=draft.notes,
            priority=draft.priority,
            done=False,
            position=position,
            version=1,
            created_at=now,
            updated_at=now,
            created_by=self.user_id,
            created_by_name=member.label,
            client_token=client_token,
        )

    async def create_record(self, list_id: str, draft: ItemDraft, *, position: int, client_token: str) -> Record:
        await self._enter("create_record", draft)
        member = self._require_writer(list_id)
        row = self._new_row(list_id, draft, position, client_token, member)
        self.db.rows[row.id] = row
        self.db.publish("insert", row)
        await self._respond("create_record")
        return row

    async def create_records(
        self,
        list_id: str,
        drafts: Sequence[ItemDraft],
        *,
        start_position: int,
        client_token: str,
    ) -> list[Record]:
        await self._enter("create_records", list(drafts))
        member = self._require_writer(list_id)
        rows = [
            self._new_row(list_id, draft, start_position + i, client_token, member) for i, draft in enumerate(drafts)
        ]
        for row in rows:
            self.db.rows[row.id] = row
        for row in rows:
            self.db.publish("insert", row)
        await self._respond("create_records")
        return rows

    def _write(self, row: Record, client_token: str, **fields: Any) -> Record:
        updated = replace(
            row,
            version=row.version + 1,
            updated_at=utcnow(),
            client_token=client_token,
            **fields,
        )
        self.db.rows[row.id] = updated
        return updated

    async def update_record(self, record_id: str, changes: FieldChanges, *, client_token: str) -> Record:
        await self._enter("update_record", (record_id, changes))
        row = self._live_row(record_id)
        self._require_writer(row.list_id)
        updated = self._write(row, client_token, **changes.as_dict())
        self.db.publish("update", updated, row)
        await self._respond("update_record")
        return updated

    async def soft_delete_record(self, record_id: str, *, client_token: str) -> None:
        await self._enter("soft_delete_record", record_id)
        row = self._live_row(record_id)
        self._require_writer(row.list_id)
        deleted = self._write(row, client_token, deleted=True)
        self.db.publish("delete", deleted, row)
        await self._respond("soft_delete_record")

    async def batch_update_positions(self, list_id: str, positions: dict[str, int], *, client_token: str) -> None:
        await self._enter("batch_update_positions", dict(positions))
        self._require_writer(list_id)
        rows = [self._live_row(record_id) for record_id in positions]
        for row in rows:
            if row.list_id != list_id:
                raise NotFoundError(row.id)
        for row in rows:
            if row.position == positions[row.id]:
                continue
            updated = self._write(row, client_token, position=positions[row.id])
            self.db.publish("update", updated, row)
        await self._respond("batch_update_positions")

    async def clear_done(self, list_id: str, *, client_token: str) -> int:
        await self._enter("clear_done", list_id)
        self._require_writer(list_id)
        done = [r for r in self.db.live_rows(list_id) if r.done]
        for row in done:
            deleted = self._write(row, client_token, deleted=True)
            self.db.publish("delete", deleted, row)
        await self._respond("clear_done")
        return len(done)

    # -- change feed --

    async def subscribe(
        self,
        list_id: str,
        handler: ChangeHandler,
        *,
        on_error: ErrorHandler | None = None,
    ) -> SubscriptionHandle:
        await self._enter("subscribe", list_id)
        self._require_member(list_id)
        handle = self.db.new_handle(list_id)
        self.db.add_subscriber(_Subscriber(handle=handle, user_id=self.user_id, handler=handler, on_error=on_error))
        logger.debug("memory_store: subscribed user=%s list_id=%s handle=%d", self.user_id, list_id, handle.id)
        return handle

    async def unsubscribe(self, handle: SubscriptionHandle) -> None:
        await self._enter("unsubscribe", handle.id)
        handle.closed = True
        self.db.remove_subscriber(handle)


__all__ = [
    "ChangeHandler",
    "ErrorHandler",
    "MemoryDatabase",
    "MemoryRemoteStore",
    "RemoteStore",
    "SubscriptionHandle",
]
