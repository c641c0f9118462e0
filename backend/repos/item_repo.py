"""Postgres-backed RemoteStore: items under RLS, change feed over LISTEN/NOTIFY."""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from uuid import UUID

import asyncpg
import pydantic

from backend import db
from backend.db import user_conn
from backend.models.item import ChangePayload, ItemRow, MemberRow
from engine.kernel.config import Settings, settings
from engine.kernel.errors import AuthorizationError, NotFoundError, SyncError, TransientNetworkError, ValidationError
from engine.kernel.store import ChangeHandler, ErrorHandler, RemoteStore, SubscriptionHandle
from engine.kernel.types import ChangeEvent, FieldChanges, ItemDraft, Member, Record

logger = logging.getLogger(__name__)

# Items joined with the creator's display name
_SELECT_ITEMS = """
    SELECT i.*, COALESCE(p.display_name, p.email) AS created_by_name
    FROM items i
    LEFT JOIN profiles p ON p.id = i.created_by
"""

# Columns a FieldChanges may set; used to build UPDATE statements
_UPDATABLE_COLUMNS = ("text", "quantity", "notes", "done", "priority", "position")


def _row_to_record(row: asyncpg.Record) -> Record:
    """Convert a database row to a kernel Record."""
    return ItemRow.model_validate(dict(row)).to_record()


def _affected(status: str) -> int:
    # Command status format is "UPDATE N"
    return int(status.split()[-1]) if status else 0


@contextmanager
def _translate_errors(record_id: str | None = None):
    """Map asyncpg failures onto the kernel error taxonomy."""
    try:
        yield
    except asyncpg.exceptions.InsufficientPrivilegeError as e:
        raise AuthorizationError(str(e)) from e
    except asyncpg.exceptions.InvalidTextRepresentationError as e:
        # Malformed uuid: no such row can exist
        raise NotFoundError(record_id or "?", str(e)) from e
    except asyncpg.exceptions.CheckViolationError as e:
        raise ValidationError(str(e)) from e
    except (asyncpg.exceptions.PostgresConnectionError, asyncpg.InterfaceError, OSError, TimeoutError) as e:
        raise TransientNetworkError(str(e)) from e
    except asyncpg.PostgresError as e:
        raise SyncError(f"{type(e).__name__}: {e}") from e


@dataclass
class _Listener:
    handle: SubscriptionHandle
    handler: ChangeHandler
    on_error: ErrorHandler | None


class PostgresRemoteStore(RemoteStore):
    """
    Items for one user. Every query runs on a user_conn, so RLS decides what
    the user can see and write; explicit role checks only exist to report
    a viewer's write as AuthorizationError rather than a missing row.

    Change events come from the items trigger on a single NOTIFY channel and
    are routed to subscriptions by list_id.
    """

    def __init__(self, user_id: str | UUID, cfg: Settings | None = None) -> None:
        self.user_id = str(user_id)
        self._settings = cfg or settings
        self._listener: asyncpg.Connection | None = None
        self._listener_lock = asyncio.Lock()
        self._fetches: set[asyncio.Task] = set()
        self._subs: dict[int, _Listener] = {}
        self._handle_ids = itertools.count(1)

    # -- access checks --

    async def _role(self, conn: asyncpg.Connection, list_id: str) -> str | None:
        return await conn.fetchval(
            "SELECT role FROM list_members WHERE list_id = $1 AND user_id = $2",
            list_id,
            self.user_id,
        )

    async def _require_writer(self, conn: asyncpg.Connection, list_id: str) -> None:
        role = await self._role(conn, list_id)
        if role is None:
            raise AuthorizationError(f"User '{self.user_id}' is not a member of list '{list_id}'")
        if role not in ("editor", "owner"):
            raise AuthorizationError(f"User '{self.user_id}' has read-only access to list '{list_id}'")

    async def _list_of(self, conn: asyncpg.Connection, record_id: str) -> str:
        list_id = await conn.fetchval("SELECT list_id FROM items WHERE id = $1 AND NOT deleted", record_id)
        # Rows of lists the user is not in look exactly like missing rows
        if list_id is None or await self._role(conn, list_id) is None:
            raise NotFoundError(record_id)
        return list_id

    # -- reads --

    async def list_records(self, list_id: str) -> list[Record]:
        with _translate_errors():
            async with user_conn(self.user_id) as conn:
                if await self._role(conn, list_id) is None:
                    raise AuthorizationError(f"User '{self.user_id}' is not a member of list '{list_id}'")
                rows = await conn.fetch(
                    _SELECT_ITEMS + " WHERE i.list_id = $1 AND NOT i.deleted ORDER BY i.position, i.created_at, i.id",
                    list_id,
                )
                return [_row_to_record(row) for row in rows]

    async def get_record(self, record_id: str) -> Record:
        with _translate_errors(record_id):
            async with user_conn(self.user_id) as conn:
                row = await conn.fetchrow(_SELECT_ITEMS + " WHERE i.id = $1 AND NOT i.deleted", record_id)
                if row is None or await self._role(conn, row["list_id"]) is None:
                    raise NotFoundError(record_id)
                return _row_to_record(row)

    async def list_members(self, list_id: str) -> list[Member]:
        """Members of a list with their profile names, owners first."""
        with _translate_errors():
            async with user_conn(self.user_id) as conn:
                if await self._role(conn, list_id) is None:
                    raise AuthorizationError(f"User '{self.user_id}' is not a member of list '{list_id}'")
                rows = await conn.fetch(
                    """
                    SELECT m.list_id, m.user_id, m.role, m.added_at, p.display_name, p.email
                    FROM list_members m
                    JOIN profiles p ON p.id = m.user_id
                    WHERE m.list_id = $1
                    ORDER BY (m.role = 'owner') DESC, m.added_at
                    """,
                    list_id,
                )
                return [MemberRow.model_validate(dict(row)).to_member() for row in rows]

    # -- writes --

    async def create_record(self, list_id: str, draft: ItemDraft, *, position: int, client_token: str) -> Record:
        records = await self._insert(list_id, [draft], position, client_token)
        return records[0]

    async def create_records(
        self,
        list_id: str,
        drafts: Sequence[ItemDraft],
        *,
        start_position: int,
        client_token: str,
    ) -> list[Record]:
        return await self._insert(list_id, list(drafts), start_position, client_token)

    async def _insert(self, list_id: str, drafts: list[ItemDraft], start: int, client_token: str) -> list[Record]:
        with _translate_errors():
            async with user_conn(self.user_id) as conn:
                await self._require_writer(conn, list_id)
                ids = []
                for offset, draft in enumerate(drafts):
                    item_id = await conn.fetchval(
                        """
                        INSERT INTO items (list_id, text, quantity, notes, priority, position, created_by, client_token)
                        VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                        RETURNING id
                        """,
                        list_id,
                        draft.text,
                        draft.quantity,
                        draft.notes,
                        draft.priority,
                        start + offset,
                        self.user_id,
                        client_token,
                    )
                    ids.append(item_id)
                rows = await conn.fetch(
                    _SELECT_ITEMS + " WHERE i.id = ANY($1::uuid[]) ORDER BY i.position, i.created_at, i.id",
                    ids,
                )
                return [_row_to_record(row) for row in rows]

    async def update_record(self, record_id: str, changes: FieldChanges, *, client_token: str) -> Record:
        if changes.is_empty():
            raise ValidationError("Update must change at least one field")
        fields = changes.as_dict()

        with _translate_errors(record_id):
            async with user_conn(self.user_id) as conn:
                list_id = await self._list_of(conn, record_id)
                await self._require_writer(conn, list_id)

                # S608: set_clause only contains column names from _UPDATABLE_COLUMNS
                columns = [c for c in _UPDATABLE_COLUMNS if c in fields]
                set_clause = ", ".join(f"{c} = ${i + 3}" for i, c in enumerate(columns))
                status = await conn.execute(
                    f"""
                    UPDATE items
                    SET {set_clause}, version = version + 1, updated_at = now(), client_token = $2
                    WHERE id = $1 AND NOT deleted
                    """,  # noqa: S608
                    record_id,
                    client_token,
                    *[fields[c] for c in columns],
                )
                if _affected(status) == 0:
                    raise NotFoundError(record_id)
                row = await conn.fetchrow(_SELECT_ITEMS + " WHERE i.id = $1", record_id)
                return _row_to_record(row)

    async def soft_delete_record(self, record_id: str, *, client_token: str) -> None:
        with _translate_errors(record_id):
            async with user_conn(self.user_id) as conn:
                list_id = await self._list_of(conn, record_id)
                await self._require_writer(conn, list_id)
                status = await conn.execute(
                    """
                    UPDATE items
                    SET deleted = true, version = version + 1, updated_at = now(), client_token = $2
                    WHERE id = $1 AND NOT deleted
                    """,
                    record_id,
                    client_token,
                )
                if _affected(status) == 0:
                    raise NotFoundError(record_id)

    async def batch_update_positions(self, list_id: str, positions: dict[str, int], *, client_token: str) -> None:
        if not positions:
            return
        ids = list(positions)
        with _translate_errors():
            async with user_conn(self.user_id) as conn:
                await self._require_writer(conn, list_id)
                found = await conn.fetch(
                    "SELECT id FROM items WHERE id = ANY($1::uuid[]) AND list_id = $2 AND NOT deleted",
                    ids,
                    list_id,
                )
                missing = set(ids) - {row["id"] for row in found}
                if missing:
                    raise NotFoundError(sorted(missing)[0])
                # Rows already in place are left alone so they emit no change event
                await conn.execute(
                    """
                    UPDATE items AS i
                    SET position = v.position, version = i.version + 1, updated_at = now(), client_token = $3
                    FROM unnest($1::uuid[], $2::int[]) AS v(id, position)
                    WHERE i.id = v.id AND i.list_id = $4 AND i.position <> v.position
                    """,
                    ids,
                    [positions[item_id] for item_id in ids],
                    client_token,
                    list_id,
                )

    async def clear_done(self, list_id: str, *, client_token: str) -> int:
        with _translate_errors():
            async with user_conn(self.user_id) as conn:
                await self._require_writer(conn, list_id)
                status = await conn.execute(
                    """
                    UPDATE items
                    SET deleted = true, version = version + 1, updated_at = now(), client_token = $2
                    WHERE list_id = $1 AND done AND NOT deleted
                    """,
                    list_id,
                    client_token,
                )
                return _affected(status)

    # -- change feed --

    async def subscribe(
        self,
        list_id: str,
        handler: ChangeHandler,
        *,
        on_error: ErrorHandler | None = None,
    ) -> SubscriptionHandle:
        """
        Route NOTIFY events for list_id to handler. Membership is checked once
        here; NOTIFY itself is not subject to RLS.
        """
        with _translate_errors():
            async with user_conn(self.user_id) as conn:
                if await self._role(conn, list_id) is None:
                    raise AuthorizationError(f"User '{self.user_id}' is not a member of list '{list_id}'")
            listener = await self._ensure_listener()

        handle = SubscriptionHandle(
            id=next(self._handle_ids),
            list_id=list_id,
            channel=self._settings.NOTIFY_CHANNEL,
            resource=listener,
        )
        self._subs[handle.id] = _Listener(handle=handle, handler=handler, on_error=on_error)
        logger.info("item_repo: subscribed list_id=%s handle=%d", list_id, handle.id)
        return handle

    async def unsubscribe(self, handle: SubscriptionHandle) -> None:
        handle.closed = True
        self._subs.pop(handle.id, None)
        if not self._subs:
            await self._close_listener()
        logger.info("item_repo: unsubscribed list_id=%s handle=%d", handle.list_id, handle.id)

    async def _ensure_listener(self) -> asyncpg.Connection:
        # Held across the check and the connect so concurrent subscribes share one connection
        async with self._listener_lock:
            if self._listener is not None and not self._listener.is_closed():
                return self._listener
            conn = await db.listener_conn()
            await conn.add_listener(self._settings.NOTIFY_CHANNEL, self._on_notify)
            conn.add_termination_listener(self._on_terminated)
            self._listener = conn
            return conn

    async def _close_listener(self) -> None:
        for task in list(self._fetches):
            task.cancel()
        conn, self._listener = self._listener, None
        if conn is None or conn.is_closed():
            return
        conn.remove_termination_listener(self._on_terminated)
        await conn.remove_listener(self._settings.NOTIFY_CHANNEL, self._on_notify)
        await conn.close()

    def _on_notify(self, connection: asyncpg.Connection, pid: int, channel: str, payload: str) -> None:
        try:
            change = ChangePayload.model_validate_json(payload)
        except pydantic.ValidationError as e:
            logger.warning("item_repo: dropped malformed notification on %s: %s", channel, e)
            return
        if not self._routes_to(change.record.list_id):
            return
        if change.needs_fetch:
            task = asyncio.create_task(self._fetch_and_route(change))
            self._fetches.add(task)
            task.add_done_callback(self._fetches.discard)
            return
        self._route(change.to_event())

    async def _fetch_and_route(self, change: ChangePayload) -> None:
        record_id = change.record.id
        try:
            with _translate_errors(record_id):
                async with user_conn(self.user_id) as conn:
                    row = await conn.fetchrow(_SELECT_ITEMS + " WHERE i.id = $1", record_id)
        except SyncError as e:
            logger.warning("item_repo: fetch after partial notification failed id=%s: %s", record_id, e)
            return
        if row is None:
            return
        record = _row_to_record(row)
        if record.deleted:
            kind = "delete"
        else:
            kind = "insert" if change.op == "INSERT" else "update"
        logger.debug("item_repo: fetched partial %s id=%s version=%d", kind, record_id, record.version)
        self._route(ChangeEvent(kind=kind, record=record))

    def _routes_to(self, list_id: str) -> bool:
        return any(sub.handle.list_id == list_id for sub in self._subs.values())

    def _route(self, event: ChangeEvent) -> None:
        for sub in list(self._subs.values()):
            if sub.handle.list_id == event.record.list_id:
                sub.handler(event)

    def _on_terminated(self, connection: asyncpg.Connection) -> None:
        logger.warning("item_repo: listener connection lost, subscriptions=%d", len(self._subs))
        self._listener = None
        subs, self._subs = list(self._subs.values()), {}
        for sub in subs:
            sub.handle.closed = True
            if sub.on_error is not None:
                sub.on_error(TransientNetworkError("change feed connection lost"))
