"""
ListSync Kernel — Reconciliation engine

One engine per list per client. It owns the local view of the list and is
the only thing that writes to it.

Every mutating operation runs in two halves:

    1. Optimistic: validate, patch local state, notify listeners, run
       post-commit hooks. This happens before the coroutine returns.
    2. Confirmation: a background task sends the write to the RemoteStore
       and merges the canonical result, or rolls back. The returned
       Mutation handle resolves when this half is finished.

Inbound change events from other clients go through on_remote_change, which
is idempotent and never raises. Events that echo one of our own writes are
recognised by correlation token (or, for events that carry none, by a short
lived guard on the record id) and not applied.

Local state that has to survive reloads and out-of-order events:
    _tombstones        ids known deleted; never resurrected
    _pending_removals  ids whose removal is in flight
    _base              latest server copy of each saved record
    _overlays          pending field changes, re-applied over _base
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
import uuid
from collections import OrderedDict
from collections.abc import Callable, Sequence
from dataclasses import replace
from typing import Any

from engine.kernel.change_feed import SubscriptionManager
from engine.kernel.config import Settings, settings
from engine.kernel.errors import NotFoundError, SyncError, ValidationError
from engine.kernel.guard import GuardRegistry, SelfMutationGuard
from engine.kernel.ordering import done_items, next_position, pending_items, reorder_records, sort_records
from engine.kernel.store import RemoteStore
from engine.kernel.types import ChangeEvent, FieldChanges, ItemDraft, Record, ViewState, provisional_id, utcnow
from engine.kernel.validation import clean_changes, clean_draft

logger = logging.getLogger(__name__)

Listener = Callable[[ViewState], None]
PostCommitHook = Callable[[str, Record | None], Any]

# Confirmed tokens remembered for late echo detection
_MAX_REMEMBERED_TOKENS = 1024


def _short(token: str) -> str:
    return token[:8]


def _consume_exception(task: asyncio.Task) -> None:
    # Callers may never await a Mutation; keep asyncio from warning about it
    if not task.cancelled():
        task.exception()


class Mutation:
    """
    Handle for one optimistic operation.

    The local change is already visible when you get this. `confirmed`
    resolves with the canonical record (None when no single record applies,
    the cleared count for clear_done) or fails with the error after rollback.
    Awaiting the handle awaits `confirmed`.
    """

    def __init__(self, operation: str, record_id: str | None, token: str, confirmed: asyncio.Task) -> None:
        self.operation = operation
        self.record_id = record_id
        self.token = token
        self.confirmed = confirmed

    @property
    def done(self) -> bool:
        return self.confirmed.done()

    def __await__(self):
        return self.confirmed.__await__()

    def __repr__(self) -> str:
        return f"Mutation({self.operation!r}, record_id={self.record_id!r}, done={self.done})"


class ReconciliationEngine:
    """
    Optimistic local view of one list, kept in step with a RemoteStore.

    Usage:
        async with ReconciliationEngine("list_1", store) as engine:
            mutation = await engine.add(ItemDraft(text="Milk"))
            engine.view().items        # provisional "Milk" already here
            record = await mutation    # canonical row from the store
    """

    def __init__(
        self,
        list_id: str,
        store: RemoteStore,
        feed: SubscriptionManager | None = None,
        *,
        cfg: Settings | None = None,
        user_id: str | None = None,
        user_name: str | None = None,
        clock: Callable[[], float] = time.monotonic,
        token_factory: Callable[[], str] | None = None,
    ) -> None:
        self.list_id = list_id
        self._store = store
        self._settings = cfg or settings
        self._owns_feed = feed is None
        self._feed = feed or SubscriptionManager(store, self._settings)
        self._user_id = user_id
        self._user_name = user_name
        self._new_token = token_factory or (lambda: uuid.uuid4().hex)

        self._guards = GuardRegistry(self._settings.guard_ttl, clock)
        self._own_tokens: OrderedDict[str, None] = OrderedDict()

        self._records: dict[str, Record] = {}
        # Latest server copy of each saved record, before overlays
        self._base: dict[str, Record] = {}
        self._tombstones: set[str] = set()
        self._pending_removals: set[str] = set()
        self._overlays: dict[str, list[tuple[str, FieldChanges]]] = {}

        # Provisional id -> future resolving to the canonical id (None if the add failed)
        self._adds: dict[str, asyncio.Future] = {}
        self._canonical_ids: dict[str, str] = {}

        self._is_loading = False
        self._last_error: Exception | None = None
        self._load_generation = 0
        self._touched_since_load: set[str] = set()

        self._subscribed = False
        self._closed = False
        self._tasks: set[asyncio.Task] = set()
        self._listeners: list[Listener] = []
        self._hooks: list[PostCommitHook] = []

        self.echoes_suppressed = 0

    # =======================================================================
    # Lifecycle
    # =======================================================================

    async def open(self) -> ViewState:
        """Subscribe to the list's change feed, then load it."""
        self._ensure_open()
        if not self._subscribed:
            sub = await self._feed.subscribe(self.list_id, self.on_remote_change, on_reconnect=self._on_reconnect)
            if sub.handler != self.on_remote_change:
                raise SyncError(f"List '{self.list_id}' already has an engine attached to this feed")
            self._subscribed = True
        try:
            await self.load()
        except Exception:
            await self._unsubscribe()
            raise
        logger.info("reconciler: opened list_id=%s records=%d", self.list_id, len(self._records))
        return self.view()

    async def close(self) -> None:
        """
        Stop listening. Late events are dropped from here on; confirmations
        still in flight resolve their handles but no longer touch local state.
        """
        if self._closed:
            return
        self._closed = True
        await self._unsubscribe()
        if self._owns_feed:
            await self._feed.close()
        self._guards.clear()
        logger.info("reconciler: closed list_id=%s in_flight=%d", self.list_id, len(self._tasks))

    async def __aenter__(self) -> ReconciliationEngine:
        await self.open()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    @property
    def closed(self) -> bool:
        return self._closed

    async def settle(self) -> None:
        """Wait until buffered feed events and in-flight confirmations are done."""
        while True:
            if self._subscribed:
                await self._feed.drain(self.list_id)
            if not self._tasks:
                break
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _unsubscribe(self) -> None:
        if self._subscribed:
            self._subscribed = False
            await self._feed.unsubscribe(self.list_id)

    async def _on_reconnect(self) -> None:
        # Events sent while the feed was down are gone; refetch
        await self._reload_quietly("reconnect")

    async def _reload_quietly(self, reason: str) -> None:
        if self._closed:
            return
        try:
            await self.load()
        except Exception as e:
            logger.warning("reconciler: reload after %s failed list_id=%s: %s", reason, self.list_id, e)

    def _ensure_open(self) -> None:
        if self._closed:
            raise SyncError(f"Engine for list '{self.list_id}' is closed")

    # =======================================================================
    # View
    # =======================================================================

    def view(self) -> ViewState:
        records = list(self._records.values())
        return ViewState(
            items=tuple(sort_records(records)),
            pending_items=tuple(pending_items(records)),
            done_items=tuple(done_items(records)),
            is_loading=self._is_loading,
            last_error=self._last_error,
        )

    def get(self, record_id: str) -> Record | None:
        return self._records.get(self._canonical_ids.get(record_id, record_id))

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        """Call listener with a fresh view after every local state change. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def add_post_commit_hook(self, hook: PostCommitHook) -> None:
        """
        Register hook(operation, record) to run after each optimistic commit.
        Sync or async. Failures are logged and never reach the mutation.
        """
        self._hooks.append(hook)

    def _notify(self) -> None:
        if not self._listeners:
            return
        state = self.view()
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("reconciler: listener failed list_id=%s", self.list_id)

    def _commit(self, operation: str, record: Record | None) -> None:
        self._notify()
        for hook in list(self._hooks):
            try:
                result = hook(operation, record)
            except Exception:
                logger.exception("reconciler: post-commit hook failed op=%s list_id=%s", operation, self.list_id)
                continue
            if inspect.isawaitable(result):
                self._spawn(self._run_async_hook(operation, result))

    async def _run_async_hook(self, operation: str, awaitable: Any) -> None:
        try:
            await awaitable
        except Exception:
            logger.exception("reconciler: post-commit hook failed op=%s list_id=%s", operation, self.list_id)

    # =======================================================================
    # Load
    # =======================================================================

    async def load(self) -> None:
        """
        Replace local state with the store's current records.

        Overlapping calls coalesce: only the most recently started load is
        applied. Provisional records, pending removals and pending field
        changes survive. On failure the previous items stay and the error is
        raised.
        """
        self._ensure_open()
        self._load_generation += 1
        generation = self._load_generation
        self._touched_since_load = set()
        self._is_loading = True
        self._notify()

        try:
            rows = await self._store.list_records(self.list_id)
        except Exception as e:
            if generation == self._load_generation and not self._closed:
                self._is_loading = False
                self._last_error = e
                self._notify()
            logger.warning("reconciler: load failed list_id=%s: %s", self.list_id, e)
            raise

        if generation != self._load_generation or self._closed:
            logger.debug("reconciler: load superseded list_id=%s generation=%d", self.list_id, generation)
            return

        fresh: dict[str, Record] = {}
        base: dict[str, Record] = {}
        for row in rows:
            if row.id in self._tombstones:
                continue
            if row.id in self._pending_removals:
                kept = self._base.get(row.id)
                base[row.id] = kept if kept is not None and kept.version > row.version else row
                continue
            current = self._records.get(row.id)
            if current is not None and current.version > row.version:
                # Feed already delivered something newer than this snapshot
                fresh[row.id] = current
                base[row.id] = self._base.get(row.id, current)
            else:
                fresh[row.id] = self._with_overlays(row)
                base[row.id] = row

        for record in list(self._records.values()):
            if record.id in fresh:
                continue
            if record.is_provisional:
                created = self._created_row(record, fresh)
                if created is None:
                    fresh[record.id] = record
                    continue
                # The snapshot already holds the row our in-flight create made
                self._canonical_ids[record.id] = created.id
                overlays = self._overlays.pop(record.id, None)
                if overlays:
                    self._overlays.setdefault(created.id, []).extend(overlays)
                    fresh[created.id] = self._with_overlays(created)
            elif record.id in self._touched_since_load:
                # Arrived over the feed after the snapshot was taken
                fresh[record.id] = record
                base[record.id] = self._base.get(record.id, record)

        self._records = fresh
        self._base = base
        self._is_loading = False
        self._last_error = None
        logger.debug("reconciler: loaded list_id=%s records=%d", self.list_id, len(fresh))
        self._notify()

    @staticmethod
    def _created_row(provisional: Record, rows: dict[str, Record]) -> Record | None:
        for row in rows.values():
            if row.client_token == provisional.client_token and row.position == provisional.position:
                return row
        return None

    # =======================================================================
    # Add
    # =======================================================================

    async def add(self, draft: ItemDraft) -> Mutation:
        """Append a provisional record and create it in the store."""
        self._ensure_open()
        clean = clean_draft(draft, self._settings)
        token = self._new_token()
        position = next_position(list(self._records.values()))
        provisional = self._provisional(provisional_id(token), clean, token, position)
        self._records[provisional.id] = provisional
        self._adds[provisional.id] = asyncio.get_running_loop().create_future()
        guard = self._guards.arm(token, operation="add")
        logger.debug("reconciler: add list_id=%s provisional=%s", self.list_id, provisional.id)
        self._commit("add", provisional)
        confirm = self._confirm_add([provisional], [clean], token, guard, bulk=False)
        return self._dispatch("add", provisional.id, token, confirm)

    async def add_many(self, drafts: Sequence[ItemDraft]) -> Mutation:
        """
        Append several provisional records and create them in one store call.
        Every draft is validated first; nothing happens if any is invalid.
        """
        self._ensure_open()
        if not drafts:
            raise ValidationError("No items to add")
        cleaned: list[ItemDraft] = []
        errors: list[str] = []
        for i, draft in enumerate(drafts):
            try:
                cleaned.append(clean_draft(draft, self._settings))
            except ValidationError as e:
                errors.append(f"item {i}: {e}")
        if errors:
            raise ValidationError("; ".join(errors))

        token = self._new_token()
        start = next_position(list(self._records.values()))
        loop = asyncio.get_running_loop()
        provisionals = [
            self._provisional(provisional_id(f"{token}-{i}"), clean, token, start + i)
            for i, clean in enumerate(cleaned)
        ]
        for record in provisionals:
            self._records[record.id] = record
            self._adds[record.id] = loop.create_future()
        guard = self._guards.arm(token, operation="add_many")
        logger.debug("reconciler: add_many list_id=%s count=%d", self.list_id, len(provisionals))
        self._commit("add_many", None)
        confirm = self._confirm_add(provisionals, cleaned, token, guard, bulk=True)
        return self._dispatch("add_many", None, token, confirm)

    def _provisional(self, record_id: str, draft: ItemDraft, token: str, position: int) -> Record:
        now = utcnow()
        return Record(
            id=record_id,
            list_id=self.list_id,
            text=draft.text,
            quantity=draft.quantity,
            notes=draft.notes,
            priority=draft.priority,
            position=position,
            created_at=now,
            updated_at=now,
            created_by=self._user_id,
            created_by_name=self._user_name,
            client_token=token,
        )

    async def _confirm_add(
        self,
        provisionals: list[Record],
        drafts: list[ItemDraft],
        token: str,
        guard: SelfMutationGuard,
        *,
        bulk: bool,
    ) -> Record | list[Record]:
        try:
            if not bulk:
                created = [
                    await self._store.create_record(
                        self.list_id, drafts[0], position=provisionals[0].position, client_token=token
                    )
                ]
            else:
                created = await self._store.create_records(
                    self.list_id, drafts, start_position=provisionals[0].position, client_token=token
                )
        except Exception as e:
            self._guards.release(guard)
            for record in provisionals:
                self._resolve_add(record.id, None)
            if not self._closed:
                for record in provisionals:
                    self._records.pop(record.id, None)
                    self._overlays.pop(record.id, None)
                self._fail("add_many" if bulk else "add", e)
            raise

        self._guards.release(guard)
        self._remember(token)
        for record, canonical in zip(provisionals, created, strict=True):
            self._canonical_ids[record.id] = canonical.id
            if not self._closed:
                self._replace_provisional(record.id, canonical)
            self._resolve_add(record.id, canonical.id)
        if not self._closed:
            self._notify()
        return created if bulk else created[0]

    def _replace_provisional(self, provisional: str, canonical: Record) -> None:
        self._records.pop(provisional, None)
        overlays = self._overlays.pop(provisional, None)
        if overlays:
            self._overlays.setdefault(canonical.id, []).extend(overlays)
        if provisional in self._pending_removals:
            # Removed while the create was in flight; the remove will delete it
            self._pending_removals.add(canonical.id)
            self._track_hidden(canonical)
            return
        self._merge(canonical)

    def _resolve_add(self, provisional: str, canonical_id: str | None) -> None:
        future = self._adds.pop(provisional, None)
        if future is not None and not future.done():
            future.set_result(canonical_id)

    async def _server_id(self, record_id: str) -> str:
        """The store's id for record_id, waiting for its create if still in flight."""
        if record_id in self._canonical_ids:
            return self._canonical_ids[record_id]
        future = self._adds.get(record_id)
        if future is None:
            return record_id
        canonical_id = await asyncio.shield(future)
        if canonical_id is None:
            raise NotFoundError(record_id, f"Record '{record_id}' was never created")
        return canonical_id

    # =======================================================================
    # Update / toggle
    # =======================================================================

    async def update(self, record_id: str, changes: FieldChanges | dict[str, Any]) -> Mutation:
        """
        Patch a record locally and in the store.

        A failed update is not rolled back: the error is surfaced and the next
        load or feed event for the record corrects the local copy.
        """
        self._ensure_open()
        if isinstance(changes, dict):
            changes = FieldChanges.from_dict(changes)
        clean = clean_changes(changes, self._settings)
        return self._patch("update", record_id, clean, ttl=None)

    async def toggle_done(self, record_id: str, done: bool | None = None) -> Mutation:
        """Set the done flag (flip it when done is None)."""
        self._ensure_open()
        if done is None:
            current = self.get(record_id)
            if current is None:
                return self._resolved("toggle_done", record_id, None)
            done = not current.done
        clean = clean_changes(FieldChanges(done=done), self._settings)
        return self._patch("toggle_done", record_id, clean, ttl=self._settings.guard_ttl)

    def _patch(self, operation: str, record_id: str, changes: FieldChanges, *, ttl: float | None) -> Mutation:
        record_id = self._canonical_ids.get(record_id, record_id)
        current = self._records.get(record_id)
        if current is None:
            logger.debug("reconciler: %s on absent record list_id=%s id=%s", operation, self.list_id, record_id)
            return self._resolved(operation, record_id, None)

        token = self._new_token()
        patched = changes.apply_to(current, touched_at=utcnow())
        self._records[record_id] = patched
        self._overlays.setdefault(record_id, []).append((token, changes))
        guards = [
            self._guards.arm(token, ttl=ttl, operation=operation),
            self._guards.arm(record_id, ttl=ttl, operation=operation),
        ]
        self._commit(operation, patched)
        confirm = self._confirm_patch(operation, record_id, changes, token, guards)
        return self._dispatch(operation, record_id, token, confirm)

    async def _confirm_patch(
        self,
        operation: str,
        record_id: str,
        changes: FieldChanges,
        token: str,
        guards: list[SelfMutationGuard],
    ) -> Record | None:
        try:
            target = await self._server_id(record_id)
            updated = await self._store.update_record(target, changes, client_token=token)
        except NotFoundError:
            self._guards.release_all(guards)
            self._drop_overlay(token)
            if not self._closed:
                # Someone else deleted it; our change is moot
                self._forget(record_id)
                self._notify()
            logger.info("reconciler: %s target vanished list_id=%s id=%s", operation, self.list_id, record_id)
            return None
        except Exception as e:
            self._guards.release_all(guards)
            self._drop_overlay(token, rebase=False)
            if not self._closed:
                self._fail(operation, e)
            raise

        self._guards.release_all(guards)
        self._drop_overlay(token)
        self._remember(token)
        if not self._closed:
            self._merge(updated)
            self._notify()
        return updated

    # =======================================================================
    # Remove
    # =======================================================================

    async def remove(self, record_id: str) -> Mutation:
        """Remove a record locally and soft-delete it. A failure puts the record back."""
        self._ensure_open()
        record_id = self._canonical_ids.get(record_id, record_id)
        current = self._records.get(record_id)
        if current is None:
            return self._resolved("remove", record_id, None)

        token = self._new_token()
        del self._records[record_id]
        self._pending_removals.add(record_id)
        guards = [
            self._guards.arm(token, operation="remove"),
            self._guards.arm(record_id, operation="remove"),
        ]
        self._commit("remove", current)
        return self._dispatch("remove", record_id, token, self._confirm_remove(current, token, guards))

    async def _confirm_remove(self, record: Record, token: str, guards: list[SelfMutationGuard]) -> None:
        target = record.id
        try:
            target = await self._server_id(record.id)
            await self._store.soft_delete_record(target, client_token=token)
        except NotFoundError:
            pass
        except Exception as e:
            self._guards.release_all(guards)
            self._pending_removals.discard(record.id)
            self._pending_removals.discard(target)
            if not self._closed:
                self._restore(record, target)
                self._fail("remove", e)
            raise

        self._guards.release_all(guards)
        self._remember(token)
        for record_id in {record.id, target}:
            self._pending_removals.discard(record_id)
            self._forget(record_id)
        if not self._closed:
            self._notify()
        return None

    def _restore(self, record: Record, target: str) -> None:
        """
        Put a record back after its removal failed. The base copy has kept up
        with feed events while the removal was in flight, so it wins over the
        copy taken at remove() time. The store is then asked for the row,
        since a failed call may still have deleted it.
        """
        if target in self._tombstones or record.id in self._tombstones:
            return
        base = self._base.get(target)
        if base is not None:
            self._records[target] = self._with_overlays(base)
        elif target == record.id:
            self._records[target] = record
        self._spawn(self._refetch(target))

    async def _refetch(self, record_id: str) -> None:
        try:
            record = await self._store.get_record(record_id)
        except NotFoundError:
            if not self._closed:
                self._forget(record_id)
                self._notify()
            return
        except Exception as e:
            logger.warning("reconciler: refetch failed list_id=%s id=%s: %s", self.list_id, record_id, e)
            return
        if not self._closed:
            self._merge(record)
            self._notify()

    # =======================================================================
    # Reorder / clear done
    # =======================================================================

    async def reorder(self, new_order: Sequence[str]) -> Mutation:
        """
        Put saved records in the given order. new_order must be a permutation
        of the saved (non-provisional) record ids; provisional records stay at
        the end. Any store failure falls back to a full reload.
        """
        self._ensure_open()
        new_order = [self._canonical_ids.get(record_id, record_id) for record_id in new_order]
        ordered = sort_records(self._records.values())
        saved = [r for r in ordered if not r.is_provisional]
        reordered = reorder_records(saved, new_order)
        positions = {r.id: r.position for r in reordered}
        # Base versions the new positions were chosen against
        versions = {r.id: self._base[r.id].version for r in saved if r.id in self._base}

        token = self._new_token()
        for record in reordered:
            self._records[record.id] = record
            self._overlays.setdefault(record.id, []).append((token, FieldChanges(position=record.position)))
        for offset, record in enumerate(r for r in ordered if r.is_provisional):
            self._records[record.id] = replace(record, position=len(saved) + offset)

        guards = [self._guards.arm(token, operation="reorder")]
        guards.extend(self._guards.arm(record_id, operation="reorder") for record_id in positions)
        self._commit("reorder", None)
        return self._dispatch("reorder", None, token, self._confirm_reorder(positions, versions, token, guards))

    async def _confirm_reorder(
        self,
        positions: dict[str, int],
        versions: dict[str, int],
        token: str,
        guards: list[SelfMutationGuard],
    ) -> None:
        try:
            await self._store.batch_update_positions(self.list_id, positions, client_token=token)
        except Exception as e:
            self._guards.release_all(guards)
            self._drop_overlay(token, rebase=False)
            if not self._closed:
                await self._refetch_after("reorder", e)
            raise

        self._guards.release_all(guards)
        self._remember(token)
        # The store returns no rows. Bases nobody else has written since the
        # reorder take our positions until the echoes land; a collaborator's
        # newer copy is left alone.
        for record_id, position in positions.items():
            base = self._base.get(record_id)
            if base is None:
                continue
            if base.version == versions.get(record_id) or base.client_token in self._own_tokens:
                self._base[record_id] = replace(base, position=position)
        self._drop_overlay(token)
        if not self._closed:
            self._notify()
        return None

    async def clear_done(self) -> Mutation:
        """Remove every done record locally and in the store. Resolves with the count cleared."""
        self._ensure_open()
        done = [r for r in self._records.values() if r.done and not r.is_provisional]
        token = self._new_token()
        for record in done:
            del self._records[record.id]
            self._pending_removals.add(record.id)

        guards = [self._guards.arm(token, operation="clear_done")]
        guards.extend(self._guards.arm(r.id, operation="clear_done") for r in done)
        self._commit("clear_done", None)
        return self._dispatch("clear_done", None, token, self._confirm_clear_done(done, token, guards))

    async def _confirm_clear_done(self, done: list[Record], token: str, guards: list[SelfMutationGuard]) -> int:
        try:
            count = await self._store.clear_done(self.list_id, client_token=token)
        except Exception as e:
            self._guards.release_all(guards)
            for record in done:
                self._pending_removals.discard(record.id)
            if not self._closed:
                await self._refetch_after("clear_done", e)
            raise

        self._guards.release_all(guards)
        self._remember(token)
        for record in done:
            self._pending_removals.discard(record.id)
            self._forget(record.id)
        if not self._closed:
            self._notify()
        return count

    async def _refetch_after(self, operation: str, error: Exception) -> None:
        await self._reload_quietly(operation)
        self._fail(operation, error)

    # =======================================================================
    # Inbound change events
    # =======================================================================

    def on_remote_change(self, event: ChangeEvent) -> None:
        """Apply one change feed event. Idempotent; never raises."""
        if self._closed:
            logger.debug("reconciler: dropped event after close list_id=%s", self.list_id)
            return
        if not isinstance(event, ChangeEvent):
            logger.warning("reconciler: dropped malformed event list_id=%s: %r", self.list_id, event)
            return
        record = event.record
        if record.list_id != self.list_id:
            return

        try:
            if self._is_echo(record):
                self.echoes_suppressed += 1
                logger.debug("reconciler: suppressed echo %s id=%s", event.kind, record.id)
                changed = self._absorb_echo(event)
            elif event.kind == "delete" or record.deleted:
                changed = self._apply_delete(record.id)
            elif event.kind == "insert":
                changed = self._apply_insert(record)
            else:
                changed = self._apply_update(record)
        except Exception:
            logger.exception(
                "reconciler: failed to apply %s event list_id=%s id=%s", event.kind, self.list_id, record.id
            )
            return

        if changed:
            self._notify()

    def _is_echo(self, record: Record) -> bool:
        token = record.client_token
        if token is not None:
            return self._guards.is_armed(token) or token in self._own_tokens
        return self._guards.is_armed(record.id)

    def _absorb_echo(self, event: ChangeEvent) -> bool:
        """
        Take the canonical copy of our own write without counting it as a
        remote change, so foreign events older than it lose.
        """
        record = event.record
        if event.kind == "delete" or record.deleted:
            return self._apply_delete(record.id)
        if record.id in self._pending_removals:
            return self._track_hidden(record)
        local = self._records.get(record.id)
        if local is None or record.version <= local.version:
            return False
        self._accept(record)
        return self._records[record.id] != local

    def _apply_insert(self, record: Record) -> bool:
        if record.id in self._tombstones:
            return False
        if record.id in self._records or record.id in self._pending_removals:
            return self._apply_update(record)

        provisional = self._matching_provisional(record)
        if provisional is not None:
            # Our own create, seen before its confirmation
            self._canonical_ids[provisional.id] = record.id
            self._replace_provisional(provisional.id, record)
            return True

        self._accept(record)
        self._touched_since_load.add(record.id)
        return True

    def _apply_update(self, record: Record) -> bool:
        if record.id in self._tombstones:
            return False
        if record.id in self._pending_removals:
            return self._track_hidden(record)
        current = self._records.get(record.id)
        if current is not None and record.version < current.version:
            logger.debug(
                "reconciler: stale update id=%s version=%d < %d", record.id, record.version, current.version
            )
            return False
        self._accept(record)
        self._touched_since_load.add(record.id)
        return self._records[record.id] != current

    def _apply_delete(self, record_id: str) -> bool:
        self._tombstones.add(record_id)
        self._overlays.pop(record_id, None)
        self._base.pop(record_id, None)
        return self._records.pop(record_id, None) is not None

    def _matching_provisional(self, record: Record) -> Record | None:
        if record.client_token is None:
            return None
        candidates = [r for r in self._records.values() if r.is_provisional and r.client_token == record.client_token]
        for candidate in candidates:
            if candidate.position == record.position:
                return candidate
        return candidates[0] if candidates else None

    # =======================================================================
    # Internals
    # =======================================================================

    def _merge(self, record: Record) -> None:
        """Merge a canonical record from the store, unless something newer is here."""
        if record.id in self._tombstones:
            return
        if record.id in self._pending_removals:
            self._track_hidden(record)
            return
        current = self._records.get(record.id)
        if current is not None and current.version > record.version:
            return
        self._accept(record)
        self._touched_since_load.add(record.id)

    def _track_hidden(self, record: Record) -> bool:
        """Keep the base copy of a record whose removal is in flight current, without showing it."""
        base = self._base.get(record.id)
        if base is None or record.version > base.version:
            self._base[record.id] = record
        return False

    def _accept(self, record: Record) -> None:
        """Make record the base copy for its id and show it with pending overlays."""
        self._base[record.id] = record
        self._records[record.id] = self._with_overlays(record)

    def _with_overlays(self, record: Record) -> Record:
        for _, changes in self._overlays.get(record.id, ()):
            record = changes.apply_to(record)
        return record

    def _drop_overlay(self, token: str, *, rebase: bool = True) -> None:
        """
        Forget the field changes made under token. With rebase, records they
        touched go back to their base copy plus whatever overlays remain.
        """
        for record_id in list(self._overlays):
            entries = self._overlays[record_id]
            remaining = [entry for entry in entries if entry[0] != token]
            if len(remaining) == len(entries):
                continue
            if remaining:
                self._overlays[record_id] = remaining
            else:
                del self._overlays[record_id]
            base = self._base.get(record_id)
            if rebase and base is not None and record_id in self._records:
                self._records[record_id] = self._with_overlays(base)

    def _forget(self, record_id: str) -> None:
        self._tombstones.add(record_id)
        self._overlays.pop(record_id, None)
        self._base.pop(record_id, None)
        self._records.pop(record_id, None)

    def _remember(self, token: str) -> None:
        self._own_tokens[token] = None
        while len(self._own_tokens) > _MAX_REMEMBERED_TOKENS:
            self._own_tokens.popitem(last=False)

    def _fail(self, operation: str, error: Exception) -> None:
        self._last_error = error
        logger.warning("reconciler: %s failed list_id=%s: %s", operation, self.list_id, error)
        self._notify()

    def _spawn(self, coro: Any) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        task.add_done_callback(_consume_exception)
        return task

    def _dispatch(self, operation: str, record_id: str | None, token: str, coro: Any) -> Mutation:
        logger.debug("reconciler: dispatch %s list_id=%s token=%s", operation, self.list_id, _short(token))
        return Mutation(operation, record_id, token, self._spawn(coro))

    def _resolved(self, operation: str, record_id: str | None, result: Any) -> Mutation:
        async def done() -> Any:
            return result

        return Mutation(operation, record_id, "", self._spawn(done()))
