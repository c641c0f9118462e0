"""
ListSync Kernel — Change feed subscriptions

SubscriptionManager owns the map list_id → Subscription. One subscription
per partition; subscribing twice returns the live one.

Lifecycle per subscription:

    UNSUBSCRIBED → SUBSCRIBING → ACTIVE → UNSUBSCRIBED   (explicit unsubscribe)
                                 ACTIVE → ERROR → SUBSCRIBING   (transport drop)

Events arrive from the store synchronously and are buffered on a bounded
asyncio.Queue. A pump task hands them to the subscriber's handler one at a
time, in arrival order. A handler that raises is logged and skipped; the
subscription stays up. When the buffer is full its events are dropped and
on_reconnect is called, the same as after a transport drop.

After a transport drop the manager resubscribes with bounded exponential
backoff and then calls on_reconnect, since events sent while detached are
lost and the subscriber has to refetch.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from engine.kernel.config import Settings, settings
from engine.kernel.errors import AuthorizationError
from engine.kernel.store import RemoteStore, SubscriptionHandle

logger = logging.getLogger(__name__)

EventHandler = Callable[[Any], Awaitable[None] | None]
ReconnectHandler = Callable[[], Awaitable[None] | None]
StatusHandler = Callable[[str, "SubscriptionStatus"], None]


class SubscriptionStatus(str, Enum):
    UNSUBSCRIBED = "unsubscribed"
    SUBSCRIBING = "subscribing"
    ACTIVE = "active"
    ERROR = "error"


@dataclass
class Subscription:
    """One partition's feed: store handle, event buffer and background tasks."""

    list_id: str
    handler: EventHandler
    on_reconnect: ReconnectHandler | None = None
    status: SubscriptionStatus = SubscriptionStatus.UNSUBSCRIBED
    handle: SubscriptionHandle | None = None
    queue: asyncio.Queue = field(default_factory=asyncio.Queue)
    generation: int = 0
    attempts: int = 0
    closed: bool = False
    last_error: Exception | None = None
    pump_task: asyncio.Task | None = field(default=None, repr=False)
    reconnect_task: asyncio.Task | None = field(default=None, repr=False)
    resync_task: asyncio.Task | None = field(default=None, repr=False)


class SubscriptionManager:
    """Per-partition change feed subscriptions against one RemoteStore."""

    def __init__(
        self,
        store: RemoteStore,
        cfg: Settings | None = None,
        *,
        on_status: StatusHandler | None = None,
    ) -> None:
        self._store = store
        self._settings = cfg or settings
        self._on_status = on_status
        self._subs: dict[str, Subscription] = {}

    # -- queries --

    def get(self, list_id: str) -> Subscription | None:
        return self._subs.get(list_id)

    def status(self, list_id: str) -> SubscriptionStatus:
        sub = self._subs.get(list_id)
        return sub.status if sub is not None else SubscriptionStatus.UNSUBSCRIBED

    def active_count(self) -> int:
        return sum(1 for sub in self._subs.values() if sub.status is SubscriptionStatus.ACTIVE)

    # -- lifecycle --

    async def subscribe(
        self,
        list_id: str,
        handler: EventHandler,
        *,
        on_reconnect: ReconnectHandler | None = None,
    ) -> Subscription:
        """
        Subscribe to a partition. Returns the existing subscription if one is
        already subscribing, active or recovering.

        Raises whatever the store raises on the first attempt; nothing is
        left registered in that case.
        """
        existing = self._subs.get(list_id)
        if existing is not None:
            logger.debug("change_feed: reusing subscription list_id=%s status=%s", list_id, existing.status.value)
            return existing

        sub = Subscription(
            list_id=list_id,
            handler=handler,
            on_reconnect=on_reconnect,
            queue=asyncio.Queue(maxsize=self._settings.FEED_QUEUE_MAX),
        )
        self._subs[list_id] = sub
        try:
            await self._attach(sub)
        except Exception:
            self._subs.pop(list_id, None)
            sub.closed = True
            self._set_status(sub, SubscriptionStatus.UNSUBSCRIBED)
            raise

        if sub.closed:
            return sub
        sub.pump_task = asyncio.create_task(self._pump(sub), name=f"change-feed-pump:{list_id}")
        return sub

    async def unsubscribe(self, list_id: str) -> None:
        """Stop a partition's feed. Buffered, undelivered events are discarded."""
        sub = self._subs.pop(list_id, None)
        if sub is None:
            return
        sub.closed = True
        sub.generation += 1

        await _cancel(sub.reconnect_task)
        await _cancel(sub.resync_task)
        await _cancel(sub.pump_task)
        discarded = _drain_queue(sub.queue)
        if discarded:
            logger.debug("change_feed: discarded %d buffered events list_id=%s", discarded, list_id)

        handle, sub.handle = sub.handle, None
        if handle is not None and not handle.closed:
            try:
                await self._store.unsubscribe(handle)
            except Exception as e:
                logger.warning("change_feed: unsubscribe failed list_id=%s: %s", list_id, e)

        self._set_status(sub, SubscriptionStatus.UNSUBSCRIBED)

    async def unsubscribe_all(self) -> None:
        for list_id in list(self._subs):
            await self.unsubscribe(list_id)

    async def close(self) -> None:
        await self.unsubscribe_all()

    async def drain(self, list_id: str) -> None:
        """Wait until every event buffered so far has been handled."""
        sub = self._subs.get(list_id)
        if sub is not None and sub.pump_task is not None:
            await sub.queue.join()

    async def __aenter__(self) -> SubscriptionManager:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # -- internals --

    async def _attach(self, sub: Subscription) -> None:
        self._set_status(sub, SubscriptionStatus.SUBSCRIBING)
        sub.generation += 1
        generation = sub.generation

        def deliver(event: Any) -> None:
            # Handles from an earlier attach may still fire; ignore them
            if sub.closed or generation != sub.generation:
                return
            try:
                sub.queue.put_nowait(event)
            except asyncio.QueueFull:
                self._on_overflow(sub)

        def transport_error(exc: Exception) -> None:
            if sub.closed or generation != sub.generation:
                return
            self._on_transport_error(sub, exc)

        sub.handle = await self._store.subscribe(sub.list_id, deliver, on_error=transport_error)
        if sub.closed:
            # Unsubscribed while the store call was in flight
            handle, sub.handle = sub.handle, None
            await self._store.unsubscribe(handle)
            return
        sub.attempts = 0
        sub.last_error = None
        self._set_status(sub, SubscriptionStatus.ACTIVE)

    def _on_transport_error(self, sub: Subscription, exc: Exception) -> None:
        logger.warning("change_feed: transport dropped list_id=%s: %s", sub.list_id, exc)
        sub.last_error = exc
        if sub.handle is not None:
            sub.handle.closed = True
        self._set_status(sub, SubscriptionStatus.ERROR)
        if sub.reconnect_task is None or sub.reconnect_task.done():
            sub.reconnect_task = asyncio.create_task(
                self._reconnect(sub), name=f"change-feed-reconnect:{sub.list_id}"
            )

    async def _reconnect(self, sub: Subscription) -> None:
        while not sub.closed:
            delay = self._settings.resubscribe_delay(sub.attempts)
            logger.info(
                "change_feed: resubscribing list_id=%s attempt=%d in %.3fs", sub.list_id, sub.attempts + 1, delay
            )
            await asyncio.sleep(delay)
            if sub.closed:
                return
            try:
                await self._attach(sub)
            except AuthorizationError as e:
                # Access was revoked while detached; retrying cannot help
                logger.warning("change_feed: resubscribe denied list_id=%s: %s", sub.list_id, e)
                sub.last_error = e
                self._subs.pop(sub.list_id, None)
                sub.closed = True
                self._set_status(sub, SubscriptionStatus.UNSUBSCRIBED)
                return
            except Exception as e:
                logger.warning("change_feed: resubscribe failed list_id=%s: %s", sub.list_id, e)
                sub.last_error = e
                sub.attempts += 1
                self._set_status(sub, SubscriptionStatus.ERROR)
                continue

            await self._resync(sub)
            return

    def _on_overflow(self, sub: Subscription) -> None:
        discarded = _drain_queue(sub.queue)
        logger.warning("change_feed: buffer full, dropped %d events list_id=%s; resyncing", discarded + 1, sub.list_id)
        if sub.resync_task is None or sub.resync_task.done():
            sub.resync_task = asyncio.create_task(self._resync(sub), name=f"change-feed-resync:{sub.list_id}")

    async def _resync(self, sub: Subscription) -> None:
        """Tell the subscriber its feed has a gap."""
        if sub.on_reconnect is None or sub.closed:
            return
        try:
            result = sub.on_reconnect()
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("change_feed: on_reconnect failed list_id=%s", sub.list_id)

    async def _pump(self, sub: Subscription) -> None:
        while True:
            event = await sub.queue.get()
            try:
                result = sub.handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("change_feed: handler failed list_id=%s", sub.list_id)
            finally:
                sub.queue.task_done()

    def _set_status(self, sub: Subscription, status: SubscriptionStatus) -> None:
        if sub.status is status:
            return
        logger.debug("change_feed: list_id=%s %s -> %s", sub.list_id, sub.status.value, status.value)
        sub.status = status
        if self._on_status is not None:
            try:
                self._on_status(sub.list_id, status)
            except Exception:
                logger.exception("change_feed: status callback failed list_id=%s", sub.list_id)


async def _cancel(task: asyncio.Task | None) -> None:
    """Cancel a background task and wait for it, unless it is the caller."""
    if task is None or task.done():
        return
    task.cancel()
    if task is asyncio.current_task():
        return
    try:
        await task
    except asyncio.CancelledError:
        pass


def _drain_queue(queue: asyncio.Queue) -> int:
    count = 0
    while True:
        try:
            queue.get_nowait()
        except asyncio.QueueEmpty:
            return count
        queue.task_done()
        count += 1
