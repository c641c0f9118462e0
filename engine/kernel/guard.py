"""
ListSync Kernel — Self-mutation guards

A guard marks a key (record id or correlation token) as "this client has a
write in flight for it". Inbound change events matching an armed key are
treated as echoes of our own write and dropped.

Guards are private to one engine. Each arm() creates a separate entry, so
two overlapping writes on the same record keep the key armed until both
have released or expired.
"""

from __future__ import annotations

import itertools
import time
from collections.abc import Callable
from dataclasses import dataclass


@dataclass
class SelfMutationGuard:
    key: str
    expires_at: float
    operation: str = ""
    serial: int = 0

    def expired(self, now: float) -> bool:
        return now >= self.expires_at


class GuardRegistry:
    """Armed guards keyed by record id or correlation token."""

    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl = ttl
        self._clock = clock
        self._guards: dict[str, list[SelfMutationGuard]] = {}
        self._serial = itertools.count(1)

    def arm(self, key: str, *, ttl: float | None = None, operation: str = "") -> SelfMutationGuard:
        # is_armed() only prunes the key it is asked about; this covers the rest
        self.purge_expired()
        guard = SelfMutationGuard(
            key=key,
            expires_at=self._clock() + (self._ttl if ttl is None else ttl),
            operation=operation,
            serial=next(self._serial),
        )
        self._guards.setdefault(key, []).append(guard)
        return guard

    def release(self, guard: SelfMutationGuard) -> None:
        """Release one guard. Releasing twice (or after expiry) is a no-op."""
        entries = self._guards.get(guard.key)
        if not entries:
            return
        remaining = [g for g in entries if g.serial != guard.serial]
        if remaining:
            self._guards[guard.key] = remaining
        else:
            del self._guards[guard.key]

    def release_all(self, guards: list[SelfMutationGuard]) -> None:
        for guard in guards:
            self.release(guard)

    def is_armed(self, key: str | None) -> bool:
        if key is None:
            return False
        entries = self._guards.get(key)
        if not entries:
            return False
        now = self._clock()
        live = [g for g in entries if not g.expired(now)]
        if live:
            self._guards[key] = live
            return True
        del self._guards[key]
        return False

    def purge_expired(self) -> int:
        """Drop every expired guard. Returns how many were dropped."""
        now = self._clock()
        dropped = 0
        for key in list(self._guards):
            live = [g for g in self._guards[key] if not g.expired(now)]
            dropped += len(self._guards[key]) - len(live)
            if live:
                self._guards[key] = live
            else:
                del self._guards[key]
        return dropped

    def clear(self) -> None:
        self._guards.clear()

    def __len__(self) -> int:
        return sum(len(entries) for entries in self._guards.values())
