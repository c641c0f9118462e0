"""
ListSync Kernel — Shared Types

Data classes used across the store, change feed, ordering policy and
reconciliation engine. These are the contracts that bind the kernel together.

Records are immutable: every mutation produces a new Record through
dataclasses.replace, so a ViewState handed to the UI never changes under it.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any, Literal

from engine.kernel.errors import ValidationError

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

CHANGE_KINDS: set[str] = {"insert", "update", "delete"}

# Provisional records carry a client-side id until the store assigns one
PROVISIONAL_PREFIX = "tmp-"

# Fields a FieldChanges may touch
MUTABLE_FIELDS: tuple[str, ...] = ("text", "quantity", "notes", "done", "priority", "position")

ChangeKind = Literal["insert", "update", "delete"]


class _Unset:
    """Sentinel for 'field not part of this change' (distinct from None)."""

    _instance: _Unset | None = None

    def __new__(cls) -> _Unset:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET: Any = _Unset()


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Record:
    """
    One list entry. The canonical copy lives in the RemoteStore; the engine
    holds a cached projection of it.

    id and version are assigned by the store. client_token is the correlation
    token of the client write that last touched the row (None if unknown).
    """

    id: str
    list_id: str
    text: str
    position: int
    created_at: datetime
    updated_at: datetime
    version: int = 1
    done: bool = False
    priority: bool = False
    quantity: int | None = None
    notes: str | None = None
    deleted: bool = False
    created_by: str | None = None
    created_by_name: str | None = None
    client_token: str | None = None

    @property
    def is_provisional(self) -> bool:
        return self.id.startswith(PROVISIONAL_PREFIX)


@dataclass(frozen=True)
class ItemDraft:
    """What the client supplies to create a record. No id, no version."""

    text: str
    quantity: int | None = None
    notes: str | None = None
    priority: bool = False


@dataclass(frozen=True)
class FieldChanges:
    """
    Partial update. Fields left as UNSET are not touched; None explicitly
    clears an optional field (quantity, notes).
    """

    text: Any = UNSET
    quantity: Any = UNSET
    notes: Any = UNSET
    done: Any = UNSET
    priority: Any = UNSET
    position: Any = UNSET

    def as_dict(self) -> dict[str, Any]:
        """Only the fields that are part of this change."""
        return {name: getattr(self, name) for name in MUTABLE_FIELDS if getattr(self, name) is not UNSET}

    def is_empty(self) -> bool:
        return not self.as_dict()

    def apply_to(self, record: Record, *, touched_at: datetime | None = None) -> Record:
        """Return a copy of record with these changes applied."""
        return replace(record, updated_at=touched_at or record.updated_at, **self.as_dict())

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> FieldChanges:
        unknown = set(d) - set(MUTABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown fields: {sorted(unknown)}")
        return cls(**d)


@dataclass(frozen=True)
class ChangeEvent:
    """
    One change-feed notification. A tagged variant over kind with a fixed
    record schema; raw payloads are validated before one of these is built.

    For delete events, record is the last known row (tombstoned or the
    old row of a hard delete).
    """

    kind: ChangeKind
    record: Record
    previous: Record | None = None

    @property
    def record_id(self) -> str:
        return self.record.id


@dataclass(frozen=True)
class ViewState:
    """The UI-facing projection of a partition."""

    items: tuple[Record, ...] = ()
    pending_items: tuple[Record, ...] = ()
    done_items: tuple[Record, ...] = ()
    is_loading: bool = False
    last_error: Exception | None = None


@dataclass
class Member:
    """A user's membership in a list, as the store sees it."""

    user_id: str
    role: Literal["viewer", "editor", "owner"] = "editor"
    display_name: str | None = None
    email: str | None = None
    added_at: datetime = field(default_factory=lambda: utcnow())

    @property
    def can_write(self) -> bool:
        return self.role in ("editor", "owner")

    @property
    def label(self) -> str | None:
        """Human-readable name for provenance display."""
        return self.display_name or self.email


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def utcnow() -> datetime:
    """Current UTC time."""
    return datetime.now(UTC)


def provisional_id(token: str) -> str:
    """Client-side id for a record the store has not yet created."""
    return f"{PROVISIONAL_PREFIX}{token}"
