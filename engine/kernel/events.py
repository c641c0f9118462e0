"""
ListSync Kernel — Change Event Construction

Factory functions for well-formed records and change events.
Used by the in-memory store to publish its feed, and by tests to build
events concisely.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import UTC, datetime, timedelta
from typing import Any

from engine.kernel.types import CHANGE_KINDS, ChangeEvent, ChangeKind, Record

_EPOCH = datetime(2026, 1, 1, tzinfo=UTC)


def make_record(
    id: str,
    text: str = "",
    *,
    list_id: str = "list_test",
    position: int = 0,
    version: int = 1,
    done: bool = False,
    priority: bool = False,
    quantity: int | None = None,
    notes: str | None = None,
    deleted: bool = False,
    created_by: str | None = None,
    created_by_name: str | None = None,
    client_token: str | None = None,
    created_at: datetime | None = None,
    updated_at: datetime | None = None,
) -> Record:
    """
    Build a complete Record from minimal inputs.

    Timestamps default to a fixed epoch offset by position so ordering is
    deterministic in tests.
    """
    created = created_at or _EPOCH + timedelta(seconds=position)
    return Record(
        id=id,
        list_id=list_id,
        text=text or id,
        position=position,
        created_at=created,
        updated_at=updated_at or created,
        version=version,
        done=done,
        priority=priority,
        quantity=quantity,
        notes=notes,
        deleted=deleted,
        created_by=created_by,
        created_by_name=created_by_name,
        client_token=client_token,
    )


def make_change(kind: str, record: Record, previous: Record | None = None) -> ChangeEvent:
    """Build a ChangeEvent, rejecting unknown kinds."""
    if kind not in CHANGE_KINDS:
        raise ValueError(f"Unknown change kind: {kind}")
    k: ChangeKind = kind  # type: ignore[assignment]
    return ChangeEvent(kind=k, record=record, previous=previous)


def insert_event(record: Record) -> ChangeEvent:
    return ChangeEvent(kind="insert", record=record)


def update_event(record: Record, previous: Record | None = None, **changes: Any) -> ChangeEvent:
    """
    Update event for record. Keyword changes are applied on top of record and
    bump its version, which is how a store would report them.
    """
    if changes:
        previous = previous or record
        record = replace(record, version=record.version + 1, **changes)
    return ChangeEvent(kind="update", record=record, previous=previous)


def delete_event(record: Record) -> ChangeEvent:
    return ChangeEvent(kind="delete", record=replace(record, deleted=True), previous=record)
