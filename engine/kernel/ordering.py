"""
ListSync Kernel — Ordering Policy

Pure functions: no I/O, no clocks, no randomness. The same input always
produces the same output.

Positions are consecutive integers 0..N-1 in the new order. Every row in
the partition is rewritten on reorder; sparse fractional positions would
avoid that but are not needed for correctness.

The pending/done split is a view derivation, never stored state.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable, Sequence
from dataclasses import replace

from engine.kernel.errors import ValidationError
from engine.kernel.types import Record


def sort_key(record: Record) -> tuple:
    """Position first, creation time breaks ties, id keeps it total."""
    return (record.position, record.created_at, record.id)


def sort_records(records: Iterable[Record]) -> list[Record]:
    return sorted(records, key=sort_key)


def assign_positions(current_ids: Sequence[str], new_order: Sequence[str]) -> dict[str, int]:
    """
    Map each id to its new position.

    new_order must be a permutation of current_ids; anything else is
    rejected with the missing and extra ids named.
    """
    dupes = sorted(i for i, n in Counter(new_order).items() if n > 1)
    if dupes:
        raise ValidationError(f"REORDER_DUPLICATE: {dupes}")

    current_set = set(current_ids)
    new_set = set(new_order)
    if new_set != current_set:
        parts = []
        missing = current_set - new_set
        extra = new_set - current_set
        if missing:
            parts.append(f"missing: {sorted(missing)}")
        if extra:
            parts.append(f"extra: {sorted(extra)}")
        raise ValidationError(f"REORDER_MISMATCH: {', '.join(parts)}")

    return {record_id: index for index, record_id in enumerate(new_order)}


def reorder_records(records: Sequence[Record], new_order: Sequence[str]) -> list[Record]:
    """Apply a permutation and return new records carrying their new positions."""
    positions = assign_positions([r.id for r in records], new_order)
    by_id = {r.id: r for r in records}
    return [replace(by_id[record_id], position=positions[record_id]) for record_id in new_order]


def pending_items(records: Iterable[Record]) -> list[Record]:
    """
    Not-done records in position order, priority records first.
    Both sorts are stable so ties keep position order.
    """
    pending = sort_records(r for r in records if not r.done)
    return sorted(pending, key=lambda r: not r.priority)


def done_items(records: Iterable[Record]) -> list[Record]:
    """Done records, most recently updated first."""
    done = sort_records(r for r in records if r.done)
    return sorted(done, key=lambda r: r.updated_at, reverse=True)


def next_position(records: Sequence[Record]) -> int:
    """Position for a record appended to the end of the visible list."""
    return len(records)
