"""
ListSync Kernel — Payload Validation

Validates and sanitises client payloads before they touch local state or
the store. Every draft and field change goes through here first.

Validation is structural (well-formed?) not semantic (does the record
exist?). The store answers semantic questions.
"""

from __future__ import annotations

import re
from dataclasses import replace
from typing import Any

from engine.kernel.config import Settings, settings
from engine.kernel.errors import ValidationError
from engine.kernel.types import FieldChanges, ItemDraft

_ANGLE_BRACKETS = re.compile(r"[<>]")

# ---------------------------------------------------------------------------
# Sanitisation
# ---------------------------------------------------------------------------


def sanitize_text(text: str, max_length: int | None = None) -> str:
    """Trim, strip angle brackets, cap length."""
    limit = max_length if max_length is not None else settings.MAX_TEXT_LENGTH
    return _ANGLE_BRACKETS.sub("", text.strip())[:limit]


def sanitize_notes(notes: str, max_length: int | None = None) -> str:
    limit = max_length if max_length is not None else settings.MAX_NOTES_LENGTH
    return _ANGLE_BRACKETS.sub("", notes.strip())[:limit]


# ---------------------------------------------------------------------------
# Field validators: each returns a list of error strings, empty means valid
# ---------------------------------------------------------------------------


def _validate_text(text: Any, cfg: Settings) -> list[str]:
    if not isinstance(text, str):
        return ["Item text must be a string"]
    if not text.strip():
        return ["Item text cannot be empty"]
    if len(text.strip()) > cfg.MAX_TEXT_LENGTH:
        return [f"Item text too long (max {cfg.MAX_TEXT_LENGTH} characters)"]
    return []


def _validate_quantity(quantity: Any, cfg: Settings) -> list[str]:
    if quantity is None:
        return []
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        return ["Quantity must be an integer"]
    if quantity < cfg.MIN_QUANTITY:
        return [f"Quantity must be at least {cfg.MIN_QUANTITY}"]
    if quantity > cfg.MAX_QUANTITY:
        return [f"Quantity too large (max {cfg.MAX_QUANTITY})"]
    return []


def _validate_notes(notes: Any, cfg: Settings) -> list[str]:
    if notes is None:
        return []
    if not isinstance(notes, str):
        return ["Notes must be a string"]
    if len(notes.strip()) > cfg.MAX_NOTES_LENGTH:
        return [f"Notes too long (max {cfg.MAX_NOTES_LENGTH} characters)"]
    return []


def _validate_flag(name: str, value: Any) -> list[str]:
    if not isinstance(value, bool):
        return [f"'{name}' must be a boolean"]
    return []


def _validate_position(position: Any) -> list[str]:
    if isinstance(position, bool) or not isinstance(position, int):
        return ["Position must be an integer"]
    return []


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def validate_draft(draft: ItemDraft, cfg: Settings | None = None) -> list[str]:
    """Return a list of problems with a draft. Empty list = valid."""
    cfg = cfg or settings
    errors: list[str] = []
    errors.extend(_validate_text(draft.text, cfg))
    errors.extend(_validate_quantity(draft.quantity, cfg))
    errors.extend(_validate_notes(draft.notes, cfg))
    errors.extend(_validate_flag("priority", draft.priority))
    return errors


def validate_changes(changes: FieldChanges, cfg: Settings | None = None) -> list[str]:
    """Return a list of problems with a partial update. Empty list = valid."""
    cfg = cfg or settings
    if changes.is_empty():
        return ["Update must change at least one field"]
    fields = changes.as_dict()

    errors: list[str] = []
    if "text" in fields:
        errors.extend(_validate_text(fields["text"], cfg))
    if "quantity" in fields:
        errors.extend(_validate_quantity(fields["quantity"], cfg))
    if "notes" in fields:
        errors.extend(_validate_notes(fields["notes"], cfg))
    for flag in ("done", "priority"):
        if flag in fields:
            errors.extend(_validate_flag(flag, fields[flag]))
    if "position" in fields:
        errors.extend(_validate_position(fields["position"]))
    return errors


def clean_draft(draft: ItemDraft, cfg: Settings | None = None) -> ItemDraft:
    """
    Validate then sanitise a draft. Raises ValidationError listing every
    problem found.
    """
    cfg = cfg or settings
    errors = validate_draft(draft, cfg)
    if errors:
        raise ValidationError("; ".join(errors))
    text = sanitize_text(draft.text, cfg.MAX_TEXT_LENGTH)
    if not text:
        raise ValidationError("Item text cannot be empty")
    return replace(
        draft,
        text=text,
        notes=sanitize_notes(draft.notes, cfg.MAX_NOTES_LENGTH) if draft.notes else None,
    )


def clean_changes(changes: FieldChanges, cfg: Settings | None = None) -> FieldChanges:
    """Validate then sanitise a partial update. Raises ValidationError."""
    cfg = cfg or settings
    errors = validate_changes(changes, cfg)
    if errors:
        raise ValidationError("; ".join(errors))

    fields = changes.as_dict()
    if "text" in fields:
        fields["text"] = sanitize_text(fields["text"], cfg.MAX_TEXT_LENGTH)
        if not fields["text"]:
            raise ValidationError("Item text cannot be empty")
    if fields.get("notes"):
        fields["notes"] = sanitize_notes(fields["notes"], cfg.MAX_NOTES_LENGTH)
    elif "notes" in fields:
        fields["notes"] = None
    return FieldChanges(**fields)
