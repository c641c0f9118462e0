"""Item models: table rows and change notifications, decoded into kernel types."""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, model_validator

from engine.kernel.types import ChangeEvent, Member, Record


class ItemRow(BaseModel):
    """
    A row of the items table. Built from an asyncpg record or from the
    'record'/'old' object of a NOTIFY payload (where timestamps arrive as
    ISO strings and pydantic parses them).
    """

    model_config = {"extra": "ignore"}

    id: str
    list_id: str
    text: str
    quantity: int | None = Field(default=None, ge=1, le=999)
    notes: str | None = None
    done: bool = False
    priority: bool = False
    position: int = 0
    version: int = Field(default=1, ge=1)
    deleted: bool = False
    created_by: str | None = None
    created_by_name: str | None = None
    client_token: str | None = None
    created_at: datetime
    updated_at: datetime

    def to_record(self) -> Record:
        return Record(
            id=self.id,
            list_id=self.list_id,
            text=self.text,
            quantity=self.quantity,
            notes=self.notes,
            done=self.done,
            priority=self.priority,
            position=self.position,
            version=self.version,
            deleted=self.deleted,
            created_by=self.created_by,
            created_by_name=self.created_by_name,
            client_token=self.client_token,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


class MemberRow(BaseModel):
    """A list_members row joined with the member's profile."""

    model_config = {"extra": "ignore"}

    list_id: str
    user_id: str
    role: Literal["viewer", "editor", "owner"]
    display_name: str | None = None
    email: str | None = None
    added_at: datetime

    def to_member(self) -> Member:
        return Member(
            user_id=self.user_id,
            role=self.role,
            display_name=self.display_name,
            email=self.email,
            added_at=self.added_at,
        )


class NotifiedRow(ItemRow):
    """
    An items row as the notification trigger sends it. 'old' never carries
    text or notes, and neither does 'record' in a partial payload.
    """

    text: str = ""


class ChangePayload(BaseModel):
    """
    What the items trigger sends with pg_notify.

    A soft delete arrives as an UPDATE with deleted=true and is reported as a
    delete; a hard DELETE carries the old row as 'record'. A row too large to
    fit the 8000-byte notification limit arrives with partial=true and
    without its text; the listener fetches it instead.
    """

    model_config = {"extra": "forbid"}

    op: Literal["INSERT", "UPDATE", "DELETE"]
    table: Literal["items"] = "items"
    partial: bool = False
    record: NotifiedRow
    old: NotifiedRow | None = None

    @model_validator(mode="after")
    def _full_record_has_text(self) -> ChangePayload:
        if not self.partial and "text" not in self.record.model_fields_set:
            raise ValueError("record without text must be marked partial")
        return self

    @property
    def needs_fetch(self) -> bool:
        """A partial insert or update; deletes only need the id."""
        return self.partial and self.op != "DELETE" and not self.record.deleted

    def to_event(self) -> ChangeEvent:
        record = self.record.to_record()
        previous = self._previous(record)
        if self.op == "DELETE" or record.deleted:
            return ChangeEvent(kind="delete", record=record, previous=previous)
        if self.op == "INSERT":
            return ChangeEvent(kind="insert", record=record)
        return ChangeEvent(kind="update", record=record, previous=previous)

    def _previous(self, record: Record) -> Record | None:
        if self.old is None:
            return None
        # Fields the trigger left out are reported as unchanged
        missing = {name: getattr(record, name) for name in ("text", "notes") if name not in self.old.model_fields_set}
        return replace(self.old.to_record(), **missing)
