"""
Pydantic models for ListSync.

Row and notification shapes. No imports from db or repos.
"""

from backend.models.item import ChangePayload, ItemRow, MemberRow

__all__ = [
    "ItemRow",
    "MemberRow",
    "ChangePayload",
]
