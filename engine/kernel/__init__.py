"""
ListSync Kernel — the client-side sync core.

Components:
  store        — RemoteStore interface + in-memory implementation
  change_feed  — per-list subscriptions with resubscribe on transport drop
  ordering     — position assignment and pending/done view derivation
  reconciler   — optimistic mutations merged with remote change events

Backends (Postgres, LISTEN/NOTIFY) live in backend/.
"""

from engine.kernel.change_feed import SubscriptionManager, SubscriptionStatus
from engine.kernel.errors import (
    AuthorizationError,
    NotFoundError,
    SyncError,
    TransientNetworkError,
    ValidationError,
)
from engine.kernel.ordering import assign_positions, done_items, pending_items, sort_records
from engine.kernel.reconciler import Mutation, ReconciliationEngine
from engine.kernel.store import MemoryDatabase, MemoryRemoteStore, RemoteStore
from engine.kernel.types import ChangeEvent, FieldChanges, ItemDraft, Record, ViewState

__all__ = [
    "ReconciliationEngine",
    "Mutation",
    "SubscriptionManager",
    "SubscriptionStatus",
    "RemoteStore",
    "MemoryDatabase",
    "MemoryRemoteStore",
    "assign_positions",
    "sort_records",
    "pending_items",
    "done_items",
    "Record",
    "ItemDraft",
    "FieldChanges",
    "ChangeEvent",
    "ViewState",
    "SyncError",
    "TransientNetworkError",
    "AuthorizationError",
    "NotFoundError",
    "ValidationError",
]
