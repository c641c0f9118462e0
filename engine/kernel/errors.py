"""
ListSync Kernel — Error taxonomy

Every failure the reconciliation engine surfaces is one of these. Store
adapters translate backend-specific exceptions into this hierarchy at the
boundary so the engine never sees asyncpg or transport errors directly.
"""

from __future__ import annotations


class SyncError(Exception):
    """Base class for all list sync failures."""

    retryable: bool = False


class TransientNetworkError(SyncError):
    """Store unreachable or timed out. Safe for the caller to retry."""

    retryable = True


class AuthorizationError(SyncError):
    """Acting user may not read or write the target (permission denied)."""


class NotFoundError(SyncError):
    """Target record vanished. Treated as already applied, not fatal."""

    def __init__(self, record_id: str, message: str | None = None) -> None:
        super().__init__(message or f"Record '{record_id}' not found")
        self.record_id = record_id


class ValidationError(SyncError):
    """Payload rejected before reaching the store (e.g. empty text)."""
