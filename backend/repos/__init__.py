"""
Repository layer for ListSync.

All SQL lives here and ONLY here. No database access outside this module.
"""

from backend.repos.item_repo import PostgresRemoteStore

__all__ = [
    "PostgresRemoteStore",
]
