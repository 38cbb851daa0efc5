"""
Server-side sync

Reconciles pushed client datasets with the server store:
- Up-sync as replace-by-upsert, checked for conflicts before any write
- Down-sync of the complete canonical dataset
- Full sync combining both in one round trip
"""

from .sync_service import SyncService, SyncConflictError

__all__ = ["SyncService", "SyncConflictError"]
