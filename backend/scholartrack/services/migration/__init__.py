"""
Reversible data migrations

Components:
- Checksums over canonical JSON
- Checksummed snapshots and a bounded snapshot store
- Integrity checks over the local store
- Migration engine with snapshot-based rollback
"""

from .checksum import generate_checksum
from .snapshots import DatabaseSnapshot, SnapshotStore, create_snapshot, capture_snapshot
from .integrity import IntegrityReport, verify_database_integrity, find_orphaned_types
from .engine import (
    MigrationEngine,
    MigrationResult,
    MigrationOperation,
    MigrationStatus,
    CleanupOptions
)

__all__ = [
    "generate_checksum",
    "DatabaseSnapshot",
    "SnapshotStore",
    "create_snapshot",
    "capture_snapshot",
    "IntegrityReport",
    "verify_database_integrity",
    "find_orphaned_types",
    "MigrationEngine",
    "MigrationResult",
    "MigrationOperation",
    "MigrationStatus",
    "CleanupOptions",
]
