"""
Migration Engine

Applies bulk rewrites to the transaction collection inside a safety envelope:
- snapshots the complete store before touching anything
- runs the transformation batch by batch, one record at a time
- verifies integrity afterwards and treats any violation as failure
- restores the pre-migration snapshot on failure

The returned ``MigrationResult`` distinguishes the three possible outcomes:
completed, rolled back, and failed without rollback (the store may be partial).
"""

import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Any, List, Optional, Set, Callable, Awaitable

from scholartrack.client.local_store import LocalStore, STUDENTS, TRANSACTIONS
from scholartrack.models.enums import MigrationKind, OrphanedAction, DEFAULT_STATUS
from scholartrack.services.migration.integrity import verify_database_integrity, IntegrityReport
from scholartrack.services.migration.snapshots import SnapshotStore, capture_snapshot, utc_timestamp

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 50


class MigrationError(Exception):
    """Raised inside the envelope when a transformation cannot be completed."""
    pass


class MigrationStatus(Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class MigrationOperation:
    """Transient record of one migration attempt"""

    def __init__(self, operation_type: str, description: str, snapshot_id: str,
                 old_value: Optional[str] = None, new_value: Optional[str] = None):
        self.id = str(uuid.uuid4())
        self.type = operation_type
        self.description = description
        self.timestamp = utc_timestamp()
        self.status = MigrationStatus.PENDING
        self.snapshot_id = snapshot_id
        self.details: Dict[str, Any] = {}
        if old_value is not None:
            self.details["oldValue"] = old_value
        if new_value is not None:
            self.details["newValue"] = new_value

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "description": self.description,
            "timestamp": self.timestamp,
            "status": self.status.value,
            "snapshotId": self.snapshot_id,
            "details": dict(self.details),
        }


@dataclass
class MigrationResult:
    success: bool
    operation_id: str
    affected_records: int = 0
    snapshot_id: Optional[str] = None
    error: Optional[str] = None
    rollback_performed: bool = False
    operation: Optional[MigrationOperation] = field(default=None, repr=False)


@dataclass
class CleanupOptions:
    """
    How ``cleanup_orphaned`` treats transactions whose status or event type is
    not in the valid sets, or whose student no longer exists. Orphaned student
    history can only be kept or deleted.
    """
    valid_statuses: Set[str]
    valid_events: Set[str]
    orphaned_status_action: OrphanedAction = OrphanedAction.KEEP
    orphaned_event_action: OrphanedAction = OrphanedAction.KEEP
    orphaned_student_action: OrphanedAction = OrphanedAction.KEEP
    replacement_status: str = DEFAULT_STATUS
    replacement_event: Optional[str] = None

    def __post_init__(self):
        self.orphaned_status_action = OrphanedAction(self.orphaned_status_action)
        self.orphaned_event_action = OrphanedAction(self.orphaned_event_action)
        self.orphaned_student_action = OrphanedAction(self.orphaned_student_action)
        if self.orphaned_status_action == OrphanedAction.MIGRATE and not self.replacement_status:
            raise ValueError("replacement_status is required to migrate orphaned statuses")
        if self.orphaned_event_action == OrphanedAction.MIGRATE and not self.replacement_event:
            raise ValueError("replacement_event is required to migrate orphaned event types")
        if self.orphaned_student_action == OrphanedAction.MIGRATE:
            raise ValueError("Orphaned student history can only be kept or deleted")


class MigrationEngine:
    """Runs reversible transaction migrations against one local store."""

    def __init__(self, store: LocalStore, snapshots: SnapshotStore, batch_size: int = DEFAULT_BATCH_SIZE):
        if batch_size < 1:
            raise ValueError("batch_size must be positive")
        self.store = store
        self.snapshots = snapshots
        self.batch_size = batch_size

    async def perform_migration(self, kind: MigrationKind, old_value: str, new_value: str) -> MigrationResult:
        """Rewrite every transaction whose status (or event type) equals ``old_value``."""
        kind = MigrationKind(kind)
        field_name = "status" if kind == MigrationKind.STATUS else "eventType"

        async def transform() -> int:
            affected = 0
            for batch in await self._batches():
                for transaction in batch:
                    if transaction.get(field_name) != old_value:
                        continue
                    await self.store.put(TRANSACTIONS, {**transaction, field_name: new_value})
                    affected += 1
            return affected

        return await self._run_safely(
            transform,
            operation_type=f"migrate_{kind.value}",
            description=f"Migrate {kind.value} '{old_value}' to '{new_value}'",
            old_value=old_value,
            new_value=new_value,
        )

    async def cleanup_orphaned(self, options: CleanupOptions) -> MigrationResult:
        """
        Delete, migrate or keep transactions that reference undefined types or
        removed students.

        KEEP leaves those transactions in place, so for each category set to
        KEEP the matching part of the post-cleanup integrity check is switched
        off for this run. Every other migration runs the full check.
        """

        async def transform() -> int:
            student_codes = {s.get("code") for s in await self.store.get_all(STUDENTS)}
            affected = 0
            for batch in await self._batches():
                for transaction in batch:
                    if await self._cleanup_transaction(transaction, options, student_codes):
                        affected += 1
            return affected

        return await self._run_safely(
            transform,
            operation_type="cleanup_orphaned",
            description=(
                f"Clean up orphaned data (statuses: {options.orphaned_status_action.value}, "
                f"events: {options.orphaned_event_action.value}, "
                f"students: {options.orphaned_student_action.value})"
            ),
            check_statuses=options.orphaned_status_action != OrphanedAction.KEEP,
            check_events=options.orphaned_event_action != OrphanedAction.KEEP,
            check_students=options.orphaned_student_action != OrphanedAction.KEEP,
        )

    async def _cleanup_transaction(self, transaction: Dict[str, Any], options: CleanupOptions,
                                   student_codes: Set[str]) -> bool:
        key = transaction["id"]
        updated = dict(transaction)

        student_code = transaction.get("studentCode")
        if (options.orphaned_student_action == OrphanedAction.DELETE
                and student_code and student_code not in student_codes):
            await self.store.delete(TRANSACTIONS, key)
            return True

        if transaction.get("status") not in options.valid_statuses:
            if options.orphaned_status_action == OrphanedAction.DELETE:
                await self.store.delete(TRANSACTIONS, key)
                return True
            if options.orphaned_status_action == OrphanedAction.MIGRATE:
                updated["status"] = options.replacement_status

        event_type = transaction.get("eventType")
        if event_type and event_type not in options.valid_events:
            if options.orphaned_event_action == OrphanedAction.DELETE:
                await self.store.delete(TRANSACTIONS, key)
                return True
            if options.orphaned_event_action == OrphanedAction.MIGRATE:
                updated["eventType"] = options.replacement_event

        if updated == transaction:
            return False
        await self.store.put(TRANSACTIONS, updated)
        return True

    async def _batches(self) -> List[List[Dict[str, Any]]]:
        transactions = await self.store.get_all(TRANSACTIONS)
        return [
            transactions[i:i + self.batch_size]
            for i in range(0, len(transactions), self.batch_size)
        ]

    async def _run_safely(self, transform: Callable[[], Awaitable[int]], operation_type: str,
                          description: str, old_value: Optional[str] = None,
                          new_value: Optional[str] = None, check_statuses: bool = True,
                          check_events: bool = True, check_students: bool = True) -> MigrationResult:
        snapshot = await capture_snapshot(self.store, f"Before {description}")
        await self.snapshots.save(snapshot)

        operation = MigrationOperation(operation_type, description, snapshot.id, old_value, new_value)
        result = MigrationResult(
            success=False,
            operation_id=operation.id,
            snapshot_id=snapshot.id,
            operation=operation,
        )

        try:
            operation.status = MigrationStatus.IN_PROGRESS
            logger.info(f"Starting migration {operation.id}: {description}")

            affected = await transform()

            report: IntegrityReport = await verify_database_integrity(
                self.store, check_statuses=check_statuses, check_events=check_events,
                check_students=check_students,
            )
            if not report.is_valid:
                raise MigrationError(
                    f"Database integrity check failed after migration: {', '.join(report.errors)}"
                )

            operation.status = MigrationStatus.COMPLETED
            operation.details["affectedRecords"] = affected
            result.success = True
            result.affected_records = affected
            logger.info(f"Migration {operation.id} completed: {affected} record(s) affected")
            return result

        except Exception as e:
            operation.status = MigrationStatus.FAILED
            operation.details["error"] = str(e)
            logger.error(f"Migration {operation.id} failed, attempting rollback: {e}")

        if await self.snapshots.restore(snapshot, self.store):
            operation.status = MigrationStatus.ROLLED_BACK
            result.rollback_performed = True
            result.error = f"Migration failed and was rolled back: {operation.details['error']}"
            logger.warning(f"Migration {operation.id} rolled back to snapshot {snapshot.id}")
        else:
            result.snapshot_id = None
            result.error = f"Migration failed and rollback also failed: {operation.details['error']}"
            logger.critical(
                f"Migration {operation.id} failed and could not be rolled back; "
                f"local store may be partially migrated (snapshot {snapshot.id})"
            )
        return result
