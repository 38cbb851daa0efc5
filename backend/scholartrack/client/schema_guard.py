"""
Schema Guard

Makes sure the local store exposes every required collection before anything
else touches it. A store whose stored version already claims to be current
can still lack collections (for example after a client rollback); upgrade
steps never run for it, so the guard repairs it by backing up what is there,
persisting that backup as a snapshot, deleting the database, recreating it at
the latest version and restoring the backup. Unique indexes the old store had
skipped stay absent so its rows can be restored unchanged.

States:
    CLOSED -> OPENING -> SCHEMA_CHECK -> READY
    SCHEMA_CHECK -> RECREATING -> RESTORING -> READY
    any failure during repair -> FAILED
"""

import logging
from enum import Enum
from typing import Dict, Any, List, Optional

from scholartrack.client.local_store import (
    LocalStore, SchemaError, StoreError, ConstraintError, REQUIRED_COLLECTIONS, LATEST_VERSION
)
from scholartrack.services.migration.snapshots import SnapshotStore, create_snapshot

logger = logging.getLogger(__name__)

Dataset = Dict[str, Any]


class StoreState(str, Enum):
    CLOSED = "closed"
    OPENING = "opening"
    SCHEMA_CHECK = "schema_check"
    READY = "ready"
    RECREATING = "recreating"
    RESTORING = "restoring"
    FAILED = "failed"


class SchemaRepairError(SchemaError):
    """The store could not be brought to the complete schema. Not recoverable."""
    pass


class SchemaGuard:
    """Guards one ``LocalStore`` handle; each check recreates the store at most once."""

    def __init__(self, store: LocalStore, version: int = LATEST_VERSION,
                 required_collections=REQUIRED_COLLECTIONS,
                 snapshots: Optional[SnapshotStore] = None):
        self.store = store
        self.version = version
        self.required_collections = tuple(required_collections)
        self.snapshots = snapshots
        # Records a repair could not re-insert; they remain in the backup snapshot
        self.restore_conflicts: List[Dict[str, Any]] = []
        self.state = StoreState.READY if store.is_open else StoreState.CLOSED

    def missing_collections(self) -> List[str]:
        existing = set(self.store.collection_names())
        return [name for name in self.required_collections if name not in existing]

    async def ensure_ready(self, loaded_state: Optional[Dataset] = None) -> bool:
        """
        Open the store if needed and verify its collections.

        ``loaded_state`` is the caller's in-memory copy of the dataset; it is
        used for collections that are missing from the store. Returns True when
        the store had to be recreated, in which case callers should reload
        their in-memory state from the store.
        """
        if self.state == StoreState.FAILED:
            raise SchemaRepairError(
                f"Local store {self.store.name} previously failed schema repair"
            )

        if not self.store.is_open:
            self._transition(StoreState.OPENING)
            try:
                await self.store.open(self.version)
            except StoreError as e:
                self._transition(StoreState.FAILED)
                raise SchemaRepairError(f"Could not open local store {self.store.name}: {e}") from e

        self._transition(StoreState.SCHEMA_CHECK)
        missing = self.missing_collections()
        if not missing:
            self._transition(StoreState.READY)
            return False

        logger.warning(
            f"Local store {self.store.name} is missing collections {missing}; recreating with data preservation"
        )
        await self._recreate(loaded_state or {})
        return True

    async def _recreate(self, loaded_state: Dataset):
        backup = await self._backup(loaded_state)
        skipped_indexes = self.store.missing_unique_indexes()
        snapshot_id = await self._persist_backup(backup)

        self._transition(StoreState.RECREATING)
        try:
            await self.store.delete_database()
            await self.store.open(self.version)
        except StoreError as e:
            self._transition(StoreState.FAILED)
            raise SchemaRepairError(
                f"Failed to recreate local store {self.store.name}: {e}{self._recovery_hint(snapshot_id)}"
            ) from e

        missing = self.missing_collections()
        if missing:
            self._transition(StoreState.FAILED)
            raise SchemaRepairError(
                f"Local store {self.store.name} is still missing {', '.join(missing)} after recreation"
                f"{self._recovery_hint(snapshot_id)}"
            )

        self._transition(StoreState.RESTORING)
        try:
            # The old store held rows that violate these; the new one must accept them too
            for collection, index_name in skipped_indexes:
                logger.warning(f"Recreating {collection} without unique index {index_name}")
                await self.store.drop_index(collection, index_name)
            restored = await self._restore(backup)
        except StoreError as e:
            self._transition(StoreState.FAILED)
            raise SchemaRepairError(
                f"Failed to restore data into recreated store: {e}{self._recovery_hint(snapshot_id)}"
            ) from e

        self._transition(StoreState.READY)
        if self.restore_conflicts:
            logger.error(
                f"Local store {self.store.name} recreated but {len(self.restore_conflicts)} record(s) "
                f"could not be restored{self._recovery_hint(snapshot_id)}"
            )
        logger.info(f"Local store {self.store.name} recreated; restored {restored} record(s)")

    async def _persist_backup(self, backup: Dataset) -> Optional[str]:
        """Save the backup as a snapshot before the database file is deleted."""
        if self.snapshots is None:
            return None
        snapshot = create_snapshot(backup, f"Before schema repair of {self.store.name}")
        try:
            await self.snapshots.save(snapshot)
        except OSError as e:
            self._transition(StoreState.FAILED)
            raise SchemaRepairError(
                f"Could not save a backup of {self.store.name} before schema repair: {e}"
            ) from e
        return snapshot.id

    @staticmethod
    def _recovery_hint(snapshot_id: Optional[str]) -> str:
        return f" (backup kept in snapshot {snapshot_id})" if snapshot_id else ""

    async def _backup(self, loaded_state: Dataset) -> Dataset:
        """Collect records from surviving collections, falling back to in-memory state."""
        backup: Dataset = {}
        existing = set(self.store.collection_names())
        for collection in self.required_collections:
            if collection in existing:
                backup[collection] = await self.store.get_all(collection)
            else:
                records = loaded_state.get(collection) or []
                if isinstance(records, dict):
                    records = [records]
                backup[collection] = list(records)
        return backup

    async def _restore(self, backup: Dataset) -> int:
        restored = 0
        for collection, records in backup.items():
            for record in records:
                try:
                    await self.store.put(collection, record)
                except ConstraintError as e:
                    self.restore_conflicts.append({"collection": collection, "record": record, "error": str(e)})
                    continue
                restored += 1
        return restored

    def _transition(self, state: StoreState):
        logger.debug(f"Schema guard for {self.store.name}: {self.state.value} -> {state.value}")
        self.state = state
