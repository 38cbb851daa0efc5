"""
Database snapshots and their storage.

A snapshot is a write-once, checksummed copy of every local collection. The
snapshot store keeps them in their own key-value namespace (one JSON file per
snapshot under a directory) with no transactional coupling to the local store,
and evicts the oldest beyond a fixed retention count.
"""

import asyncio
import json
import logging
import os
import uuid
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Any, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from scholartrack.client.local_store import LocalStore, StoreError, REQUIRED_COLLECTIONS, STYLE_SETTINGS
from scholartrack.services.migration.checksum import generate_checksum

logger = logging.getLogger(__name__)

SNAPSHOT_FORMAT_VERSION = "1.0"


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class DatabaseSnapshot:
    id: str
    timestamp: str
    description: str
    data: Dict[str, Any]
    version: str = SNAPSHOT_FORMAT_VERSION
    checksum: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "DatabaseSnapshot":
        return cls(
            id=raw["id"],
            timestamp=raw["timestamp"],
            description=raw.get("description", ""),
            data=raw["data"],
            version=raw.get("version", SNAPSHOT_FORMAT_VERSION),
            checksum=raw.get("checksum", ""),
        )


def create_snapshot(data: Dict[str, Any], description: str,
                    timestamp: Optional[str] = None) -> DatabaseSnapshot:
    """Build a snapshot of ``data`` (collection name -> records)."""
    payload = {
        "students": list(data.get("students") or []),
        "classes": list(data.get("classes") or []),
        "transactions": list(data.get("transactions") or []),
        "styleSettings": data.get("styleSettings"),
        "customStatusTypes": list(data.get("customStatusTypes") or []),
        "customTeacherEventTypes": list(data.get("customTeacherEventTypes") or []),
    }
    # Round-trip through JSON so the stored payload matches what is hashed
    payload = json.loads(json.dumps(payload, ensure_ascii=False))
    return DatabaseSnapshot(
        id=str(uuid.uuid4()),
        timestamp=timestamp or utc_timestamp(),
        description=description,
        data=payload,
        version=SNAPSHOT_FORMAT_VERSION,
        checksum=generate_checksum(payload),
    )


async def capture_snapshot(store: LocalStore, description: str) -> DatabaseSnapshot:
    """Snapshot the complete current contents of a local store."""
    data: Dict[str, Any] = {}
    for collection in REQUIRED_COLLECTIONS:
        records = await store.get_all(collection)
        if collection == STYLE_SETTINGS:
            data[collection] = records[0] if records else None
        else:
            data[collection] = records
    return create_snapshot(data, description)


def verify_snapshot_integrity(snapshot: DatabaseSnapshot) -> bool:
    return generate_checksum(snapshot.data) == snapshot.checksum


class SnapshotStore:
    """Bounded, file-backed store of ``DatabaseSnapshot`` objects."""

    def __init__(self, directory: str, prefix: str = "scholartrack_snapshot_", max_snapshots: int = 10):
        self.directory = Path(directory)
        self.prefix = prefix
        self.max_snapshots = max_snapshots
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, snapshot_id: str) -> Path:
        return self.directory / f"{self.prefix}{snapshot_id}.json"

    # File IO runs in a worker thread

    async def save(self, snapshot: DatabaseSnapshot):
        """Persist a snapshot, then evict the oldest beyond the retention count."""
        await asyncio.to_thread(self._write, snapshot)
        logger.info(f"Saved snapshot {snapshot.id} ({snapshot.description})")
        await asyncio.to_thread(self._evict_old_snapshots)

    async def get(self, snapshot_id: str) -> Optional[DatabaseSnapshot]:
        return await asyncio.to_thread(self._read, snapshot_id)

    async def list(self) -> List[DatabaseSnapshot]:
        """All stored snapshots, newest first."""
        return await asyncio.to_thread(self._read_all)

    async def delete(self, snapshot_id: str) -> bool:
        return await asyncio.to_thread(self._remove, snapshot_id)

    async def restore(self, snapshot: DatabaseSnapshot, store: LocalStore) -> bool:
        """
        Replace every live collection with the snapshot's records.

        Refuses (returns False) when the snapshot's checksum does not match its
        payload. Returns True only if every step completed.
        """
        if not verify_snapshot_integrity(snapshot):
            logger.error(f"Snapshot {snapshot.id} failed its integrity check; refusing to restore")
            return False

        try:
            for collection in REQUIRED_COLLECTIONS:
                await store.clear(collection)

            for collection in REQUIRED_COLLECTIONS:
                records = snapshot.data.get(collection)
                if records is None:
                    continue
                if isinstance(records, dict):
                    records = [records]
                for record in records:
                    await store.add(collection, record)

        except (StoreError, SQLAlchemyError) as e:
            logger.error(f"Failed to restore from snapshot {snapshot.id}: {e}")
            return False

        logger.info(f"Restored local store from snapshot {snapshot.id}")
        return True

    def _write(self, snapshot: DatabaseSnapshot):
        path = self._path(snapshot.id)
        temp_path = path.with_suffix(".tmp")
        with open(temp_path, "w", encoding="utf-8") as f:
            json.dump(snapshot.to_dict(), f, ensure_ascii=False)
        os.replace(temp_path, path)

    def _read(self, snapshot_id: str) -> Optional[DatabaseSnapshot]:
        path = self._path(snapshot_id)
        if not path.exists():
            return None
        with open(path, encoding="utf-8") as f:
            return DatabaseSnapshot.from_dict(json.load(f))

    def _read_all(self) -> List[DatabaseSnapshot]:
        snapshots = []
        for path in self.directory.glob(f"{self.prefix}*.json"):
            try:
                with open(path, encoding="utf-8") as f:
                    snapshots.append(DatabaseSnapshot.from_dict(json.load(f)))
            except (OSError, ValueError, KeyError) as e:
                logger.warning(f"Skipping unreadable snapshot file {path.name}: {e}")
        return sorted(snapshots, key=lambda s: s.timestamp, reverse=True)

    def _remove(self, snapshot_id: str) -> bool:
        path = self._path(snapshot_id)
        if not path.exists():
            return False
        path.unlink()
        return True

    def _evict_old_snapshots(self):
        for snapshot in self._read_all()[self.max_snapshots:]:
            self._remove(snapshot.id)
            logger.debug(f"Evicted snapshot {snapshot.id}")
