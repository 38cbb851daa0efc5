"""
Application Store

Client domain service over the local store. Keeps the in-memory dataset,
applies mutations in the order store write -> state update -> sync, and
translates store-level constraint failures into messages that name the
conflicting field.
"""

import json
import logging
import unicodedata
import uuid
from datetime import datetime, timezone
from typing import Dict, Any, List, Optional

from scholartrack.client.local_store import (
    LocalStore, ConstraintError, REQUIRED_COLLECTIONS,
    STUDENTS, CLASSES, TRANSACTIONS, STYLE_SETTINGS,
    CUSTOM_STATUS_TYPES, CUSTOM_TEACHER_EVENT_TYPES
)
from scholartrack.client.schema_guard import SchemaGuard
from scholartrack.client.sync_client import SyncClient, SyncError
from scholartrack.core.config import Settings, settings as default_settings
from scholartrack.models.enums import (
    MigrationKind, OrphanedAction, DEFAULT_STATUS, DEFAULT_STYLE_SETTINGS,
    valid_status_names, valid_event_names
)
from scholartrack.services.migration.engine import MigrationEngine, MigrationResult, CleanupOptions
from scholartrack.services.migration.integrity import find_orphaned_types
from scholartrack.services.migration.snapshots import SnapshotStore
from scholartrack.utils.validation import (
    ValidationResult, validate_custom_type_name, validate_custom_status_type,
    validate_custom_teacher_event_type, validate_color, normalize_name
)

logger = logging.getLogger(__name__)

BACKUP_FORMAT_VERSION = "1.0"


class DuplicateStudentError(Exception):
    """A student write collided with an existing code or label+emoji pair."""

    def __init__(self, message: str, field: str):
        super().__init__(message)
        self.field = field


class DuplicateClassError(Exception):
    pass


class DuplicateTypeNameError(Exception):
    """Status and event type names share one namespace."""
    pass


class ValidationFailedError(Exception):
    def __init__(self, result: ValidationResult):
        super().__init__("; ".join(result.errors))
        self.result = result


class MigrationFailedError(Exception):
    """A migration triggered by a type rename did not complete."""

    def __init__(self, result: MigrationResult):
        super().__init__(result.error or "Migration failed")
        self.result = result


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def emoji_name(emoji: str) -> str:
    """Lower-case Unicode name of a single emoji, or the emoji itself."""
    stripped = emoji.replace("\ufe0f", "")
    if len(stripped) == 1:
        return unicodedata.name(stripped, emoji).lower()
    return emoji


class AppStore:
    """In-memory view of the local dataset plus every domain action on it."""

    def __init__(self, store: LocalStore, snapshots: SnapshotStore,
                 sync_client: Optional[SyncClient] = None,
                 settings: Settings = default_settings,
                 guard: Optional[SchemaGuard] = None,
                 engine: Optional[MigrationEngine] = None):
        self.store = store
        self.snapshots = snapshots
        self.sync_client = sync_client
        self.settings = settings
        self.guard = guard or SchemaGuard(store, version=settings.LOCAL_SCHEMA_VERSION, snapshots=snapshots)
        self.engine = engine or MigrationEngine(store, snapshots, batch_size=settings.MIGRATION_BATCH_SIZE)

        self.students: List[Dict[str, Any]] = []
        self.classes: List[Dict[str, Any]] = []
        self.transactions: List[Dict[str, Any]] = []
        self.style_settings: Optional[Dict[str, Any]] = None
        self.custom_status_types: List[Dict[str, Any]] = []
        self.custom_teacher_event_types: List[Dict[str, Any]] = []
        self.current_class: Optional[Dict[str, Any]] = None

    @classmethod
    def from_settings(cls, settings: Settings = default_settings) -> "AppStore":
        return cls(
            store=LocalStore(settings.LOCAL_DB_PATH, settings.LOCAL_DB_NAME),
            snapshots=SnapshotStore(settings.SNAPSHOT_DIR, settings.SNAPSHOT_PREFIX, settings.MAX_SNAPSHOTS),
            sync_client=SyncClient(settings.SYNC_SERVER_URL, settings.SYNC_TIMEOUT_SECONDS),
            settings=settings,
        )

    # --- Lifecycle ---

    async def init(self):
        """Open and verify the store, load it, and pull from the server if there is no local data."""
        await self._ensure_ready()
        await self.load_data()

        if self.students or self.classes:
            return
        if not (self.settings.SYNC_ON_STARTUP and self.sync_client):
            return
        logger.info("No local data found, attempting to load from server")
        try:
            await self.load_from_server()
        except SyncError as e:
            logger.warning(f"Server not available, continuing with local data only: {e}")

    async def load_data(self):
        self.students = await self.store.get_all(STUDENTS)
        self.classes = await self.store.get_all(CLASSES)
        self.transactions = await self.store.get_all(TRANSACTIONS)
        self.custom_status_types = await self.store.get_all(CUSTOM_STATUS_TYPES)
        self.custom_teacher_event_types = await self.store.get_all(CUSTOM_TEACHER_EVENT_TYPES)

        stored_settings = await self.store.get_all(STYLE_SETTINGS)
        if stored_settings:
            self.style_settings = stored_settings[0]
        else:
            self.style_settings = {**DEFAULT_STYLE_SETTINGS, "updatedAt": now_iso()}
            await self.store.put(STYLE_SETTINGS, self.style_settings)

        if self.current_class and not any(c["id"] == self.current_class["id"] for c in self.classes):
            self.current_class = None
        if self.current_class is None and self.classes:
            self.current_class = self.classes[0]

        logger.info(
            f"Loaded local data: {len(self.students)} students, {len(self.classes)} classes, "
            f"{len(self.transactions)} transactions"
        )

    # --- Students ---

    async def add_student(self, label: str, code: str, emoji: str, classes: List[str]) -> Dict[str, Any]:
        await self._ensure_ready()
        student = {
            "id": str(uuid.uuid4()),
            "label": label,
            "code": code,
            "emoji": emoji,
            "classes": list(classes),
            "createdAt": now_iso(),
        }
        try:
            await self.store.add(STUDENTS, student)
        except ConstraintError as e:
            conflict = await self._student_conflict(student)
            if conflict is None:
                raise
            raise conflict from e

        self.students.append(student)
        logger.info(f"Added student {label} {emoji}")
        await self._after_mutation()
        return student

    async def update_student(self, student: Dict[str, Any]) -> Dict[str, Any]:
        await self._ensure_ready()
        student = {**student, "classes": list(student.get("classes") or [])}
        try:
            await self.store.put(STUDENTS, student)
        except ConstraintError as e:
            conflict = await self._student_conflict(student)
            if conflict is None:
                raise
            raise conflict from e

        self._replace_in(self.students, student)
        await self._after_mutation()
        return student

    async def remove_student(self, student_id: str):
        await self._ensure_ready()
        student = self._find(self.students, student_id)
        if student is None:
            return
        await self._delete_student(student)
        await self._after_mutation()

    @property
    def current_class_students(self) -> List[Dict[str, Any]]:
        if not self.current_class:
            return []
        return [s for s in self.students if self.current_class["name"] in s["classes"]]

    # --- Classes ---

    async def add_class(self, name: str) -> Dict[str, Any]:
        await self._ensure_ready()
        school_class = {"id": str(uuid.uuid4()), "name": name, "createdAt": now_iso()}
        try:
            await self.store.add(CLASSES, school_class)
        except ConstraintError as e:
            raise DuplicateClassError(f'A class named "{name}" already exists') from e

        self.classes.append(school_class)
        if self.current_class is None:
            self.current_class = school_class
        await self._after_mutation()
        return school_class

    async def update_class(self, class_data: Dict[str, Any]) -> Dict[str, Any]:
        await self._ensure_ready()
        try:
            await self.store.put(CLASSES, class_data)
        except ConstraintError as e:
            raise DuplicateClassError(f'A class named "{class_data.get("name")}" already exists') from e

        self._replace_in(self.classes, class_data)
        if self.current_class and self.current_class["id"] == class_data["id"]:
            self.current_class = class_data
        await self._after_mutation()
        return class_data

    async def remove_class(self, class_id: str):
        """Delete a class; students left without any class are deleted too."""
        await self._ensure_ready()
        school_class = self._find(self.classes, class_id)
        if school_class is None:
            return

        await self.store.delete(CLASSES, class_id)
        self.classes = [c for c in self.classes if c["id"] != class_id]
        if self.current_class and self.current_class["id"] == class_id:
            self.current_class = self.classes[0] if self.classes else None

        name = school_class["name"]
        for student in [s for s in self.students if name in s["classes"]]:
            remaining = [c for c in student["classes"] if c != name]
            if not remaining:
                await self._delete_student(student)
                continue
            updated = {**student, "classes": remaining}
            await self.store.put(STUDENTS, updated)
            self._replace_in(self.students, updated)

        await self._after_mutation()

    def change_class(self, class_name: str) -> Optional[Dict[str, Any]]:
        for school_class in self.classes:
            if school_class["name"] == class_name:
                self.current_class = school_class
                break
        return self.current_class

    # --- Transactions ---

    async def add_transaction(self, student_code: str, status: str, event_type: Optional[str] = None,
                              memo: Optional[str] = None, student_label: Optional[str] = None) -> Dict[str, Any]:
        await self._ensure_ready()
        result = ValidationResult()
        if status not in valid_status_names(self.custom_status_types):
            result.add_error(f'Unknown status "{status}"')
        if event_type and event_type not in valid_event_names(self.custom_teacher_event_types):
            result.add_error(f'Unknown teacher event type "{event_type}"')
        if not result.is_valid:
            raise ValidationFailedError(result)

        student = next((s for s in self.students if s["code"] == student_code), None)
        label = student["label"] if student else (student_label or "")
        identifier = f"{student['label']}-{emoji_name(student['emoji'])}" if student else label

        transaction: Dict[str, Any] = {
            "studentLabel": label,
            "studentCode": student_code,
            "studentIdentifier": identifier,
            "status": status,
            "timestamp": now_iso(),
            "className": self.current_class["name"] if self.current_class else "",
        }
        if event_type:
            transaction["eventType"] = event_type
        if memo and self._memo_allowed(status, event_type):
            transaction["memo"] = memo

        transaction["id"] = await self.store.add(TRANSACTIONS, transaction)
        self.transactions.append(transaction)
        await self._after_mutation()
        return transaction

    def get_student_status(self, student_code: str) -> str:
        """Status from the student's latest transaction in the current class."""
        class_name = self.current_class["name"] if self.current_class else None
        history = [
            t for t in self.transactions
            if t.get("studentCode") == student_code and t.get("className") == class_name
        ]
        if not history:
            return DEFAULT_STATUS
        return max(history, key=lambda t: t["timestamp"])["status"]

    def validate_transaction_data(self) -> Dict[str, List[str]]:
        return find_orphaned_types(self.transactions, self.custom_status_types, self.custom_teacher_event_types)

    # --- Style settings ---

    async def update_style_settings(self, **changes) -> Dict[str, Any]:
        await self._ensure_ready()
        for key in ("primaryColor", "secondaryColor", "tertiaryColor", "quaternaryColor"):
            if changes.get(key):
                result = validate_color(changes[key])
                if not result.is_valid:
                    raise ValidationFailedError(result)

        updated = {
            **(self.style_settings or DEFAULT_STYLE_SETTINGS),
            **changes,
            "id": "default",
            "updatedAt": now_iso(),
        }
        await self.store.put(STYLE_SETTINGS, updated)
        self.style_settings = updated
        await self._after_mutation()
        return updated

    def get_style_settings(self) -> Dict[str, Any]:
        if self.style_settings:
            return self.style_settings
        return {**DEFAULT_STYLE_SETTINGS, "updatedAt": now_iso()}

    # --- Custom types ---

    async def add_custom_status_type(self, name: str, color: str, include_memo: bool = False) -> Dict[str, Any]:
        name = self._checked_type_name(name, validate_custom_status_type(name, color))

        record = {
            "id": str(uuid.uuid4()),
            "name": name,
            "color": color.strip(),
            "includeMemo": include_memo,
            "createdAt": now_iso(),
        }
        await self._add_type(CUSTOM_STATUS_TYPES, record)
        self.custom_status_types.append(record)
        await self._after_mutation()
        return record

    async def update_custom_status_type(self, type_id: str, name: Optional[str] = None,
                                        color: Optional[str] = None,
                                        include_memo: Optional[bool] = None) -> Dict[str, Any]:
        existing = self._find(self.custom_status_types, type_id)
        if existing is None:
            raise KeyError(f"Custom status type {type_id} not found")

        updated = dict(existing)
        if name is not None and name.strip() != existing["name"]:
            updated["name"] = self._checked_type_name(name, validate_custom_type_name(name), exclude_id=type_id)
        if color is not None:
            color_result = validate_color(color)
            if not color_result.is_valid:
                raise ValidationFailedError(color_result)
            updated["color"] = color.strip()
        if include_memo is not None:
            updated["includeMemo"] = include_memo

        await self._update_type(CUSTOM_STATUS_TYPES, existing, updated, MigrationKind.STATUS)
        return updated

    async def remove_custom_status_type(self, type_id: str):
        """Delete a status type; memos on its transactions are cleared when it carried them."""
        await self._remove_type(CUSTOM_STATUS_TYPES, type_id, "status")

    async def add_custom_teacher_event_type(self, name: str, include_memo: bool = False) -> Dict[str, Any]:
        record = {
            "id": str(uuid.uuid4()),
            "name": self._checked_type_name(name, validate_custom_teacher_event_type(name)),
            "includeMemo": include_memo,
            "createdAt": now_iso(),
        }
        await self._add_type(CUSTOM_TEACHER_EVENT_TYPES, record)
        self.custom_teacher_event_types.append(record)
        await self._after_mutation()
        return record

    async def update_custom_teacher_event_type(self, type_id: str, name: Optional[str] = None,
                                               include_memo: Optional[bool] = None) -> Dict[str, Any]:
        existing = self._find(self.custom_teacher_event_types, type_id)
        if existing is None:
            raise KeyError(f"Custom teacher event type {type_id} not found")

        updated = dict(existing)
        if name is not None and name.strip() != existing["name"]:
            updated["name"] = self._checked_type_name(name, validate_custom_type_name(name), exclude_id=type_id)
        if include_memo is not None:
            updated["includeMemo"] = include_memo

        await self._update_type(CUSTOM_TEACHER_EVENT_TYPES, existing, updated, MigrationKind.EVENT)
        return updated

    async def remove_custom_teacher_event_type(self, type_id: str):
        await self._remove_type(CUSTOM_TEACHER_EVENT_TYPES, type_id, "eventType")

    # --- Migrations ---

    async def perform_data_migration(self, kind: MigrationKind, old_value: str, new_value: str) -> MigrationResult:
        await self._ensure_ready()
        result = await self.engine.perform_migration(kind, old_value, new_value)
        await self.load_data()
        if result.success:
            await self._after_mutation()
        return result

    async def cleanup_orphaned_data(self, orphaned_status_action: OrphanedAction = OrphanedAction.KEEP,
                                    orphaned_event_action: OrphanedAction = OrphanedAction.KEEP,
                                    orphaned_student_action: OrphanedAction = OrphanedAction.KEEP,
                                    replacement_status: str = DEFAULT_STATUS,
                                    replacement_event: Optional[str] = None) -> MigrationResult:
        await self._ensure_ready()
        options = CleanupOptions(
            valid_statuses=valid_status_names(self.custom_status_types),
            valid_events=valid_event_names(self.custom_teacher_event_types),
            orphaned_status_action=orphaned_status_action,
            orphaned_event_action=orphaned_event_action,
            orphaned_student_action=orphaned_student_action,
            replacement_status=replacement_status,
            replacement_event=replacement_event,
        )
        result = await self.engine.cleanup_orphaned(options)
        await self.load_data()
        if result.success:
            await self._after_mutation()
        return result

    # --- Backup ---

    async def export_database_backup(self) -> str:
        await self._ensure_ready()
        backup = {
            **self._dataset(),
            "exportDate": now_iso(),
            "version": BACKUP_FORMAT_VERSION,
        }
        return json.dumps(backup, ensure_ascii=False, indent=2)

    async def import_database_backup(self, backup_json: str):
        """Replace every local collection with the contents of an exported backup."""
        backup = json.loads(backup_json)
        if not isinstance(backup, dict):
            raise ValueError("Backup must be a JSON object")
        await self._ensure_ready()
        await self._replace_local_data(backup)
        logger.info(f"Imported backup exported at {backup.get('exportDate')}")
        await self._after_mutation()

    async def clear_all_data(self):
        await self._ensure_ready()
        for collection in REQUIRED_COLLECTIONS:
            await self.store.clear(collection)
        self.current_class = None
        await self.load_data()
        logger.warning("Cleared all local data")

    # --- Sync ---

    async def sync_to_server(self, background: bool = False) -> Optional[Dict[str, Any]]:
        """
        Push the complete dataset. Background failures are logged and
        swallowed; foreground failures are raised.
        """
        if self.sync_client is None:
            return None
        try:
            return await self.sync_client.up_sync(self._dataset())
        except SyncError as e:
            if background:
                logger.warning(f"Background sync to server failed: {e}")
                return None
            logger.error(f"Failed to up sync to server: {e}")
            raise

    async def load_from_server(self) -> Dict[str, Any]:
        """Replace local state with the server's dataset."""
        if self.sync_client is None:
            raise SyncError("No sync client configured")
        data = await self.sync_client.down_sync()
        await self._ensure_ready()
        await self._replace_local_data(data)
        logger.info("Down sync completed")
        return data

    async def full_sync(self) -> Dict[str, Any]:
        if self.sync_client is None:
            raise SyncError("No sync client configured")
        response = await self.sync_client.full_sync(self._dataset())
        await self._ensure_ready()
        await self._replace_local_data(response["data"])
        return response

    # --- Internals ---

    async def _ensure_ready(self):
        if await self.guard.ensure_ready(self._dataset()):
            await self.load_data()

    async def _after_mutation(self):
        if self.settings.AUTO_SYNC:
            await self.sync_to_server(background=True)

    def _dataset(self) -> Dict[str, Any]:
        return {
            "students": self.students,
            "classes": self.classes,
            "transactions": self.transactions,
            "styleSettings": self.style_settings,
            "customStatusTypes": self.custom_status_types,
            "customTeacherEventTypes": self.custom_teacher_event_types,
        }

    async def _replace_local_data(self, data: Dict[str, Any]):
        for collection in REQUIRED_COLLECTIONS:
            await self.store.clear(collection)
        for collection in REQUIRED_COLLECTIONS:
            records = data.get(collection) or []
            if isinstance(records, dict):
                records = [records]
            for record in records:
                await self.store.add(collection, record)
        await self.load_data()

    async def _delete_student(self, student: Dict[str, Any]):
        # History stays; cleanup_orphaned_data can delete it later
        await self.store.delete(STUDENTS, student["id"])
        self.students = [s for s in self.students if s["id"] != student["id"]]

    async def _student_conflict(self, student: Dict[str, Any]) -> Optional[DuplicateStudentError]:
        """Re-query to find which uniqueness rule the write broke."""
        for other in await self.store.get_all_by_index(STUDENTS, "code", student["code"]):
            if other["id"] != student["id"]:
                return DuplicateStudentError(f'A student with code "{student["code"]}" already exists', "code")

        for other in await self.store.get_all_by_index(STUDENTS, "label", student["label"]):
            if other["id"] != student["id"] and other.get("emoji") == student["emoji"]:
                return DuplicateStudentError(
                    f'A student with label "{student["label"]}" and emoji "{student["emoji"]}" already exists',
                    "labelEmoji",
                )
        return None

    def _checked_type_name(self, name: str, result: ValidationResult, exclude_id: Optional[str] = None) -> str:
        """Check a status/event type name against both collections; return it normalized."""
        normalized = normalize_name(name, case_sensitive=True)
        taken = {
            t["name"].upper()
            for t in self.custom_status_types + self.custom_teacher_event_types
            if t["id"] != exclude_id
        }
        if normalized.upper() in taken:
            raise DuplicateTypeNameError(f'A status or event type named "{normalized}" already exists')

        if not result.is_valid:
            raise ValidationFailedError(result)
        for warning in result.warnings:
            logger.debug(f"Type name {name!r}: {warning}")
        return normalized

    async def _add_type(self, collection: str, record: Dict[str, Any]):
        await self._ensure_ready()
        try:
            await self.store.add(collection, record)
        except ConstraintError as e:
            raise DuplicateTypeNameError(f'A status or event type named "{record["name"]}" already exists') from e

    async def _update_type(self, collection: str, existing: Dict[str, Any], updated: Dict[str, Any],
                           kind: MigrationKind):
        await self._ensure_ready()
        try:
            await self.store.put(collection, updated)
        except ConstraintError as e:
            raise DuplicateTypeNameError(f'A status or event type named "{updated["name"]}" already exists') from e

        if updated["name"] != existing["name"]:
            result = await self.engine.perform_migration(kind, existing["name"], updated["name"])
            if not result.success:
                await self.store.put(collection, existing)
                await self.load_data()
                raise MigrationFailedError(result)

        await self.load_data()
        await self._after_mutation()

    async def _remove_type(self, collection: str, type_id: str, field_name: str):
        await self._ensure_ready()
        record = await self.store.get(collection, type_id)
        if record is None:
            return

        await self.store.delete(collection, type_id)
        if record.get("includeMemo"):
            for transaction in await self.store.get_all(TRANSACTIONS):
                if transaction.get(field_name) == record["name"] and "memo" in transaction:
                    cleaned = {k: v for k, v in transaction.items() if k != "memo"}
                    await self.store.put(TRANSACTIONS, cleaned)

        await self.load_data()
        await self._after_mutation()

    def _memo_allowed(self, status: str, event_type: Optional[str]) -> bool:
        for custom in self.custom_status_types:
            if custom["name"] == status and custom.get("includeMemo"):
                return True
        for custom in self.custom_teacher_event_types:
            if custom["name"] == event_type and custom.get("includeMemo"):
                return True
        return False

    @staticmethod
    def _find(records: List[Dict[str, Any]], record_id: Any) -> Optional[Dict[str, Any]]:
        return next((r for r in records if r["id"] == record_id), None)

    @staticmethod
    def _replace_in(records: List[Dict[str, Any]], record: Dict[str, Any]):
        for i, existing in enumerate(records):
            if existing["id"] == record["id"]:
                records[i] = record
                return
        records.append(record)
