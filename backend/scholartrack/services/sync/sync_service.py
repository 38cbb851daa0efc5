"""
Sync Service

Server side of the local-first sync protocol:
- Up-sync replaces the remote dataset by upsert (records missing from the
  push are kept)
- Down-sync returns the canonical remote dataset verbatim
- Full-sync performs an up-sync and returns the resulting dataset
- Uniqueness conflicts are detected before anything is written
"""

import logging
from typing import Dict, Any, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from scholartrack.models.roster import (
    Student, SchoolClass, Transaction, StyleSettings,
    CustomStatusType, CustomTeacherEventType
)
from scholartrack.utils.codec import encode_classes
from scholartrack.schemas.sync import (
    SyncUpRequest, SyncCounts, SyncDataset,
    StudentPayload, ClassPayload, TransactionPayload, StyleSettingsPayload,
    CustomStatusTypePayload, CustomTeacherEventTypePayload
)

logger = logging.getLogger(__name__)

TransactionKey = Tuple[Optional[str], str, str, str]


class SyncConflictError(Exception):
    """Raised when a push would violate a uniqueness rule on the server."""

    def __init__(self, message: str, conflicts: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message)
        self.conflicts = conflicts or []


def transaction_key(student_code: Optional[str], student_label: str,
                    timestamp: str, class_name: str) -> TransactionKey:
    return (student_code, student_label, timestamp, class_name)


class SyncService:
    """Reconciles pushed client datasets with the server tables."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def sync_up(self, request: SyncUpRequest) -> SyncCounts:
        """Upsert a pushed dataset. Nothing is written if any conflict is found."""
        conflicts = await self.detect_conflicts(request)
        if conflicts:
            logger.warning(f"Rejecting up-sync with {len(conflicts)} conflict(s)")
            raise SyncConflictError(conflicts[0]["message"], conflicts)

        counts = SyncCounts()
        try:
            for student in request.students:
                await self._upsert_student(student)
                counts.students += 1

            for class_data in request.classes:
                await self._upsert_class(class_data)
                counts.classes += 1

            counts.transactions = await self._upsert_transactions(request.transactions)

            if request.style_settings is not None:
                await self._upsert_style_settings(request.style_settings)
                counts.style_settings = 1

            for status_type in request.custom_status_types or []:
                await self._upsert_custom_status_type(status_type)
                counts.custom_status_types += 1

            for event_type in request.custom_teacher_event_types or []:
                await self._upsert_custom_event_type(event_type)
                counts.custom_teacher_event_types += 1

            await self.db.commit()

        except IntegrityError as e:
            await self.db.rollback()
            logger.error(f"Up-sync violated a uniqueness constraint: {e.orig}")
            raise SyncConflictError(f"Uniqueness constraint violated: {e.orig}")

        logger.info(
            f"Up-sync stored {counts.students} students, {counts.classes} classes, "
            f"{counts.transactions} transactions"
        )
        return counts

    async def sync_down(self) -> SyncDataset:
        """Return every server record in wire form."""
        students = (await self.db.execute(select(Student).order_by(Student.created_at))).scalars().all()
        classes = (await self.db.execute(select(SchoolClass).order_by(SchoolClass.created_at))).scalars().all()
        transactions = (await self.db.execute(select(Transaction).order_by(Transaction.id))).scalars().all()
        style_settings = await self.db.get(StyleSettings, "default")
        status_types = (await self.db.execute(
            select(CustomStatusType).order_by(CustomStatusType.created_at)
        )).scalars().all()
        event_types = (await self.db.execute(
            select(CustomTeacherEventType).order_by(CustomTeacherEventType.created_at)
        )).scalars().all()

        return SyncDataset.model_validate({
            "students": [s.to_dict() for s in students],
            "classes": [c.to_dict() for c in classes],
            "transactions": [t.to_dict() for t in transactions],
            "styleSettings": style_settings.to_dict() if style_settings else None,
            "customStatusTypes": [s.to_dict() for s in status_types],
            "customTeacherEventTypes": [e.to_dict() for e in event_types],
        })

    async def sync_full(self, request: SyncUpRequest) -> Tuple[SyncCounts, SyncDataset]:
        counts = await self.sync_up(request)
        dataset = await self.sync_down()
        return counts, dataset

    async def detect_conflicts(self, request: SyncUpRequest) -> List[Dict[str, Any]]:
        """
        Find uniqueness violations a push would cause.

        A student ``code`` already held by a different student id is a
        conflict; the same code on the same id is an update. Custom status and
        event type names share one namespace.
        """
        conflicts: List[Dict[str, Any]] = []

        seen_codes: Dict[str, str] = {}
        seen_label_emoji: Dict[Tuple[str, str], str] = {}
        for student in request.students:
            if student.code in seen_codes and seen_codes[student.code] != student.id:
                conflicts.append(self._conflict(
                    "student_code", student.code,
                    f'Student code "{student.code}" appears on more than one student in the push'
                ))
            seen_codes[student.code] = student.id

            pair = (student.label, student.emoji)
            if pair in seen_label_emoji and seen_label_emoji[pair] != student.id:
                conflicts.append(self._conflict(
                    "student_label_emoji", f"{student.label} {student.emoji}",
                    f'Student label "{student.label}" with emoji "{student.emoji}" appears more than once in the push'
                ))
            seen_label_emoji[pair] = student.id

            existing = (await self.db.execute(
                select(Student).where(Student.code == student.code)
            )).scalar_one_or_none()
            if existing is not None and existing.id != student.id:
                conflicts.append(self._conflict(
                    "student_code", student.code,
                    f'Student code "{student.code}" already belongs to student "{existing.label}"'
                ))

            existing = (await self.db.execute(
                select(Student).where(Student.label == student.label, Student.emoji == student.emoji)
            )).scalar_one_or_none()
            if existing is not None and existing.id != student.id:
                conflicts.append(self._conflict(
                    "student_label_emoji", f"{student.label} {student.emoji}",
                    f'A student with label "{student.label}" and emoji "{student.emoji}" already exists'
                ))

        pushed_status_names = {s.name for s in request.custom_status_types or []}
        pushed_event_names = {e.name for e in request.custom_teacher_event_types or []}

        for name in sorted(pushed_status_names & pushed_event_names):
            conflicts.append(self._conflict(
                "type_name", name, f'"{name}" is used as both a status type and an event type'
            ))

        for name in sorted(pushed_status_names - pushed_event_names):
            clash = (await self.db.execute(
                select(CustomTeacherEventType).where(CustomTeacherEventType.name == name)
            )).scalar_one_or_none()
            if clash is not None:
                conflicts.append(self._conflict(
                    "type_name", name, f'"{name}" already exists as a teacher event type'
                ))

        for name in sorted(pushed_event_names - pushed_status_names):
            clash = (await self.db.execute(
                select(CustomStatusType).where(CustomStatusType.name == name)
            )).scalar_one_or_none()
            if clash is not None:
                conflicts.append(self._conflict(
                    "type_name", name, f'"{name}" already exists as a status type'
                ))

        return conflicts

    def _conflict(self, field: str, value: str, message: str) -> Dict[str, Any]:
        return {"field": field, "value": value, "message": message}

    async def _upsert_student(self, payload: StudentPayload):
        row = await self.db.get(Student, payload.id)
        classes = encode_classes(payload.classes)
        if row is None:
            self.db.add(Student(
                id=payload.id,
                label=payload.label,
                code=payload.code,
                emoji=payload.emoji,
                classes=classes,
                created_at=payload.created_at,
            ))
        else:
            row.label = payload.label
            row.code = payload.code
            row.emoji = payload.emoji
            row.classes = classes
            row.created_at = payload.created_at

    async def _upsert_class(self, payload: ClassPayload):
        row = await self.db.get(SchoolClass, payload.id)
        if row is None:
            row = (await self.db.execute(
                select(SchoolClass).where(SchoolClass.name == payload.name)
            )).scalar_one_or_none()
            if row is not None:
                # Same name under another id: keep the existing row
                return
            self.db.add(SchoolClass(id=payload.id, name=payload.name, created_at=payload.created_at))
        else:
            row.name = payload.name
            row.created_at = payload.created_at

    async def _upsert_transactions(self, payloads: List[TransactionPayload]) -> int:
        existing_rows = (await self.db.execute(select(Transaction))).scalars().all()
        existing: Dict[TransactionKey, Transaction] = {
            transaction_key(t.student_code, t.student_label, t.timestamp, t.class_name): t
            for t in existing_rows
        }

        count = 0
        for payload in payloads:
            key = transaction_key(payload.student_code, payload.student_label,
                                  payload.timestamp, payload.class_name)
            row = existing.get(key)
            if row is None:
                row = Transaction(
                    student_label=payload.student_label,
                    student_code=payload.student_code,
                    timestamp=payload.timestamp,
                    class_name=payload.class_name,
                )
                self.db.add(row)
                existing[key] = row
            row.status = payload.status
            row.event_type = payload.event_type
            row.memo = payload.memo
            row.student_identifier = payload.student_identifier
            count += 1
        return count

    async def _upsert_style_settings(self, payload: StyleSettingsPayload):
        row = await self.db.get(StyleSettings, payload.id)
        if row is None:
            row = StyleSettings(id=payload.id)
            self.db.add(row)
        row.primary_color = payload.primary_color
        row.secondary_color = payload.secondary_color
        row.tertiary_color = payload.tertiary_color
        row.quaternary_color = payload.quaternary_color
        row.school_name = payload.school_name
        row.logo_image = payload.logo_image
        row.updated_at = payload.updated_at

    async def _upsert_custom_status_type(self, payload: CustomStatusTypePayload):
        row = await self.db.get(CustomStatusType, payload.id)
        if row is None:
            row = (await self.db.execute(
                select(CustomStatusType).where(CustomStatusType.name == payload.name)
            )).scalar_one_or_none()
        if row is None:
            row = CustomStatusType(id=payload.id)
            self.db.add(row)
        row.name = payload.name
        row.color = payload.color
        row.include_memo = payload.include_memo
        row.created_at = payload.created_at

    async def _upsert_custom_event_type(self, payload: CustomTeacherEventTypePayload):
        row = await self.db.get(CustomTeacherEventType, payload.id)
        if row is None:
            row = (await self.db.execute(
                select(CustomTeacherEventType).where(CustomTeacherEventType.name == payload.name)
            )).scalar_one_or_none()
        if row is None:
            row = CustomTeacherEventType(id=payload.id)
            self.db.add(row)
        row.name = payload.name
        row.include_memo = payload.include_memo
        row.created_at = payload.created_at
