from .enums import (
    StudentStatus, TeacherEventType, MigrationKind, OrphanedAction,
    FIXED_STATUSES, FIXED_EVENT_TYPES
)
from .roster import (
    Student, SchoolClass, Transaction, StyleSettings,
    CustomStatusType, CustomTeacherEventType
)

__all__ = [
    "StudentStatus",
    "TeacherEventType",
    "MigrationKind",
    "OrphanedAction",
    "FIXED_STATUSES",
    "FIXED_EVENT_TYPES",
    "Student",
    "SchoolClass",
    "Transaction",
    "StyleSettings",
    "CustomStatusType",
    "CustomTeacherEventType",
]
