"""Fixed status and teacher-event enumerations shared by client and server."""

import enum
from typing import Dict, Set, Iterable, Any


class StudentStatus(str, enum.Enum):
    IN_CLASS = "IN CLASS"
    RESTROOM = "RESTROOM"
    OFFICE = "OFFICE"
    COUNSELOR = "COUNSELOR"
    LIBRARY = "LIBRARY"
    TEACHER_VISIT = "TEACHER VISIT"


class TeacherEventType(str, enum.Enum):
    PHONE_OUT_IN_CLASS = "PHONE OUT IN CLASS"
    BAD_LANGUAGE = "BAD LANGUAGE"
    OUT_OF_ASSIGNED_SEAT = "OUT OF ASSIGNED SEAT"
    HORSE_PLAY = "HORSE PLAY"


class MigrationKind(str, enum.Enum):
    STATUS = "status"
    EVENT = "event"


class OrphanedAction(str, enum.Enum):
    DELETE = "delete"
    MIGRATE = "migrate"
    KEEP = "keep"


DEFAULT_STATUS = StudentStatus.IN_CLASS.value

FIXED_STATUSES = tuple(s.value for s in StudentStatus)
FIXED_EVENT_TYPES = tuple(e.value for e in TeacherEventType)
RESERVED_NAMES = FIXED_STATUSES + FIXED_EVENT_TYPES

DEFAULT_STYLE_SETTINGS: Dict[str, Any] = {
    "id": "default",
    "primaryColor": "#1976D2",
    "secondaryColor": "#424242",
    "tertiaryColor": "#000000",
    "quaternaryColor": "#121212",
    "schoolName": "ScholarTrack",
    "logoImage": "",
}


def valid_status_names(custom_status_types: Iterable[Dict[str, Any]]) -> Set[str]:
    return set(FIXED_STATUSES) | {s["name"] for s in custom_status_types}


def valid_event_names(custom_event_types: Iterable[Dict[str, Any]]) -> Set[str]:
    return set(FIXED_EVENT_TYPES) | {e["name"] for e in custom_event_types}
