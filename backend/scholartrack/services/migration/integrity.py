"""
Post-mutation integrity checks over the local store.

Purely diagnostic: nothing here writes to the store.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Any, List, Iterable

from sqlalchemy.exc import SQLAlchemyError

from scholartrack.client.local_store import (
    LocalStore, StoreError, REQUIRED_COLLECTIONS,
    STUDENTS, TRANSACTIONS, CUSTOM_STATUS_TYPES, CUSTOM_TEACHER_EVENT_TYPES
)
from scholartrack.models.enums import valid_status_names, valid_event_names

logger = logging.getLogger(__name__)


@dataclass
class IntegrityReport:
    errors: List[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


def find_orphaned_types(transactions: Iterable[Dict[str, Any]],
                        custom_status_types: Iterable[Dict[str, Any]],
                        custom_event_types: Iterable[Dict[str, Any]]) -> Dict[str, List[str]]:
    """
    Distinct status and event names used by transactions but not defined anywhere.

    Returns ``{"orphanedStatuses": [...], "orphanedEvents": [...]}``, each sorted.
    """
    valid_statuses = valid_status_names(custom_status_types)
    valid_events = valid_event_names(custom_event_types)

    orphaned_statuses = set()
    orphaned_events = set()
    for transaction in transactions:
        status = transaction.get("status")
        if status and status not in valid_statuses:
            orphaned_statuses.add(status)
        event_type = transaction.get("eventType")
        if event_type and event_type not in valid_events:
            orphaned_events.add(event_type)

    return {
        "orphanedStatuses": sorted(orphaned_statuses),
        "orphanedEvents": sorted(orphaned_events),
    }


def check_dataset(students: List[Dict[str, Any]], transactions: List[Dict[str, Any]],
                  custom_status_types: List[Dict[str, Any]],
                  custom_event_types: List[Dict[str, Any]],
                  check_statuses: bool = True, check_events: bool = True,
                  check_students: bool = True) -> List[str]:
    errors = []

    if check_students:
        student_codes = {s.get("code") for s in students}
        orphaned = [t for t in transactions if t.get("studentCode") and t["studentCode"] not in student_codes]
        if orphaned:
            errors.append(f"Found {len(orphaned)} transactions with orphaned student references")

    if check_statuses:
        valid_statuses = valid_status_names(custom_status_types)
        invalid_status = [t for t in transactions if t.get("status") not in valid_statuses]
        if invalid_status:
            errors.append(f"Found {len(invalid_status)} transactions with invalid status types")

    if check_events:
        valid_events = valid_event_names(custom_event_types)
        invalid_event = [t for t in transactions if t.get("eventType") and t["eventType"] not in valid_events]
        if invalid_event:
            errors.append(f"Found {len(invalid_event)} transactions with invalid event types")

    shared = {s["name"] for s in custom_status_types} & {e["name"] for e in custom_event_types}
    if shared:
        errors.append(
            f"Found {len(shared)} type names used by both status and event types: {', '.join(sorted(shared))}"
        )

    return errors


async def verify_database_integrity(store: LocalStore, check_statuses: bool = True,
                                    check_events: bool = True,
                                    check_students: bool = True) -> IntegrityReport:
    """
    Check that every collection is queryable and that transactions only
    reference existing students and defined status/event types.

    ``check_statuses`` / ``check_events`` / ``check_students`` switch off the
    matching check for a caller that deliberately keeps orphaned values in place.
    """
    report = IntegrityReport()

    for collection in REQUIRED_COLLECTIONS:
        try:
            await store.count(collection)
        except (StoreError, SQLAlchemyError):
            report.errors.append(f"Table {collection} is not accessible")

    if report.errors:
        logger.warning(f"Integrity check on {store.name} failed: {report.errors}")
        return report

    try:
        report.errors.extend(check_dataset(
            await store.get_all(STUDENTS),
            await store.get_all(TRANSACTIONS),
            await store.get_all(CUSTOM_STATUS_TYPES),
            await store.get_all(CUSTOM_TEACHER_EVENT_TYPES),
            check_statuses=check_statuses,
            check_events=check_events,
            check_students=check_students,
        ))
    except (StoreError, SQLAlchemyError) as e:
        report.errors.append(f"Database integrity check failed: {e}")

    if not report.is_valid:
        logger.warning(f"Integrity check on {store.name} failed: {report.errors}")
    return report
