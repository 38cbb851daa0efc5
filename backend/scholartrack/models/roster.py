"""
SQLAlchemy models for the server-side mirror of the ScholarTrack dataset.

The sync endpoints replace-by-upsert into these tables; the wire format is
camelCase, the columns are snake_case (see ``to_dict`` on each model).
"""

import json
from typing import Dict, Any, List

from sqlalchemy import Column, Integer, String, Boolean, Text, Index

from scholartrack.core.database import Base


class Student(Base):
    """A student on the roster, identified for sync purposes by ``code``."""
    __tablename__ = "students"

    id = Column(String(64), primary_key=True)
    label = Column(String(255), nullable=False, index=True)
    code = Column(String(100), nullable=False, unique=True, index=True)
    emoji = Column(String(32), nullable=False)
    # JSON-encoded list of class names
    classes = Column(Text, nullable=False, default="[]")
    created_at = Column(String(40), nullable=False)

    __table_args__ = (
        Index('idx_student_label_emoji', 'label', 'emoji', unique=True),
    )

    @property
    def class_names(self) -> List[str]:
        return json.loads(self.classes) if self.classes else []

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "label": self.label,
            "code": self.code,
            "emoji": self.emoji,
            "classes": self.class_names,
            "createdAt": self.created_at,
        }


class SchoolClass(Base):
    """A class (course section) that students belong to by name."""
    __tablename__ = "classes"

    id = Column(String(64), primary_key=True)
    name = Column(String(255), nullable=False, unique=True, index=True)
    created_at = Column(String(40), nullable=False)

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "createdAt": self.created_at}


class Transaction(Base):
    """A timestamped status change or teacher event for one student."""
    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    student_label = Column(String(255), nullable=False)
    student_code = Column(String(100), nullable=True, index=True)
    student_identifier = Column(String(255), nullable=True)
    status = Column(String(100), nullable=False, index=True)
    timestamp = Column(String(40), nullable=False, index=True)
    class_name = Column(String(255), nullable=False, index=True)
    event_type = Column(String(100), nullable=True)
    memo = Column(Text, nullable=True)

    __table_args__ = (
        # Natural key used to match pushed transactions
        Index('idx_transaction_natural_key', 'student_code', 'student_label', 'timestamp', 'class_name'),
    )

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "studentLabel": self.student_label,
            "status": self.status,
            "timestamp": self.timestamp,
            "className": self.class_name,
        }
        # Optional fields are omitted rather than sent as null
        optional = {
            "studentCode": self.student_code,
            "studentIdentifier": self.student_identifier,
            "eventType": self.event_type,
            "memo": self.memo,
        }
        data.update({key: value for key, value in optional.items() if value is not None})
        return data


class StyleSettings(Base):
    """Singleton appearance settings, keyed by ``"default"``."""
    __tablename__ = "style_settings"

    id = Column(String(64), primary_key=True, default="default")
    primary_color = Column(String(32), nullable=False)
    secondary_color = Column(String(32), nullable=False)
    tertiary_color = Column(String(32), nullable=True)
    quaternary_color = Column(String(32), nullable=True)
    school_name = Column(String(255), nullable=True)
    logo_image = Column(Text, nullable=True)
    updated_at = Column(String(40), nullable=True)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "primaryColor": self.primary_color,
            "secondaryColor": self.secondary_color,
            "tertiaryColor": self.tertiary_color,
            "quaternaryColor": self.quaternary_color,
            "schoolName": self.school_name,
            "logoImage": self.logo_image,
            "updatedAt": self.updated_at,
        }


class CustomStatusType(Base):
    __tablename__ = "custom_status_types"

    id = Column(String(64), primary_key=True)
    name = Column(String(100), nullable=False, unique=True, index=True)
    color = Column(String(32), nullable=False)
    include_memo = Column(Boolean, nullable=False, default=False)
    created_at = Column(String(40), nullable=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "color": self.color,
            "includeMemo": bool(self.include_memo),
            "createdAt": self.created_at,
        }


class CustomTeacherEventType(Base):
    __tablename__ = "custom_teacher_event_types"

    id = Column(String(64), primary_key=True)
    name = Column(String(100), nullable=False, unique=True, index=True)
    include_memo = Column(Boolean, nullable=False, default=False)
    created_at = Column(String(40), nullable=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "includeMemo": bool(self.include_memo),
            "createdAt": self.created_at,
        }
