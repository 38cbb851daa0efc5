"""
Pydantic schemas for sync operations

Each sync endpoint has its own request/response model so that payloads are
validated at the boundary, before any store mutation is attempted. Field
names are snake_case in Python and camelCase on the wire.
"""

import json
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model that reads and writes camelCase keys."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class StudentPayload(CamelModel):
    id: str = Field(..., min_length=1)
    label: str = Field(..., min_length=1)
    code: str = Field(..., min_length=1)
    emoji: str = Field(..., min_length=1)
    classes: List[str] = Field(default_factory=list)
    created_at: str

    @field_validator("classes", mode="before")
    @classmethod
    def parse_classes(cls, v):
        # Local stores may push the serialized form
        if isinstance(v, str):
            return json.loads(v) if v else []
        return v


class ClassPayload(CamelModel):
    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    created_at: str


class TransactionPayload(CamelModel):
    id: Optional[int] = None
    student_label: str
    student_code: Optional[str] = None
    student_identifier: Optional[str] = None
    status: str = Field(..., min_length=1)
    timestamp: str
    class_name: str
    event_type: Optional[str] = None
    memo: Optional[str] = None


class StyleSettingsPayload(CamelModel):
    id: str = "default"
    primary_color: str
    secondary_color: str
    tertiary_color: Optional[str] = None
    quaternary_color: Optional[str] = None
    school_name: Optional[str] = None
    logo_image: Optional[str] = None
    updated_at: Optional[str] = None


class CustomStatusTypePayload(CamelModel):
    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    color: str
    include_memo: bool = False
    created_at: str


class CustomTeacherEventTypePayload(CamelModel):
    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    include_memo: bool = False
    created_at: str


class SyncUpRequest(CamelModel):
    """Complete local dataset pushed by a client"""
    students: List[StudentPayload] = Field(default_factory=list)
    classes: List[ClassPayload] = Field(default_factory=list)
    transactions: List[TransactionPayload] = Field(default_factory=list)
    style_settings: Optional[StyleSettingsPayload] = None
    custom_status_types: Optional[List[CustomStatusTypePayload]] = None
    custom_teacher_event_types: Optional[List[CustomTeacherEventTypePayload]] = None

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "students": [
                    {
                        "id": "0b7c7a0e-5c1f-4f0e-9a57-3c0b1f0c2a11",
                        "label": "ALEX",
                        "code": "1001",
                        "emoji": "🐶",
                        "classes": ["Period 1"],
                        "createdAt": "2024-09-01T08:00:00.000Z"
                    }
                ],
                "classes": [
                    {"id": "c1", "name": "Period 1", "createdAt": "2024-09-01T07:55:00.000Z"}
                ],
                "transactions": [
                    {
                        "studentLabel": "ALEX",
                        "studentCode": "1001",
                        "studentIdentifier": "ALEX-dog face",
                        "status": "RESTROOM",
                        "timestamp": "2024-09-01T09:12:00.000Z",
                        "className": "Period 1"
                    }
                ]
            }
        }
    )


class SyncFullRequest(SyncUpRequest):
    """Same payload as up-sync; the response also carries the server dataset"""
    pass


class SyncCounts(CamelModel):
    students: int = 0
    classes: int = 0
    transactions: int = 0
    style_settings: int = 0
    custom_status_types: int = 0
    custom_teacher_event_types: int = 0


class SyncDataset(CamelModel):
    students: List[StudentPayload] = Field(default_factory=list)
    classes: List[ClassPayload] = Field(default_factory=list)
    transactions: List[TransactionPayload] = Field(default_factory=list)
    style_settings: Optional[StyleSettingsPayload] = None
    custom_status_types: List[CustomStatusTypePayload] = Field(default_factory=list)
    custom_teacher_event_types: List[CustomTeacherEventTypePayload] = Field(default_factory=list)


class SyncUpResponse(CamelModel):
    message: str
    timestamp: datetime
    synced: SyncCounts


class SyncDownResponse(CamelModel):
    message: str
    timestamp: datetime
    data: SyncDataset


class SyncFullResponse(CamelModel):
    message: str
    timestamp: datetime
    synced: SyncCounts
    data: SyncDataset


class HealthResponse(CamelModel):
    status: str = "ok"
    timestamp: datetime
