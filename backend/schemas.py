# schemas.py - Request/response models shared by the service layer and routers
# JSON uses camelCase; Python attributes stay snake_case.

import uuid
from datetime import datetime
from typing import Optional, List, Dict, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def canonical_uuid(value: str) -> str:
    """Lower-case hyphenated form of a UUID string; ValueError otherwise"""
    try:
        return str(uuid.UUID(value.strip()))
    except (AttributeError, ValueError):
        raise ValueError(f"'{value}' is not a valid UUID")


def _user_ids(values: Optional[List[str]]) -> Optional[List[str]]:
    if values is None:
        return None
    return [canonical_uuid(v) for v in values]


def _attachment_ids(values: Optional[List[Optional[str]]]) -> Optional[List[Optional[str]]]:
    # None and blank entries are tolerated and skipped later
    if values is None:
        return None
    return [canonical_uuid(v) if v and v.strip() else None for v in values]


def _assignee_id(value: Optional[str]) -> Optional[str]:
    # empty string means "no assignee"
    if value is None or not value.strip():
        return value
    return canonical_uuid(value)


# ============================================================
# CUSTOM FIELDS
# ============================================================

class CustomFields(BaseModel):
    """Known option-backed fields; any other key is accepted and kept as-is"""
    model_config = ConfigDict(extra="allow")

    stage: Optional[str] = None
    importance: Optional[str] = None
    role: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return self.model_dump(exclude_unset=True)


# ============================================================
# ATTACHMENTS
# ============================================================

class AttachmentRegister(CamelModel):
    entity_type: str = Field(..., pattern="^(BOARD|COMMENT|PROJECT)$")
    file_name: str = Field(..., min_length=1, max_length=255)
    file_key: str = Field(..., min_length=1, max_length=1024)
    file_size: int = Field(0, ge=0)
    content_type: Optional[str] = None
    workspace_id: Optional[str] = None


class AttachmentOut(CamelModel):
    id: str
    file_name: str
    file_url: str
    file_size: int = 0
    content_type: Optional[str] = None
    uploaded_by: str
    uploaded_at: Optional[str] = None


class AttachmentDetailOut(AttachmentOut):
    entity_type: str
    entity_id: Optional[str] = None
    status: str


# ============================================================
# BOARDS
# ============================================================

class BoardCreate(CamelModel):
    project_id: str
    title: str = Field(..., min_length=1, max_length=200)
    content: str = Field("", max_length=5000)
    custom_fields: Optional[CustomFields] = None
    assignee_id: Optional[str] = None
    start_date: Optional[datetime] = None
    due_date: Optional[datetime] = None
    participants: Optional[List[str]] = Field(None, max_length=50)
    attachment_ids: Optional[List[Optional[str]]] = None

    normalize_assignee = field_validator("assignee_id")(_assignee_id)
    normalize_participants = field_validator("participants")(_user_ids)
    normalize_attachments = field_validator("attachment_ids")(_attachment_ids)


class BoardUpdate(CamelModel):
    title: Optional[str] = Field(None, min_length=1, max_length=200)
    content: Optional[str] = Field(None, max_length=5000)
    custom_fields: Optional[CustomFields] = None
    assignee_id: Optional[str] = None  # nil UUID clears
    start_date: Optional[datetime] = None
    due_date: Optional[datetime] = None
    participants: Optional[List[str]] = Field(None, max_length=50)  # [] removes all
    attachment_ids: Optional[List[Optional[str]]] = None

    normalize_assignee = field_validator("assignee_id")(_assignee_id)
    normalize_participants = field_validator("participants")(_user_ids)
    normalize_attachments = field_validator("attachment_ids")(_attachment_ids)


class ParticipantOut(CamelModel):
    id: str
    board_id: str
    user_id: str
    created_at: Optional[str] = None


class CommentOut(CamelModel):
    comment_id: str
    board_id: str
    user_id: str
    content: str
    attachments: List[AttachmentOut] = []
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class BoardOut(CamelModel):
    board_id: str
    project_id: str
    workspace_id: Optional[str] = None
    author_id: str
    assignee_id: Optional[str] = None
    title: str
    content: str
    custom_fields: Dict[str, Any] = {}
    start_date: Optional[str] = None
    due_date: Optional[str] = None
    participant_ids: List[str] = []
    attachments: List[AttachmentOut] = []
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class BoardDetailOut(BoardOut):
    project_name: str = ""
    participants: List[ParticipantOut] = []
    comments: List[CommentOut] = []


class BoardListOut(CamelModel):
    boards: List[BoardOut] = []
    total: int = 0


# ============================================================
# COMMENTS
# ============================================================

class CommentCreate(CamelModel):
    board_id: str
    content: str = Field(..., min_length=1, max_length=1000)
    attachment_ids: Optional[List[Optional[str]]] = None

    normalize_attachments = field_validator("attachment_ids")(_attachment_ids)


class CommentUpdate(CamelModel):
    content: str = Field(..., min_length=1, max_length=1000)
    attachment_ids: Optional[List[Optional[str]]] = None

    normalize_attachments = field_validator("attachment_ids")(_attachment_ids)


# ============================================================
# PROJECTS
# ============================================================

class ProjectCreate(CamelModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None
    workspace_id: Optional[str] = None


class ProjectOut(CamelModel):
    project_id: str
    workspace_id: str
    name: str
    description: Optional[str] = None
    owner_id: str
    created_at: Optional[str] = None


class FieldOptionCreate(CamelModel):
    field_type: str = Field(..., pattern="^(stage|importance|role)$")
    value: str = Field(..., min_length=1, max_length=100)
    label: str = Field(..., min_length=1, max_length=200)
    color: str = Field("#6B7280", max_length=20)
    display_order: int = 0


class FieldOptionOut(CamelModel):
    option_id: str
    project_id: Optional[str] = None
    field_type: str
    value: str
    label: str
    color: str
    display_order: int
    is_system_default: bool
