# models.py - Database models for the board service
# - UUID string primary keys everywhere
# - Soft deletes for projects, boards, comments and field options
# - Attachments bound to their owner through (entity_type, entity_id)
# - Custom field values stored on the board as field option ids

import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum
from sqlalchemy import (
    Column, String, DateTime, JSON, Boolean, BigInteger, Integer,
    Enum as SQLEnum, ForeignKey, Text, Index, UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def utcnow():
    return datetime.now(timezone.utc)


def new_uuid():
    return str(uuid.uuid4())


# ============================================================
# ENUMS
# ============================================================

class AttachmentStatus(str, PyEnum):
    TEMP = "TEMP"
    CONFIRMED = "CONFIRMED"


class EntityType(str, PyEnum):
    BOARD = "BOARD"
    COMMENT = "COMMENT"
    PROJECT = "PROJECT"


class FieldType(str, PyEnum):
    STAGE = "stage"
    IMPORTANCE = "importance"
    ROLE = "role"


# ============================================================
# PROJECTS
# ============================================================

class Project(Base):
    __tablename__ = "projects"

    id = Column(String, primary_key=True, default=new_uuid)
    workspace_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    owner_id = Column(String, nullable=False, index=True)
    is_default = Column(Boolean, default=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    boards = relationship("Board", back_populates="project")
    field_options = relationship("FieldOption", back_populates="project")


# ============================================================
# FIELD OPTIONS (stage / importance / role)
# ============================================================

class FieldOption(Base):
    """Selectable value for a board custom field, referenced by id from Board.custom_fields"""
    __tablename__ = "field_options"

    id = Column(String, primary_key=True, default=new_uuid)
    project_id = Column(String, ForeignKey("projects.id", ondelete="CASCADE"), nullable=True, index=True)
    field_type = Column(String(50), nullable=False, index=True)
    value = Column(String(100), nullable=False)
    label = Column(String(200), nullable=False)
    color = Column(String(20), nullable=False, default="#6B7280")
    display_order = Column(Integer, nullable=False, default=0)
    is_system_default = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    project = relationship("Project", back_populates="field_options")

    __table_args__ = (
        UniqueConstraint("project_id", "field_type", "value", name="uq_field_options_project_type_value"),
    )


# ============================================================
# BOARDS
# ============================================================

class Board(Base):
    """Work item inside a project"""
    __tablename__ = "boards"

    id = Column(String, primary_key=True, default=new_uuid)
    project_id = Column(String, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    author_id = Column(String, nullable=False, index=True)
    assignee_id = Column(String, nullable=True, index=True)
    title = Column(String(200), nullable=False)
    content = Column(Text, nullable=False, default="")
    custom_fields = Column(JSON, nullable=False, default=dict)  # field type -> field option id
    start_date = Column(DateTime(timezone=True), nullable=True)
    due_date = Column(DateTime(timezone=True), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    project = relationship("Project", back_populates="boards")
    participants = relationship("Participant", back_populates="board", order_by="Participant.position")
    comments = relationship("Comment", back_populates="board", order_by="Comment.created_at")

    __table_args__ = (
        Index("idx_boards_project_active", "project_id", "deleted_at"),
    )


class Participant(Base):
    """A user following a board; at most one row per (board, user)"""
    __tablename__ = "participants"

    id = Column(String, primary_key=True, default=new_uuid)
    board_id = Column(String, ForeignKey("boards.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String, nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)  # first-seen order
    created_at = Column(DateTime(timezone=True), default=utcnow)

    board = relationship("Board", back_populates="participants")

    __table_args__ = (
        UniqueConstraint("board_id", "user_id", name="uq_participants_board_user"),
    )


class Comment(Base):
    __tablename__ = "comments"

    id = Column(String, primary_key=True, default=new_uuid)
    board_id = Column(String, ForeignKey("boards.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String, nullable=False, index=True)
    content = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    board = relationship("Board", back_populates="comments")


# ============================================================
# ATTACHMENTS
# ============================================================

class Attachment(Base):
    """Uploaded file; TEMP until an owning board/comment/project confirms it"""
    __tablename__ = "attachments"

    id = Column(String, primary_key=True, default=new_uuid)
    entity_type = Column(SQLEnum(EntityType), nullable=False)
    entity_id = Column(String, nullable=True, index=True)  # bound on confirmation
    status = Column(SQLEnum(AttachmentStatus), nullable=False, default=AttachmentStatus.TEMP, index=True)
    file_name = Column(String, nullable=False)
    file_url = Column(String, nullable=False)  # object store key
    file_size = Column(BigInteger, default=0)
    content_type = Column(String, nullable=True)
    uploaded_by = Column(String, nullable=False)
    workspace_id = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_attachments_entity", "entity_type", "entity_id"),
    )
