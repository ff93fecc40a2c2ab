# board_service.py - Board and comment lifecycle orchestration
# Every mutation runs the same sequence without one spanning transaction:
#   resolve parent -> validate -> claim attachments -> persist entity
#   -> confirm attachments (compensate on create) -> participants
#   -> re-fetch -> notify -> respond

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import Depends, Request
from sqlalchemy import select, delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from attachments import AttachmentClaimManager, NIL_UUID, CONFIRM_FAILURE_DETAILS
from auth import CurrentUser
from custom_fields import CustomFieldCodec, KNOWN_FIELD_TYPES
from database import get_db_session
from errors import InternalError, NotFoundError, ValidationError, ForbiddenError
from models import Attachment, Board, Comment, EntityType, Project, utcnow
from notifications import (
    NotificationFanout, NotificationResource, NotificationType, compute_targets, truncate_preview,
)
from participants import ParticipantReconciler
from schemas import (
    AttachmentOut, BoardCreate, BoardDetailOut, BoardListOut, BoardOut, BoardUpdate,
    CommentCreate, CommentOut, CommentUpdate, ParticipantOut,
)
from storage import ObjectStore, get_object_store

logger = logging.getLogger("board-service.boards")

CONTENT_CHANGED = "(content changed)"


def _ts(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


def _as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _fmt_date(dt: Optional[datetime]) -> str:
    return _as_utc(dt).strftime("%Y-%m-%d") if dt else ""


def validate_date_range(start_date: Optional[datetime], due_date: Optional[datetime]) -> None:
    if start_date and due_date and _as_utc(start_date) > _as_utc(due_date):
        raise ValidationError("Start date cannot be after due date")


def _normalize_user_id(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    if not value or value == NIL_UUID:
        return None
    return value


class BoardEntityService:
    """Coordinates boards and comments with their attachments, participants,
    custom fields and notifications.

    Sub-components are built from the session unless passed in explicitly.
    """

    def __init__(
        self,
        db: AsyncSession,
        store: ObjectStore,
        fanout: NotificationFanout,
        log: Optional[logging.Logger] = None,
        attachments: Optional[AttachmentClaimManager] = None,
        participants: Optional[ParticipantReconciler] = None,
        codec: Optional[CustomFieldCodec] = None,
    ):
        self.db = db
        self.log = log or logger
        self.fanout = fanout
        self.attachments = attachments or AttachmentClaimManager(db, store, self.log)
        self.participants = participants or ParticipantReconciler(db, self.log)
        self.codec = codec or CustomFieldCodec(db, self.log)

    # ============================================================
    # LOOKUPS
    # ============================================================

    async def _get_project(self, project_id: str) -> Project:
        result = await self.db.execute(
            select(Project)
            .where(Project.id == project_id, Project.deleted_at.is_(None))
            .execution_options(populate_existing=True)
        )
        project = result.scalar_one_or_none()
        if not project:
            raise NotFoundError("Project not found")
        return project

    async def _get_board(self, board_id: str) -> Board:
        result = await self.db.execute(
            select(Board)
            .where(Board.id == board_id, Board.deleted_at.is_(None))
            .execution_options(populate_existing=True)
        )
        board = result.scalar_one_or_none()
        if not board:
            raise NotFoundError("Board not found")
        return board

    async def _get_comment(self, comment_id: str) -> Comment:
        result = await self.db.execute(
            select(Comment)
            .where(Comment.id == comment_id, Comment.deleted_at.is_(None))
            .execution_options(populate_existing=True)
        )
        comment = result.scalar_one_or_none()
        if not comment:
            raise NotFoundError("Comment not found")
        return comment

    async def _read_custom_fields(self, fields: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        try:
            return await self.codec.ids_to_values(fields)
        except SQLAlchemyError as e:
            self.log.warning(f"Failed to convert custom field ids to values: {e}")
            return dict(fields or {})

    async def _read_custom_labels(self, fields: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        try:
            return await self.codec.ids_to_labels(fields)
        except SQLAlchemyError as e:
            self.log.warning(f"Failed to convert custom field ids to labels: {e}")
            return {}

    def _attachment_out(self, attachment: Attachment) -> AttachmentOut:
        return AttachmentOut(**self.attachments.to_response(attachment))

    def _board_out(
        self,
        board: Board,
        project: Project,
        participant_ids: List[str],
        attachments: List[Attachment],
        custom_fields: Dict[str, Any],
        out_class=BoardOut,
        **extra,
    ):
        return out_class(
            board_id=board.id,
            project_id=board.project_id,
            workspace_id=project.workspace_id,
            author_id=board.author_id,
            assignee_id=board.assignee_id,
            title=board.title,
            content=board.content or "",
            custom_fields=custom_fields,
            start_date=_ts(board.start_date),
            due_date=_ts(board.due_date),
            participant_ids=participant_ids or [],
            attachments=[self._attachment_out(a) for a in attachments],
            created_at=_ts(board.created_at),
            updated_at=_ts(board.updated_at),
            **extra,
        )

    def _comment_out(self, comment: Comment, attachments: List[Attachment]) -> CommentOut:
        return CommentOut(
            comment_id=comment.id,
            board_id=comment.board_id,
            user_id=comment.user_id,
            content=comment.content,
            attachments=[self._attachment_out(a) for a in attachments],
            created_at=_ts(comment.created_at),
            updated_at=_ts(comment.updated_at),
        )

    @staticmethod
    def _resource(board_id: str, title: str, project: Project) -> NotificationResource:
        return NotificationResource(
            resource_id=board_id,
            resource_name=title,
            workspace_id=project.workspace_id,
            metadata={"projectId": project.id, "projectName": project.name},
        )

    async def _remove_board_row(self, board_id: str) -> None:
        try:
            await self.db.execute(
                delete(Board).where(Board.id == board_id).execution_options(synchronize_session=False)
            )
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            self.log.error(f"Compensating delete of board {board_id} failed: {e}")

    async def _remove_comment_row(self, comment_id: str) -> None:
        try:
            await self.db.execute(
                delete(Comment).where(Comment.id == comment_id).execution_options(synchronize_session=False)
            )
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            self.log.error(f"Compensating delete of comment {comment_id} failed: {e}")

    # ============================================================
    # BOARDS
    # ============================================================

    async def create_board(self, actor: CurrentUser, data: BoardCreate) -> BoardOut:
        project = await self._get_project(data.project_id)
        validate_date_range(data.start_date, data.due_date)

        custom_fields: Dict[str, Any] = {}
        if data.custom_fields is not None:
            custom_fields = await self.codec.values_to_ids(project.id, data.custom_fields.as_dict())

        attachment_ids = await self.attachments.validate_and_claim(data.attachment_ids, EntityType.BOARD)

        board = Board(
            project_id=project.id,
            author_id=actor.id,
            assignee_id=_normalize_user_id(data.assignee_id) or actor.id,
            title=data.title,
            content=data.content or "",
            custom_fields=custom_fields,
            start_date=data.start_date,
            due_date=data.due_date,
        )
        self.db.add(board)
        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise InternalError("Failed to create board", str(e))
        board_id = board.id

        if attachment_ids:
            try:
                await self.attachments.confirm(attachment_ids, board_id)
            except InternalError as e:
                self.log.error(f"Attachment confirmation failed for board {board_id}, removing board: {e.message}")
                await self._remove_board_row(board_id)
                raise InternalError(f"Failed to confirm attachments: {e.message}", CONFIRM_FAILURE_DETAILS)

        if data.participants:
            await self.participants.add_participants(board_id, data.participants)

        board = await self._get_board(board_id)
        project = await self._get_project(board.project_id)
        participant_ids = await self.participants.list_user_ids(board_id)
        attachments = await self.attachments.find_by_entity(EntityType.BOARD, board_id)

        resource = self._resource(board_id, board.title, project)
        if board.assignee_id:
            self.fanout.notify(NotificationType.BOARD_ASSIGNED, resource, actor.id, [board.assignee_id])
        if participant_ids:
            self.fanout.notify(NotificationType.BOARD_PARTICIPANT_ADDED, resource, actor.id, participant_ids)

        self.log.info(f"Board created: {board_id} in project {project.id} by {actor.id}")
        custom_values = await self._read_custom_fields(board.custom_fields)
        return self._board_out(board, project, participant_ids, attachments, custom_values)

    async def update_board(self, actor: CurrentUser, board_id: str, data: BoardUpdate) -> BoardOut:
        board = await self._get_board(board_id)
        project = await self._get_project(board.project_id)

        old_title = board.title
        old_content = board.content or ""
        old_assignee = board.assignee_id
        old_start = board.start_date
        old_due = board.due_date
        old_custom_fields = dict(board.custom_fields or {})
        old_participants = await self.participants.list_user_ids(board_id)

        effective_start = data.start_date if data.start_date is not None else board.start_date
        effective_due = data.due_date if data.due_date is not None else board.due_date
        validate_date_range(effective_start, effective_due)

        new_custom_fields = None
        if data.custom_fields is not None:
            new_custom_fields = await self.codec.values_to_ids(board.project_id, data.custom_fields.as_dict())

        attachment_ids = await self.attachments.validate_and_claim(data.attachment_ids, EntityType.BOARD)

        if data.title is not None:
            board.title = data.title
        if data.content is not None:
            board.content = data.content
        if data.start_date is not None:
            board.start_date = data.start_date
        if data.due_date is not None:
            board.due_date = data.due_date
        if data.assignee_id is not None:
            board.assignee_id = _normalize_user_id(data.assignee_id)
        if new_custom_fields is not None:
            board.custom_fields = new_custom_fields
        board.updated_at = utcnow()

        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise InternalError("Failed to update board", str(e))

        if attachment_ids:
            try:
                await self.attachments.confirm(attachment_ids, board_id)
            except InternalError as e:
                self.log.error(f"Attachment confirmation failed for board {board_id}: {e.message}")
                raise InternalError(f"Failed to confirm attachments: {e.message}", CONFIRM_FAILURE_DETAILS)

        if data.participants is not None:
            await self.participants.reconcile(board_id, data.participants)

        board = await self._get_board(board_id)
        project = await self._get_project(board.project_id)
        participant_ids = await self.participants.list_user_ids(board_id)
        attachments = await self.attachments.find_by_entity(EntityType.BOARD, board_id)
        custom_values = await self._read_custom_fields(board.custom_fields)

        resource = self._resource(board_id, board.title, project)

        if board.assignee_id and board.assignee_id != old_assignee:
            self.fanout.notify(NotificationType.BOARD_ASSIGNED, resource, actor.id, [board.assignee_id])

        if data.participants is not None:
            previous = set(old_participants)
            added = [user_id for user_id in participant_ids if user_id not in previous]
            if added:
                self.fanout.notify(NotificationType.BOARD_PARTICIPANT_ADDED, resource, actor.id, added)

        old_custom_values = await self._read_custom_fields(old_custom_fields)
        old_labels = await self._read_custom_labels(old_custom_fields)
        new_labels = await self._read_custom_labels(board.custom_fields)
        changes = self._collect_changes(
            board, old_title, old_content, old_assignee, old_start, old_due,
            old_custom_values, custom_values, old_labels, new_labels,
        )
        if changes:
            self.fanout.notify(
                NotificationType.BOARD_UPDATED, resource, actor.id,
                compute_targets(board.assignee_id, participant_ids, actor.id),
                {"changes": changes},
            )

        self.log.info(f"Board updated: {board_id} by {actor.id} ({len(changes)} changes)")
        return self._board_out(board, project, participant_ids, attachments, custom_values)

    @staticmethod
    def _collect_changes(
        board: Board,
        old_title: str,
        old_content: str,
        old_assignee: Optional[str],
        old_start: Optional[datetime],
        old_due: Optional[datetime],
        old_custom: Dict[str, Any],
        new_custom: Dict[str, Any],
        old_labels: Optional[Dict[str, Any]] = None,
        new_labels: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        old_labels = old_labels or {}
        new_labels = new_labels or {}
        changes: List[Dict[str, Any]] = []
        if board.title != old_title:
            changes.append({"field": "title", "oldValue": old_title, "newValue": board.title})
        if (board.content or "") != old_content:
            changes.append({"field": "content", "oldValue": CONTENT_CHANGED, "newValue": CONTENT_CHANGED})
        if _fmt_date(board.start_date) != _fmt_date(old_start):
            changes.append({"field": "startDate", "oldValue": _fmt_date(old_start), "newValue": _fmt_date(board.start_date)})
        if _fmt_date(board.due_date) != _fmt_date(old_due):
            changes.append({"field": "dueDate", "oldValue": _fmt_date(old_due), "newValue": _fmt_date(board.due_date)})
        if board.assignee_id != old_assignee:
            changes.append({"field": "assignee", "oldValue": old_assignee or "", "newValue": board.assignee_id or ""})
        for key in sorted(set(old_custom) | set(new_custom)):
            if old_custom.get(key) != new_custom.get(key):
                change = {
                    "field": key,
                    "oldValue": old_custom.get(key, ""),
                    "newValue": new_custom.get(key, ""),
                }
                if key in KNOWN_FIELD_TYPES:
                    change["oldLabel"] = old_labels.get(key, "")
                    change["newLabel"] = new_labels.get(key, "")
                changes.append(change)
        return changes

    async def get_board(self, board_id: str) -> BoardDetailOut:
        board = await self._get_board(board_id)
        project = await self._get_project(board.project_id)

        participant_rows = await self.participants.list_rows(board_id)
        participant_ids = [p.user_id for p in participant_rows]
        attachments = await self.attachments.find_by_entity(EntityType.BOARD, board_id)
        comments = await self._list_comment_outs(board_id)
        custom_values = await self._read_custom_fields(board.custom_fields)

        return self._board_out(
            board, project, participant_ids, attachments, custom_values,
            out_class=BoardDetailOut,
            project_name=project.name,
            participants=[
                ParticipantOut(id=p.id, board_id=p.board_id, user_id=p.user_id, created_at=_ts(p.created_at))
                for p in participant_rows
            ],
            comments=comments,
        )

    async def list_boards(self, project_id: str, filters: Optional[Dict[str, str]] = None) -> BoardListOut:
        """Boards of a project, newest first, optionally filtered by custom field values"""
        project = await self._get_project(project_id)
        result = await self.db.execute(
            select(Board)
            .where(Board.project_id == project_id, Board.deleted_at.is_(None))
            .order_by(Board.created_at.desc())
        )
        boards = list(result.scalars().all())

        try:
            values_by_board = await self.codec.ids_to_values_batch(boards)
        except SQLAlchemyError as e:
            self.log.warning(f"Failed to convert custom fields for project {project_id}: {e}")
            values_by_board = {board.id: dict(board.custom_fields or {}) for board in boards}

        filters = {key: value for key, value in (filters or {}).items() if value}
        if filters:
            boards = [
                board for board in boards
                if all(values_by_board.get(board.id, {}).get(key) == value for key, value in filters.items())
            ]

        board_ids = [board.id for board in boards]
        participants = await self.participants.list_for_boards(board_ids)
        attachments_by_board: Dict[str, List[Attachment]] = {board_id: [] for board_id in board_ids}
        for attachment in await self.attachments.find_by_entities(EntityType.BOARD, board_ids):
            attachments_by_board.setdefault(attachment.entity_id, []).append(attachment)

        items = [
            self._board_out(
                board, project,
                participants.get(board.id, []),
                attachments_by_board.get(board.id, []),
                values_by_board.get(board.id, {}),
            )
            for board in boards
        ]
        return BoardListOut(boards=items, total=len(items))

    async def delete_board(self, actor: CurrentUser, board_id: str) -> None:
        await self._get_board(board_id)

        attachments = await self.attachments.find_by_entity(EntityType.BOARD, board_id)
        await self.attachments.delete_with_storage(attachments)

        board = await self._get_board(board_id)
        board.deleted_at = utcnow()
        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise InternalError("Failed to delete board", str(e))
        self.log.info(f"Board deleted: {board_id} by {actor.id} ({len(attachments)} attachments removed)")

    # ============================================================
    # COMMENTS
    # ============================================================

    async def _list_comment_outs(self, board_id: str) -> List[CommentOut]:
        result = await self.db.execute(
            select(Comment)
            .where(Comment.board_id == board_id, Comment.deleted_at.is_(None))
            .order_by(Comment.created_at)
        )
        comments = list(result.scalars().all())
        by_comment: Dict[str, List[Attachment]] = {c.id: [] for c in comments}
        for attachment in await self.attachments.find_by_entities(EntityType.COMMENT, list(by_comment)):
            by_comment.setdefault(attachment.entity_id, []).append(attachment)
        return [self._comment_out(c, by_comment.get(c.id, [])) for c in comments]

    async def list_comments(self, board_id: str) -> List[CommentOut]:
        await self._get_board(board_id)
        return await self._list_comment_outs(board_id)

    async def create_comment(self, actor: CurrentUser, data: CommentCreate) -> CommentOut:
        board = await self._get_board(data.board_id)
        board_id = board.id
        board_title = board.title
        assignee_id = board.assignee_id
        project = await self._get_project(board.project_id)

        attachment_ids = await self.attachments.validate_and_claim(data.attachment_ids, EntityType.COMMENT)

        comment = Comment(board_id=board_id, user_id=actor.id, content=data.content)
        self.db.add(comment)
        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise InternalError("Failed to create comment", str(e))
        comment_id = comment.id

        if attachment_ids:
            try:
                await self.attachments.confirm(attachment_ids, comment_id)
            except InternalError as e:
                self.log.error(f"Attachment confirmation failed for comment {comment_id}, removing comment: {e.message}")
                await self._remove_comment_row(comment_id)
                raise InternalError(f"Failed to confirm attachments: {e.message}", CONFIRM_FAILURE_DETAILS)

        comment = await self._get_comment(comment_id)
        attachments = await self.attachments.find_by_entity(EntityType.COMMENT, comment_id)

        participant_ids = await self.participants.list_user_ids(board_id)
        self.fanout.notify(
            NotificationType.BOARD_COMMENT_ADDED,
            self._resource(board_id, board_title, project),
            actor.id,
            compute_targets(assignee_id, participant_ids, actor.id),
            {"commentId": comment_id, "commentPreview": truncate_preview(data.content)},
        )

        self.log.info(f"Comment created: {comment_id} on board {board_id} by {actor.id}")
        return self._comment_out(comment, attachments)

    async def update_comment(self, actor: CurrentUser, comment_id: str, data: CommentUpdate) -> CommentOut:
        comment = await self._get_comment(comment_id)
        if comment.user_id != actor.id:
            raise ForbiddenError("Only the author can edit this comment")

        attachment_ids = await self.attachments.validate_and_claim(data.attachment_ids, EntityType.COMMENT)

        comment.content = data.content
        comment.updated_at = utcnow()
        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise InternalError("Failed to update comment", str(e))

        if attachment_ids:
            try:
                await self.attachments.confirm(attachment_ids, comment_id)
            except InternalError as e:
                self.log.error(f"Attachment confirmation failed for comment {comment_id}: {e.message}")
                raise InternalError(f"Failed to confirm attachments: {e.message}", CONFIRM_FAILURE_DETAILS)

        comment = await self._get_comment(comment_id)
        attachments = await self.attachments.find_by_entity(EntityType.COMMENT, comment_id)
        return self._comment_out(comment, attachments)

    async def delete_comment(self, actor: CurrentUser, comment_id: str) -> None:
        comment = await self._get_comment(comment_id)
        if comment.user_id != actor.id:
            raise ForbiddenError("Only the author can delete this comment")

        attachments = await self.attachments.find_by_entity(EntityType.COMMENT, comment_id)
        await self.attachments.delete_with_storage(attachments)

        comment = await self._get_comment(comment_id)
        comment.deleted_at = utcnow()
        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise InternalError("Failed to delete comment", str(e))
        self.log.info(f"Comment deleted: {comment_id} by {actor.id}")


# ============================================================
# FASTAPI DEPENDENCIES
# ============================================================

def get_store(request: Request) -> ObjectStore:
    store = getattr(request.app.state, "object_store", None)
    return store or get_object_store()


def get_fanout(request: Request) -> NotificationFanout:
    return NotificationFanout(getattr(request.app.state, "dispatcher", None), logger)


async def get_board_service(
    db: AsyncSession = Depends(get_db_session),
    store: ObjectStore = Depends(get_store),
    fanout: NotificationFanout = Depends(get_fanout),
) -> BoardEntityService:
    return BoardEntityService(db, store, fanout, logger)
