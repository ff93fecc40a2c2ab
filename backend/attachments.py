# attachments.py - Attachment claim, confirmation and cleanup
# Lifecycle: upload creates a TEMP row -> an owning board/comment/project
# confirms it exactly once -> deleted from storage and DB with its owner.

import logging
from typing import Iterable, List, Optional, Sequence

from sqlalchemy import select, update, delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from errors import InternalError, NotFoundError, ValidationError
from models import Attachment, AttachmentStatus, EntityType, utcnow
from storage import ObjectStore

logger = logging.getLogger("board-service.attachments")

NIL_UUID = "00000000-0000-0000-0000-000000000000"

CONFIRM_FAILURE_DETAILS = "Please ensure all attachment IDs are valid and not already used"


def filter_valid_ids(ids: Optional[Iterable]) -> List[str]:
    """Drop absent ids (None, blank, nil UUID) and repeats, keeping first-seen order"""
    valid: List[str] = []
    seen = set()
    for raw in ids or []:
        if raw is None:
            continue
        value = str(raw).strip()
        if not value or value == NIL_UUID or value in seen:
            continue
        seen.add(value)
        valid.append(value)
    return valid


class AttachmentClaimManager:
    """Validates, confirms and deletes attachments on behalf of their owning entity"""

    def __init__(self, db: AsyncSession, store: ObjectStore, log: Optional[logging.Logger] = None):
        self.db = db
        self.store = store
        self.log = log or logger

    # ---------- lookups ----------

    async def get(self, attachment_id: str) -> Attachment:
        result = await self.db.execute(select(Attachment).where(Attachment.id == attachment_id))
        attachment = result.scalar_one_or_none()
        if not attachment:
            raise NotFoundError("Attachment not found")
        return attachment

    async def find_by_ids(self, ids: Sequence[str]) -> List[Attachment]:
        if not ids:
            return []
        result = await self.db.execute(select(Attachment).where(Attachment.id.in_(list(ids))))
        return list(result.scalars().all())

    async def find_by_entity(self, entity_type: EntityType, entity_id: str) -> List[Attachment]:
        return await self.find_by_entities(entity_type, [entity_id])

    async def find_by_entities(self, entity_type: EntityType, entity_ids: Sequence[str]) -> List[Attachment]:
        if not entity_ids:
            return []
        result = await self.db.execute(
            select(Attachment)
            .where(
                Attachment.entity_type == entity_type,
                Attachment.entity_id.in_(list(entity_ids)),
                Attachment.status == AttachmentStatus.CONFIRMED,
            )
            .order_by(Attachment.created_at)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    # ---------- upload step ----------

    async def register_upload(
        self,
        entity_type: EntityType,
        file_name: str,
        file_key: str,
        uploaded_by: str,
        file_size: int = 0,
        content_type: Optional[str] = None,
        workspace_id: Optional[str] = None,
    ) -> Attachment:
        attachment = Attachment(
            entity_type=entity_type,
            status=AttachmentStatus.TEMP,
            file_name=file_name,
            file_url=file_key,
            file_size=file_size,
            content_type=content_type,
            uploaded_by=uploaded_by,
            workspace_id=workspace_id,
        )
        self.db.add(attachment)
        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise InternalError("Failed to register attachment", str(e))
        await self.db.refresh(attachment)
        return attachment

    # ---------- claim / confirm ----------

    async def validate_and_claim(self, ids: Optional[Iterable], expected_entity_type: EntityType) -> List[str]:
        """Check that every id is an unused TEMP attachment of the expected type.

        Returns the filtered id list to confirm later. Nothing is written here;
        the TEMP guard in confirm() is what actually prevents double use.
        """
        valid_ids = filter_valid_ids(ids)
        if not valid_ids:
            return []

        try:
            attachments = await self.find_by_ids(valid_ids)
        except SQLAlchemyError as e:
            raise InternalError("Failed to fetch attachments", str(e))

        if len(attachments) != len(valid_ids):
            raise ValidationError("One or more attachments not found")

        for attachment in attachments:
            if attachment.status != AttachmentStatus.TEMP:
                raise ValidationError("Attachment is not in temporary status and cannot be reused")
            if attachment.entity_type != expected_entity_type:
                raise ValidationError("Attachment entity type does not match")

        return valid_ids

    async def confirm(self, ids: Sequence[str], owner_entity_id: str) -> None:
        """Bind TEMP attachments to their owner in one conditional update.

        Either every id moves TEMP -> CONFIRMED or none does.
        """
        if not ids:
            return

        stmt = (
            update(Attachment)
            .where(Attachment.id.in_(list(ids)), Attachment.status == AttachmentStatus.TEMP)
            .values(status=AttachmentStatus.CONFIRMED, entity_id=owner_entity_id, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        try:
            result = await self.db.execute(stmt)
            if result.rowcount != len(ids):
                await self.db.rollback()
                raise InternalError(
                    f"expected {len(ids)} attachments in TEMP status, found {result.rowcount}; "
                    "one or more attachments are already used",
                    CONFIRM_FAILURE_DETAILS,
                )
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise InternalError(str(e), CONFIRM_FAILURE_DETAILS)

        self.log.debug(f"Confirmed {len(ids)} attachments for entity {owner_entity_id}")

    # ---------- cleanup ----------

    async def delete_with_storage(self, attachments: Sequence[Attachment]) -> None:
        """Delete stored objects (best effort) then the attachment rows"""
        if not attachments:
            return

        ids = []
        for attachment in attachments:
            ids.append(attachment.id)
            key = self.store.extract_key(attachment.file_url)
            if not key:
                self.log.warning(f"Cannot derive storage key for attachment {attachment.id}: {attachment.file_url!r}")
                continue
            try:
                await self.store.delete_file(key)
            except Exception as e:
                self.log.warning(f"Failed to delete object {key} for attachment {attachment.id}: {e}")

        try:
            await self.db.execute(
                delete(Attachment)
                .where(Attachment.id.in_(ids))
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            self.log.warning(f"Failed to delete attachment rows {ids}: {e}")

    # ---------- serialisation ----------

    def to_response(self, attachment: Attachment) -> dict:
        return {
            "id": attachment.id,
            "file_name": attachment.file_name,
            "file_url": self.store.get_file_url(attachment.file_url),
            "file_size": attachment.file_size or 0,
            "content_type": attachment.content_type,
            "uploaded_by": attachment.uploaded_by,
            "uploaded_at": attachment.created_at.isoformat() if attachment.created_at else None,
        }
