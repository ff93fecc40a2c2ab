# routers/attachments.py - Upload registration and lookup
# The file itself goes straight to object storage; this records it as TEMP
# so a later board/comment/project mutation can claim it.
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from attachments import AttachmentClaimManager
from auth import get_current_user, CurrentUser
from board_service import get_store
from database import get_db_session
from models import Attachment, EntityType
from schemas import AttachmentRegister, AttachmentDetailOut
from storage import ObjectStore

router = APIRouter(prefix="/api/v1/attachments", tags=["Attachments"])


def _detail(manager: AttachmentClaimManager, attachment: Attachment) -> AttachmentDetailOut:
    return AttachmentDetailOut(
        **manager.to_response(attachment),
        entity_type=attachment.entity_type.value,
        entity_id=attachment.entity_id,
        status=attachment.status.value,
    )


@router.post("", response_model=AttachmentDetailOut, status_code=201)
async def register_attachment(
    data: AttachmentRegister,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    store: ObjectStore = Depends(get_store),
):
    """Record an uploaded file as a TEMP attachment"""
    manager = AttachmentClaimManager(db, store)
    attachment = await manager.register_upload(
        entity_type=EntityType(data.entity_type),
        file_name=data.file_name,
        file_key=store.extract_key(data.file_key),
        uploaded_by=user.id,
        file_size=data.file_size,
        content_type=data.content_type,
        workspace_id=data.workspace_id or user.workspace_id,
    )
    return _detail(manager, attachment)


@router.get("/{attachment_id}", response_model=AttachmentDetailOut)
async def get_attachment(
    attachment_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    store: ObjectStore = Depends(get_store),
):
    manager = AttachmentClaimManager(db, store)
    return _detail(manager, await manager.get(attachment_id))
