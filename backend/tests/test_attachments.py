# tests/test_attachments.py - Attachment claim/confirm and cleanup
import os
import uuid

import pytest
from httpx import AsyncClient
from sqlalchemy import select, func

from attachments import AttachmentClaimManager, filter_valid_ids
from board_service import BoardEntityService
from errors import InternalError, ValidationError
from models import Attachment, AttachmentStatus, Board, EntityType
from schemas import BoardCreate, BoardUpdate
from storage import LocalObjectStore
from tests.conftest import get_auth_headers

NIL_UUID = "00000000-0000-0000-0000-000000000000"


async def _status(db_session, attachment_id):
    result = await db_session.execute(select(Attachment.status).where(Attachment.id == attachment_id))
    return result.scalar_one()


async def _entity_id(db_session, attachment_id):
    result = await db_session.execute(select(Attachment.entity_id).where(Attachment.id == attachment_id))
    return result.scalar_one()


# ============================================================
# UNIT: id filtering
# ============================================================

def test_filter_valid_ids_drops_absent_and_repeats():
    a, b = str(uuid.uuid4()), str(uuid.uuid4())
    assert filter_valid_ids([None, "", NIL_UUID, a, b, a, "  "]) == [a, b]
    assert filter_valid_ids(None) == []


# ============================================================
# API: upload registration
# ============================================================

@pytest.mark.asyncio
async def test_register_and_get_attachment(client: AsyncClient, test_user):
    headers = get_auth_headers(test_user)
    resp = await client.post(
        "/api/v1/attachments",
        json={
            "entityType": "BOARD",
            "fileName": "mockup.png",
            "fileKey": "uploads/abc/mockup.png",
            "fileSize": 2048,
            "contentType": "image/png",
        },
        headers=headers,
    )
    assert resp.status_code == 201
    data = resp.json()
    assert data["status"] == "TEMP"
    assert data["entityId"] is None
    assert data["fileUrl"] == "/files/uploads/abc/mockup.png"
    assert data["uploadedBy"] == test_user.id

    resp = await client.get(f"/api/v1/attachments/{data['id']}", headers=headers)
    assert resp.status_code == 200
    assert resp.json()["fileName"] == "mockup.png"


@pytest.mark.asyncio
async def test_register_attachment_rejects_unknown_entity_type(client: AsyncClient, test_user):
    resp = await client.post(
        "/api/v1/attachments",
        json={"entityType": "TASK", "fileName": "a.txt", "fileKey": "a.txt"},
        headers=get_auth_headers(test_user),
    )
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_get_missing_attachment(client: AsyncClient, test_user):
    resp = await client.get(f"/api/v1/attachments/{uuid.uuid4()}", headers=get_auth_headers(test_user))
    assert resp.status_code == 404


# ============================================================
# API: claiming on board / comment creation
# ============================================================

@pytest.mark.asyncio
async def test_board_confirms_attachments(client: AsyncClient, db_session, test_user, test_project, attachment_factory):
    first = await attachment_factory(file_name="a.pdf")
    second = await attachment_factory(file_name="b.pdf")
    resp = await client.post(
        "/api/v1/boards",
        json={
            "projectId": test_project.id,
            "title": "With files",
            "attachmentIds": [first.id, None, NIL_UUID, second.id],
        },
        headers=get_auth_headers(test_user),
    )
    assert resp.status_code == 201
    data = resp.json()
    assert sorted(a["id"] for a in data["attachments"]) == sorted([first.id, second.id])
    assert all(a["fileUrl"].startswith("/files/uploads/") for a in data["attachments"])

    for attachment_id in (first.id, second.id):
        assert await _status(db_session, attachment_id) == AttachmentStatus.CONFIRMED
        assert await _entity_id(db_session, attachment_id) == data["boardId"]


@pytest.mark.asyncio
async def test_confirmed_attachment_cannot_be_reused(client: AsyncClient, test_user, test_project, attachment_factory):
    headers = get_auth_headers(test_user)
    attachment = await attachment_factory()
    body = {"projectId": test_project.id, "title": "First", "attachmentIds": [attachment.id]}
    assert (await client.post("/api/v1/boards", json=body, headers=headers)).status_code == 201

    body["title"] = "Second"
    resp = await client.post("/api/v1/boards", json=body, headers=headers)
    assert resp.status_code == 400
    assert resp.json()["message"] == "Attachment is not in temporary status and cannot be reused"


@pytest.mark.asyncio
async def test_attachment_entity_type_must_match(client: AsyncClient, db_session, test_user, test_project, attachment_factory):
    attachment = await attachment_factory(entity_type=EntityType.COMMENT)
    resp = await client.post(
        "/api/v1/boards",
        json={"projectId": test_project.id, "title": "Wrong type", "attachmentIds": [attachment.id]},
        headers=get_auth_headers(test_user),
    )
    assert resp.status_code == 400
    assert resp.json()["message"] == "Attachment entity type does not match"
    assert (await db_session.execute(select(func.count(Board.id)))).scalar() == 0


@pytest.mark.asyncio
async def test_unknown_attachment_id(client: AsyncClient, test_user, test_project):
    resp = await client.post(
        "/api/v1/boards",
        json={"projectId": test_project.id, "title": "Ghost file", "attachmentIds": [str(uuid.uuid4())]},
        headers=get_auth_headers(test_user),
    )
    assert resp.status_code == 400
    assert resp.json()["message"] == "One or more attachments not found"


@pytest.mark.asyncio
async def test_update_board_adds_attachment(client: AsyncClient, test_user, test_project, attachment_factory):
    headers = get_auth_headers(test_user)
    created = (await client.post(
        "/api/v1/boards", json={"projectId": test_project.id, "title": "Later files"}, headers=headers
    )).json()
    attachment = await attachment_factory()

    resp = await client.put(
        f"/api/v1/boards/{created['boardId']}", json={"attachmentIds": [attachment.id]}, headers=headers
    )
    assert resp.status_code == 200
    assert [a["id"] for a in resp.json()["attachments"]] == [attachment.id]


# ============================================================
# SERVICE: confirmation guard and compensation
# ============================================================

class FailingConfirmManager(AttachmentClaimManager):
    async def confirm(self, ids, owner_entity_id):
        raise InternalError("storage metadata unavailable")


class RacingClaimManager(AttachmentClaimManager):
    """Another request consumes the attachments between validation and confirmation"""

    async def validate_and_claim(self, ids, expected_entity_type):
        valid = await super().validate_and_claim(ids, expected_entity_type)
        await super().confirm(valid, str(uuid.uuid4()))
        return valid


@pytest.mark.asyncio
async def test_confirm_failure_removes_created_board(db_session, object_store, fanout, test_user, test_project, attachment_factory):
    attachment = await attachment_factory()
    service = BoardEntityService(
        db_session, object_store, fanout,
        attachments=FailingConfirmManager(db_session, object_store),
    )
    with pytest.raises(InternalError) as exc_info:
        await service.create_board(
            test_user,
            BoardCreate(project_id=test_project.id, title="Doomed", attachment_ids=[attachment.id]),
        )
    assert exc_info.value.status_code == 500
    assert exc_info.value.message.startswith("Failed to confirm attachments")
    assert (await db_session.execute(select(func.count(Board.id)))).scalar() == 0
    assert await _status(db_session, attachment.id) == AttachmentStatus.TEMP


@pytest.mark.asyncio
async def test_concurrent_claim_loses_and_is_compensated(db_session, object_store, fanout, test_user, test_project, attachment_factory):
    attachment = await attachment_factory()
    attachment_id = attachment.id
    service = BoardEntityService(
        db_session, object_store, fanout,
        attachments=RacingClaimManager(db_session, object_store),
    )
    with pytest.raises(InternalError):
        await service.create_board(
            test_user,
            BoardCreate(project_id=test_project.id, title="Too late", attachment_ids=[attachment_id]),
        )
    assert (await db_session.execute(select(func.count(Board.id)))).scalar() == 0
    assert await _status(db_session, attachment_id) == AttachmentStatus.CONFIRMED


@pytest.mark.asyncio
async def test_confirm_is_all_or_nothing(db_session, object_store, attachment_factory):
    fresh = await attachment_factory()
    used = await attachment_factory(status=AttachmentStatus.CONFIRMED)
    fresh_id, used_id = fresh.id, used.id
    manager = AttachmentClaimManager(db_session, object_store)

    with pytest.raises(InternalError):
        await manager.confirm([fresh_id, used_id], str(uuid.uuid4()))

    assert await _status(db_session, fresh_id) == AttachmentStatus.TEMP
    assert await _entity_id(db_session, fresh_id) is None


@pytest.mark.asyncio
async def test_validate_and_claim_does_not_mutate(db_session, object_store, attachment_factory):
    attachment = await attachment_factory()
    manager = AttachmentClaimManager(db_session, object_store)
    assert await manager.validate_and_claim([attachment.id], EntityType.BOARD) == [attachment.id]
    assert await _status(db_session, attachment.id) == AttachmentStatus.TEMP

    with pytest.raises(ValidationError):
        await manager.validate_and_claim([attachment.id], EntityType.PROJECT)


# ============================================================
# SERVICE: deletion
# ============================================================

class BrokenStore(LocalObjectStore):
    async def delete_file(self, key):
        raise OSError("bucket unavailable")


@pytest.mark.asyncio
async def test_delete_with_storage_continues_on_storage_errors(db_session, tmp_path, attachment_factory):
    first = await attachment_factory()
    second = await attachment_factory()
    second.file_url = ""
    await db_session.commit()
    ids = [first.id, second.id]

    manager = AttachmentClaimManager(db_session, BrokenStore(root=str(tmp_path)))
    await manager.delete_with_storage([first, second])

    result = await db_session.execute(select(func.count(Attachment.id)).where(Attachment.id.in_(ids)))
    assert result.scalar() == 0


@pytest.mark.asyncio
async def test_delete_with_storage_removes_files(db_session, object_store, attachment_factory):
    attachment = await attachment_factory()
    path = object_store._path_for(attachment.file_url)
    assert os.path.exists(path)

    await AttachmentClaimManager(db_session, object_store).delete_with_storage([attachment])
    assert not os.path.exists(path)


def test_extract_key_handles_urls():
    store = LocalObjectStore(root="/tmp/board-files", public_url="/files")
    assert store.extract_key("uploads/a.png") == "uploads/a.png"
    assert store.extract_key("/files/uploads/a.png") == "uploads/a.png"
    assert store.extract_key("https://cdn.example.com/files/uploads/a.png") == "uploads/a.png"
    assert store.extract_key("") == ""


@pytest.mark.asyncio
async def test_confirm_failure_on_update_keeps_board(service, db_session, object_store, fanout, test_user, test_project, attachment_factory):
    created = await service.create_board(test_user, BoardCreate(project_id=test_project.id, title="Keeper"))
    board_id = created.board_id
    attachment = await attachment_factory()
    attachment_id = attachment.id

    failing = BoardEntityService(
        db_session, object_store, fanout,
        attachments=FailingConfirmManager(db_session, object_store),
    )
    with pytest.raises(InternalError) as exc_info:
        await failing.update_board(
            test_user, board_id, BoardUpdate(title="Renamed", attachment_ids=[attachment_id]),
        )
    assert exc_info.value.code == "INTERNAL_ERROR"
    assert exc_info.value.message.startswith("Failed to confirm attachments")

    board = await service.get_board(board_id)
    assert board.title == "Renamed"
    assert board.attachments == []
    assert await _status(db_session, attachment_id) == AttachmentStatus.TEMP


# ============================================================
# API: attachment id format
# ============================================================

@pytest.mark.asyncio
async def test_uppercase_attachment_id_is_claimed(client: AsyncClient, db_session, test_user, test_project, attachment_factory):
    attachment = await attachment_factory()
    attachment_id = attachment.id
    resp = await client.post(
        "/api/v1/boards",
        json={"projectId": test_project.id, "title": "Shouting", "attachmentIds": [attachment_id.upper()]},
        headers=get_auth_headers(test_user),
    )
    assert resp.status_code == 201
    assert [a["id"] for a in resp.json()["attachments"]] == [attachment_id]
    assert await _status(db_session, attachment_id) == AttachmentStatus.CONFIRMED


@pytest.mark.asyncio
async def test_malformed_attachment_id_rejected(client: AsyncClient, db_session, test_user, test_project):
    headers = get_auth_headers(test_user)
    resp = await client.post(
        "/api/v1/boards",
        json={"projectId": test_project.id, "title": "Bad ref", "attachmentIds": ["file-123"]},
        headers=headers,
    )
    assert resp.status_code == 422
    assert (await db_session.execute(select(func.count(Board.id)))).scalar() == 0

    board = (await client.post(
        "/api/v1/boards", json={"projectId": test_project.id, "title": "Thread"}, headers=headers
    )).json()
    resp = await client.post(
        "/api/v1/comments",
        json={"boardId": board["boardId"], "content": "See file", "attachmentIds": ["file-123"]},
        headers=headers,
    )
    assert resp.status_code == 422
