# tests/test_comments.py - Comment router tests
import uuid

import pytest
from httpx import AsyncClient
from sqlalchemy import select, func

from models import Attachment, AttachmentStatus, Comment, EntityType
from tests.conftest import get_auth_headers


async def _board(client, user, project, **fields):
    body = {"projectId": project.id, "title": "Discussed board"}
    body.update(fields)
    resp = await client.post("/api/v1/boards", json=body, headers=get_auth_headers(user))
    assert resp.status_code == 201
    return resp.json()


@pytest.mark.asyncio
async def test_create_and_list_comments(client: AsyncClient, test_user, test_project):
    headers = get_auth_headers(test_user)
    board = await _board(client, test_user, test_project)

    resp = await client.post(
        "/api/v1/comments", json={"boardId": board["boardId"], "content": "Looks good"}, headers=headers
    )
    assert resp.status_code == 201
    data = resp.json()
    assert data["content"] == "Looks good"
    assert data["userId"] == test_user.id
    assert data["attachments"] == []

    resp = await client.get(f"/api/v1/boards/{board['boardId']}/comments", headers=headers)
    assert resp.status_code == 200
    assert [c["commentId"] for c in resp.json()] == [data["commentId"]]


@pytest.mark.asyncio
async def test_comment_on_missing_board(client: AsyncClient, test_user):
    resp = await client.post(
        "/api/v1/comments",
        json={"boardId": str(uuid.uuid4()), "content": "Hello?"},
        headers=get_auth_headers(test_user),
    )
    assert resp.status_code == 404
    assert resp.json()["message"] == "Board not found"


@pytest.mark.asyncio
async def test_comment_with_attachment(client: AsyncClient, db_session, test_user, test_project, attachment_factory):
    board = await _board(client, test_user, test_project)
    attachment = await attachment_factory(entity_type=EntityType.COMMENT, file_name="log.txt")
    attachment_id = attachment.id

    resp = await client.post(
        "/api/v1/comments",
        json={"boardId": board["boardId"], "content": "See log", "attachmentIds": [attachment_id]},
        headers=get_auth_headers(test_user),
    )
    assert resp.status_code == 201
    data = resp.json()
    assert [a["fileName"] for a in data["attachments"]] == ["log.txt"]

    result = await db_session.execute(
        select(Attachment.status, Attachment.entity_id).where(Attachment.id == attachment_id)
    )
    status, entity_id = result.one()
    assert status == AttachmentStatus.CONFIRMED
    assert entity_id == data["commentId"]


@pytest.mark.asyncio
async def test_comment_with_used_attachment_is_rejected(client: AsyncClient, db_session, test_user, test_project, attachment_factory):
    board = await _board(client, test_user, test_project)
    attachment = await attachment_factory(entity_type=EntityType.COMMENT, status=AttachmentStatus.CONFIRMED)

    resp = await client.post(
        "/api/v1/comments",
        json={"boardId": board["boardId"], "content": "Reusing", "attachmentIds": [attachment.id]},
        headers=get_auth_headers(test_user),
    )
    assert resp.status_code == 400
    assert "not in temporary status" in resp.json()["message"]
    assert (await db_session.execute(select(func.count(Comment.id)))).scalar() == 0


@pytest.mark.asyncio
async def test_update_comment(client: AsyncClient, test_user, test_project, attachment_factory):
    headers = get_auth_headers(test_user)
    board = await _board(client, test_user, test_project)
    comment = (await client.post(
        "/api/v1/comments", json={"boardId": board["boardId"], "content": "Draft"}, headers=headers
    )).json()
    attachment = await attachment_factory(entity_type=EntityType.COMMENT)

    resp = await client.put(
        f"/api/v1/comments/{comment['commentId']}",
        json={"content": "Final", "attachmentIds": [attachment.id]},
        headers=headers,
    )
    assert resp.status_code == 200
    data = resp.json()
    assert data["content"] == "Final"
    assert [a["id"] for a in data["attachments"]] == [attachment.id]


@pytest.mark.asyncio
async def test_only_author_edits_comment(client: AsyncClient, test_user, other_user, test_project):
    board = await _board(client, test_user, test_project)
    comment = (await client.post(
        "/api/v1/comments",
        json={"boardId": board["boardId"], "content": "Mine"},
        headers=get_auth_headers(test_user),
    )).json()

    resp = await client.put(
        f"/api/v1/comments/{comment['commentId']}",
        json={"content": "Hijacked"},
        headers=get_auth_headers(other_user),
    )
    assert resp.status_code == 403
    assert resp.json()["code"] == "FORBIDDEN"

    resp = await client.delete(
        f"/api/v1/comments/{comment['commentId']}", headers=get_auth_headers(other_user)
    )
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_delete_comment_removes_attachments(client: AsyncClient, db_session, test_user, test_project, attachment_factory):
    headers = get_auth_headers(test_user)
    board = await _board(client, test_user, test_project)
    attachment = await attachment_factory(entity_type=EntityType.COMMENT)
    attachment_id = attachment.id
    comment = (await client.post(
        "/api/v1/comments",
        json={"boardId": board["boardId"], "content": "Temporary", "attachmentIds": [attachment_id]},
        headers=headers,
    )).json()

    resp = await client.delete(f"/api/v1/comments/{comment['commentId']}", headers=headers)
    assert resp.status_code == 204

    resp = await client.get(f"/api/v1/boards/{board['boardId']}/comments", headers=headers)
    assert resp.json() == []
    result = await db_session.execute(select(func.count(Attachment.id)).where(Attachment.id == attachment_id))
    assert result.scalar() == 0


@pytest.mark.asyncio
async def test_comment_content_is_required(client: AsyncClient, test_user, test_project):
    board = await _board(client, test_user, test_project)
    resp = await client.post(
        "/api/v1/comments",
        json={"boardId": board["boardId"], "content": ""},
        headers=get_auth_headers(test_user),
    )
    assert resp.status_code == 422
