# routers/comments.py - Board comments
from typing import List

from fastapi import APIRouter, Depends, Response

from auth import get_current_user, CurrentUser
from board_service import BoardEntityService, get_board_service
from schemas import CommentCreate, CommentUpdate, CommentOut

router = APIRouter(prefix="/api/v1", tags=["Comments"])


@router.post("/comments", response_model=CommentOut, status_code=201)
async def create_comment(
    data: CommentCreate,
    user: CurrentUser = Depends(get_current_user),
    service: BoardEntityService = Depends(get_board_service),
):
    return await service.create_comment(user, data)


@router.get("/boards/{board_id}/comments", response_model=List[CommentOut])
async def list_comments(
    board_id: str,
    user: CurrentUser = Depends(get_current_user),
    service: BoardEntityService = Depends(get_board_service),
):
    return await service.list_comments(board_id)


@router.put("/comments/{comment_id}", response_model=CommentOut)
async def update_comment(
    comment_id: str,
    data: CommentUpdate,
    user: CurrentUser = Depends(get_current_user),
    service: BoardEntityService = Depends(get_board_service),
):
    """Edit own comment; new attachment ids are confirmed onto it"""
    return await service.update_comment(user, comment_id, data)


@router.delete("/comments/{comment_id}", status_code=204)
async def delete_comment(
    comment_id: str,
    user: CurrentUser = Depends(get_current_user),
    service: BoardEntityService = Depends(get_board_service),
):
    await service.delete_comment(user, comment_id)
    return Response(status_code=204)
