# routers/boards.py - Board CRUD over the lifecycle coordinator
from typing import Optional

from fastapi import APIRouter, Depends, Query, Response

from auth import get_current_user, CurrentUser
from board_service import BoardEntityService, get_board_service
from schemas import BoardCreate, BoardUpdate, BoardOut, BoardDetailOut, BoardListOut

router = APIRouter(prefix="/api/v1", tags=["Boards"])


@router.post("/boards", response_model=BoardOut, status_code=201)
async def create_board(
    data: BoardCreate,
    user: CurrentUser = Depends(get_current_user),
    service: BoardEntityService = Depends(get_board_service),
):
    """Create a board; assignee defaults to the caller"""
    return await service.create_board(user, data)


@router.get("/boards/{board_id}", response_model=BoardDetailOut)
async def get_board(
    board_id: str,
    user: CurrentUser = Depends(get_current_user),
    service: BoardEntityService = Depends(get_board_service),
):
    return await service.get_board(board_id)


@router.get("/projects/{project_id}/boards", response_model=BoardListOut)
async def list_boards(
    project_id: str,
    stage: Optional[str] = Query(None),
    importance: Optional[str] = Query(None),
    role: Optional[str] = Query(None),
    user: CurrentUser = Depends(get_current_user),
    service: BoardEntityService = Depends(get_board_service),
):
    """List a project's boards, optionally filtered by custom field value"""
    filters = {"stage": stage, "importance": importance, "role": role}
    return await service.list_boards(project_id, filters)


@router.put("/boards/{board_id}", response_model=BoardOut)
async def update_board(
    board_id: str,
    data: BoardUpdate,
    user: CurrentUser = Depends(get_current_user),
    service: BoardEntityService = Depends(get_board_service),
):
    """Partial update; `participants: []` clears the participant list"""
    return await service.update_board(user, board_id, data)


@router.delete("/boards/{board_id}", status_code=204)
async def delete_board(
    board_id: str,
    user: CurrentUser = Depends(get_current_user),
    service: BoardEntityService = Depends(get_board_service),
):
    await service.delete_board(user, board_id)
    return Response(status_code=204)
