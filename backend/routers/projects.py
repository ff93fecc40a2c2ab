# routers/projects.py - Projects and their custom field options
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_user, CurrentUser
from custom_fields import CustomFieldCodec, KNOWN_FIELD_TYPES
from database import get_db_session
from errors import AlreadyExistsError, NotFoundError, ValidationError
from models import FieldOption, Project
from schemas import FieldOptionCreate, FieldOptionOut, ProjectCreate, ProjectOut

router = APIRouter(prefix="/api/v1/projects", tags=["Projects"])


def _ts(dt) -> Optional[str]:
    return dt.isoformat() if dt else None


def _project_out(project: Project) -> ProjectOut:
    return ProjectOut(
        project_id=project.id,
        workspace_id=project.workspace_id,
        name=project.name,
        description=project.description,
        owner_id=project.owner_id,
        created_at=_ts(project.created_at),
    )


def _option_out(option: FieldOption) -> FieldOptionOut:
    return FieldOptionOut(
        option_id=option.id,
        project_id=option.project_id,
        field_type=option.field_type,
        value=option.value,
        label=option.label,
        color=option.color,
        display_order=option.display_order or 0,
        is_system_default=option.is_system_default or False,
    )


async def _get_project(db: AsyncSession, project_id: str) -> Project:
    result = await db.execute(
        select(Project).where(Project.id == project_id, Project.deleted_at.is_(None))
    )
    project = result.scalar_one_or_none()
    if not project:
        raise NotFoundError("Project not found")
    return project


@router.post("", response_model=ProjectOut, status_code=201)
async def create_project(
    data: ProjectCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Create a project and seed the default stage/importance/role options"""
    workspace_id = data.workspace_id or user.workspace_id
    if not workspace_id:
        raise ValidationError("workspaceId is required")

    project = Project(
        workspace_id=workspace_id,
        name=data.name,
        description=data.description,
        owner_id=user.id,
    )
    db.add(project)
    await db.commit()

    await CustomFieldCodec(db).seed_default_options(project.id)
    return _project_out(project)


@router.get("/{project_id}", response_model=ProjectOut)
async def get_project(
    project_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    return _project_out(await _get_project(db, project_id))


@router.get("/{project_id}/field-options", response_model=List[FieldOptionOut])
async def list_field_options(
    project_id: str,
    field_type: Optional[str] = Query(None, alias="fieldType"),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await _get_project(db, project_id)
    if field_type and field_type not in KNOWN_FIELD_TYPES:
        raise ValidationError(f"Unknown field type: {field_type}")
    options = await CustomFieldCodec(db).list_options(project_id, field_type)
    return [_option_out(o) for o in options]


@router.post("/{project_id}/field-options", response_model=FieldOptionOut, status_code=201)
async def create_field_option(
    project_id: str,
    data: FieldOptionCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await _get_project(db, project_id)
    option = FieldOption(
        project_id=project_id,
        field_type=data.field_type,
        value=data.value,
        label=data.label,
        color=data.color,
        display_order=data.display_order,
        is_system_default=False,
    )
    db.add(option)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise AlreadyExistsError(f"Option '{data.value}' already exists for field type '{data.field_type}'")
    return _option_out(option)
