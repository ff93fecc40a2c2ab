# custom_fields.py - Custom field value <-> field option id translation
# Boards store known custom fields (stage, importance, role) as FieldOption ids
# so option labels and colours can change without touching boards.
# Keys outside the known field types are opaque and pass through untouched.

import uuid
import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from errors import InternalError, ValidationError
from models import Board, FieldOption, FieldType

logger = logging.getLogger("board-service.custom_fields")

KNOWN_FIELD_TYPES = {field_type.value for field_type in FieldType}

# ============================================================
# SYSTEM DEFAULT OPTIONS (seeded per project)
# ============================================================

DEFAULT_FIELD_OPTIONS = [
    # stage
    {"field_type": "stage", "value": "pending", "label": "Pending", "color": "#F59E0B", "display_order": 1},
    {"field_type": "stage", "value": "in_progress", "label": "In Progress", "color": "#3B82F6", "display_order": 2},
    {"field_type": "stage", "value": "review", "label": "In Review", "color": "#8B5CF6", "display_order": 3},
    {"field_type": "stage", "value": "approved", "label": "Approved", "color": "#10B981", "display_order": 4},
    {"field_type": "stage", "value": "deleted", "label": "Deleted", "color": "#EF4444", "display_order": 5},
    # importance
    {"field_type": "importance", "value": "urgent", "label": "Urgent", "color": "#EF4444", "display_order": 1},
    {"field_type": "importance", "value": "high", "label": "High", "color": "#F97316", "display_order": 2},
    {"field_type": "importance", "value": "normal", "label": "Normal", "color": "#10B981", "display_order": 3},
    {"field_type": "importance", "value": "low", "label": "Low", "color": "#6B7280", "display_order": 4},
    # role
    {"field_type": "role", "value": "developer", "label": "Developer", "color": "#8B5CF6", "display_order": 1},
    {"field_type": "role", "value": "planner", "label": "Planner", "color": "#EC4899", "display_order": 2},
    {"field_type": "role", "value": "designer", "label": "Designer", "color": "#F59E0B", "display_order": 3},
    {"field_type": "role", "value": "qa", "label": "QA", "color": "#06B6D4", "display_order": 4},
]


def _as_option_id(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    try:
        return str(uuid.UUID(value))
    except ValueError:
        return None


class CustomFieldCodec:
    """Translates custom field maps between API value tokens and stored option ids"""

    def __init__(self, db: AsyncSession, log: Optional[logging.Logger] = None):
        self.db = db
        self.log = log or logger

    # ---------- write path ----------

    async def values_to_ids(self, project_id: str, fields: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
        """Resolve value tokens to option ids; an unresolvable token aborts the mutation"""
        resolved: Dict[str, Any] = {}
        for key, value in (fields or {}).items():
            if value is None:
                continue
            if key not in KNOWN_FIELD_TYPES:
                resolved[key] = value
                continue
            if not isinstance(value, str):
                raise ValidationError(
                    "Invalid custom field values",
                    f"invalid value type for field '{key}': expected string",
                )
            option = await self._find_option(project_id, key, value)
            if option is None:
                raise ValidationError(
                    "Invalid custom field values",
                    f"invalid field option value '{value}' for field type '{key}'",
                )
            resolved[key] = option.id
        return resolved

    async def _find_option(self, project_id: str, field_type: str, value: str) -> Optional[FieldOption]:
        try:
            result = await self.db.execute(
                select(FieldOption).where(
                    FieldOption.project_id == project_id,
                    FieldOption.field_type == field_type,
                    FieldOption.value == value,
                    FieldOption.deleted_at.is_(None),
                )
            )
        except SQLAlchemyError as e:
            raise InternalError("Failed to resolve custom field options", str(e))
        return result.scalars().first()

    # ---------- read path ----------

    async def _options_by_ids(self, ids: Iterable[str]) -> Dict[str, FieldOption]:
        ids = list(set(ids))
        if not ids:
            return {}
        result = await self.db.execute(select(FieldOption).where(FieldOption.id.in_(ids)))
        return {option.id: option for option in result.scalars().all()}

    @staticmethod
    def _collect_option_ids(fields: Optional[Mapping[str, Any]]) -> List[str]:
        ids = []
        for key, value in (fields or {}).items():
            option_id = _as_option_id(value) if key in KNOWN_FIELD_TYPES else None
            if option_id:
                ids.append(option_id)
        return ids

    @staticmethod
    def _translate(fields: Optional[Mapping[str, Any]], options: Mapping[str, FieldOption], attr: str) -> Dict[str, Any]:
        translated: Dict[str, Any] = {}
        for key, value in (fields or {}).items():
            option_id = _as_option_id(value) if key in KNOWN_FIELD_TYPES else None
            if option_id is None:
                translated[key] = value
                continue
            option = options.get(option_id)
            translated[key] = getattr(option, attr) if option else ""
        return translated

    async def ids_to_values(self, fields: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
        options = await self._options_by_ids(self._collect_option_ids(fields))
        return self._translate(fields, options, "value")

    async def ids_to_labels(self, fields: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
        options = await self._options_by_ids(self._collect_option_ids(fields))
        return self._translate(fields, options, "label")

    async def ids_to_values_batch(self, boards: Sequence[Board]) -> Dict[str, Dict[str, Any]]:
        """One option lookup for a list of boards; returns board id -> value map"""
        all_ids: List[str] = []
        for board in boards:
            all_ids.extend(self._collect_option_ids(board.custom_fields))
        options = await self._options_by_ids(all_ids)
        return {board.id: self._translate(board.custom_fields, options, "value") for board in boards}

    # ---------- options ----------

    async def list_options(self, project_id: str, field_type: Optional[str] = None) -> List[FieldOption]:
        stmt = select(FieldOption).where(
            FieldOption.project_id == project_id,
            FieldOption.deleted_at.is_(None),
        )
        if field_type:
            stmt = stmt.where(FieldOption.field_type == field_type)
        stmt = stmt.order_by(FieldOption.field_type, FieldOption.display_order)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def seed_default_options(self, project_id: str) -> List[FieldOption]:
        options = [
            FieldOption(project_id=project_id, is_system_default=True, **option)
            for option in DEFAULT_FIELD_OPTIONS
        ]
        self.db.add_all(options)
        await self.db.commit()
        self.log.info(f"Seeded {len(options)} default field options for project {project_id}")
        return options
