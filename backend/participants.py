# participants.py - Board participant set maintenance
# Create adds participants one by one; update replaces the whole set.

import logging
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import select, delete, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from models import Participant

logger = logging.getLogger("board-service.participants")


def dedupe(user_ids: Optional[Iterable]) -> List[str]:
    """First-occurrence-unique, order preserving; blanks dropped"""
    unique: List[str] = []
    seen = set()
    for raw in user_ids or []:
        if raw is None:
            continue
        value = str(raw).strip()
        if not value or value in seen:
            continue
        seen.add(value)
        unique.append(value)
    return unique


class ParticipantReconciler:

    def __init__(self, db: AsyncSession, log: Optional[logging.Logger] = None):
        self.db = db
        self.log = log or logger

    async def list_user_ids(self, board_id: str) -> List[str]:
        result = await self.db.execute(
            select(Participant.user_id)
            .where(Participant.board_id == board_id)
            .order_by(Participant.position, Participant.created_at)
        )
        return list(result.scalars().all())

    async def list_for_boards(self, board_ids: Sequence[str]) -> Dict[str, List[str]]:
        grouped: Dict[str, List[str]] = {board_id: [] for board_id in board_ids}
        if not board_ids:
            return grouped
        result = await self.db.execute(
            select(Participant.board_id, Participant.user_id)
            .where(Participant.board_id.in_(list(board_ids)))
            .order_by(Participant.position, Participant.created_at)
        )
        for board_id, user_id in result.all():
            grouped.setdefault(board_id, []).append(user_id)
        return grouped

    async def list_rows(self, board_id: str) -> List[Participant]:
        result = await self.db.execute(
            select(Participant)
            .where(Participant.board_id == board_id)
            .order_by(Participant.position, Participant.created_at)
        )
        return list(result.scalars().all())

    async def _next_position(self, board_id: str) -> int:
        result = await self.db.execute(
            select(func.max(Participant.position)).where(Participant.board_id == board_id)
        )
        current = result.scalar()
        return 0 if current is None else current + 1

    async def add_participants(self, board_id: str, user_ids: Optional[Iterable]) -> Tuple[int, List[str]]:
        """Additively insert participants; never raises.

        Existing rows and unique-constraint races count as already present.
        Returns (inserted count, ids that failed for any other reason).
        """
        unique_ids = dedupe(user_ids)
        if not unique_ids:
            return 0, []

        inserted = 0
        failed: List[str] = []
        try:
            position = await self._next_position(board_id)
        except SQLAlchemyError as e:
            self.log.warning(f"Failed to read participant positions for board {board_id}: {e}")
            return 0, unique_ids

        for user_id in unique_ids:
            try:
                existing = await self.db.execute(
                    select(Participant.id).where(
                        Participant.board_id == board_id,
                        Participant.user_id == user_id,
                    )
                )
                if existing.scalar_one_or_none():
                    continue

                self.db.add(Participant(board_id=board_id, user_id=user_id, position=position))
                await self.db.commit()
            except IntegrityError:
                # concurrent insert of the same (board, user)
                await self.db.rollback()
                continue
            except SQLAlchemyError as e:
                await self.db.rollback()
                self.log.warning(f"Failed to add participant {user_id} to board {board_id}: {e}")
                failed.append(user_id)
                continue
            inserted += 1
            position += 1

        if failed:
            self.log.warning(
                f"Added {inserted}/{len(unique_ids)} participants to board {board_id}; failed: {failed}"
            )
        return inserted, failed

    async def reconcile(self, board_id: str, new_user_ids: Optional[Iterable]) -> List[str]:
        """Replace the participant set in one transaction.

        On failure the previous set is kept and the error is logged.
        Returns the participant ids as stored afterwards.
        """
        unique_ids = dedupe(new_user_ids)
        try:
            await self.db.execute(
                delete(Participant)
                .where(Participant.board_id == board_id)
                .execution_options(synchronize_session=False)
            )
            for position, user_id in enumerate(unique_ids):
                self.db.add(Participant(board_id=board_id, user_id=user_id, position=position))
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            self.log.warning(f"Failed to replace participants of board {board_id}, keeping previous set: {e}")

        return await self.list_user_ids(board_id)
