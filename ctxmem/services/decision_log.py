"""Decision audit log for task-execution callers."""

import uuid
from datetime import datetime
from typing import Callable

from sqlalchemy import select

from ..context.models import DecisionRecord
from ..models.decision import DecisionEntry
from ..utils.errors import ValidationError
from ..utils.logger import get_logger
from .storage import StorageService

logger = get_logger(__name__)


class DecisionLog:
    """Append-only decision records with a single outcome backfill."""

    def __init__(self, storage: StorageService, clock: Callable[[], datetime] = datetime.now) -> None:
        self._storage = storage
        self.clock = clock

    async def record(
        self,
        session_id: str,
        decision: str,
        reasoning: str = "",
        context: str = "",
        task_id: str | None = None,
    ) -> DecisionRecord:
        """Append a decision."""
        if not decision or not decision.strip():
            raise ValidationError("decision must not be empty", field="decision", value=decision)

        entry = DecisionEntry(
            id=str(uuid.uuid4()),
            session_id=session_id,
            task_id=task_id,
            decision=decision,
            reasoning=reasoning,
            context=context,
            outcome=None,
            timestamp=self.clock(),
        )
        async with self._storage.transaction("record_decision") as db:
            db.add(entry)

        logger.info(
            "Decision recorded",
            extra={"decision_id": entry.id, "session_id": session_id, "task_id": task_id},
        )
        return self._to_record(entry)

    async def set_outcome(self, decision_id: str, outcome: str) -> DecisionRecord | None:
        """Backfill the outcome of a decision.

        Returns:
            The updated record, or None if the id is unknown

        Raises:
            ValidationError: If the outcome was already set
        """
        async with self._storage.transaction("set_decision_outcome") as db:
            entry = await db.get(DecisionEntry, decision_id)
            if entry is None:
                return None
            if entry.outcome is not None:
                raise ValidationError(
                    f"Outcome already recorded for decision {decision_id}",
                    field="outcome",
                    value=outcome,
                )
            entry.outcome = outcome
            record = self._to_record(entry)

        logger.info("Decision outcome recorded", extra={"decision_id": decision_id})
        return record

    async def get(self, decision_id: str) -> DecisionRecord | None:
        async with self._storage.session("get_decision") as db:
            entry = await db.get(DecisionEntry, decision_id)
            return self._to_record(entry) if entry else None

    async def list_decisions(
        self,
        session_id: str | None = None,
        task_id: str | None = None,
        limit: int = 50,
    ) -> list[DecisionRecord]:
        """List decisions, newest first."""
        query = select(DecisionEntry)
        if session_id:
            query = query.where(DecisionEntry.session_id == session_id)
        if task_id:
            query = query.where(DecisionEntry.task_id == task_id)
        query = query.order_by(DecisionEntry.timestamp.desc(), DecisionEntry.id).limit(limit)

        async with self._storage.session("list_decisions") as db:
            entries = (await db.execute(query)).scalars().all()
            return [self._to_record(entry) for entry in entries]

    @staticmethod
    def _to_record(entry: DecisionEntry) -> DecisionRecord:
        return DecisionRecord(
            id=entry.id,
            session_id=entry.session_id,
            task_id=entry.task_id,
            decision=entry.decision,
            reasoning=entry.reasoning or "",
            context=entry.context or "",
            outcome=entry.outcome,
            timestamp=entry.timestamp,
        )
