import logging
import uuid
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from examiner.core.errors import DependencyFailure, Forbidden, InvalidRequest, NotFound
from examiner.models.db import Exam, Result
from examiner.models.evaluation import db_call
from examiner.models.identity import CallerIdentity, can_manage_exam
from examiner.utils.analytics import compute_standings, exam_statistics

logger = logging.getLogger(__name__)


def parse_exam_id(exam_id: Any) -> uuid.UUID:
    if isinstance(exam_id, uuid.UUID):
        return exam_id
    try:
        return uuid.UUID(str(exam_id))
    except ValueError as exc:
        raise InvalidRequest("Invalid exam_id") from exc


async def load_managed_exam(db: AsyncSession, exam_id: Any, caller: CallerIdentity) -> Exam:
    exam_uuid = parse_exam_id(exam_id)
    row = await db_call(db.execute(select(Exam).where(Exam.id == exam_uuid)), "load exam")
    exam = row.scalar_one_or_none()
    if not exam:
        raise NotFound("Exam not found")
    if not can_manage_exam(caller, exam.institute_id, exam.created_by):
        raise Forbidden("Not authorized for this exam")
    return exam


async def rank_exam(
    exam_id: Any, caller: CallerIdentity, db: AsyncSession
) -> dict[uuid.UUID, tuple[int, float]]:
    """Recompute rank and percentile for every result of an exam in one transaction."""
    exam = await load_managed_exam(db, exam_id, caller)
    rows = await db_call(
        db.execute(select(Result.session_id, Result.marks_obtained).where(Result.exam_id == exam.id)),
        "load results",
    )
    standings = compute_standings({session_id: marks for session_id, marks in rows.all()})
    try:
        for session_id, (rank, percentile) in standings.items():
            await db_call(
                db.execute(
                    update(Result)
                    .where(Result.session_id == session_id)
                    .values(rank=rank, percentile=percentile)
                ),
                "store standings",
            )
        await db_call(db.commit(), "store standings")
    except DependencyFailure:
        await db.rollback()
        raise
    logger.info("Exam ranked", extra={"exam_id": str(exam.id), "result_count": len(standings)})
    return standings


async def exam_stats(exam_id: Any, caller: CallerIdentity, db: AsyncSession) -> dict[str, Any]:
    exam = await load_managed_exam(db, exam_id, caller)
    rows = await db_call(
        db.execute(select(Result.marks_obtained, Result.total_marks).where(Result.exam_id == exam.id)),
        "load results",
    )
    pairs = rows.all()
    scores = [marks for marks, _ in pairs]
    total_marks = pairs[0][1] if pairs else None
    return {"exam_id": str(exam.id), **exam_statistics(scores, total_marks)}
