import logging
import uuid
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from examiner.core.errors import DependencyFailure, InvalidRequest
from examiner.models.db import AnswerKey, Question, Session as ExamSession
from examiner.models.evaluation import TERMINAL_STATUSES, db_call
from examiner.models.identity import CallerIdentity
from examiner.models.ranking import load_managed_exam

logger = logging.getLogger(__name__)


async def publish_answer_key(
    exam_id: Any,
    answers: dict[str, Any],
    caller: CallerIdentity,
    db: AsyncSession,
) -> AnswerKey:
    """Store answers as the next answer-key version. Older versions are kept."""
    exam = await load_managed_exam(db, exam_id, caller)

    entries: dict[str, Any] = {}
    for question_id, value in answers.items():
        try:
            entries[str(uuid.UUID(str(question_id)))] = value
        except ValueError as exc:
            raise InvalidRequest(f"Invalid question id in answer key: {question_id}") from exc

    rows = await db_call(
        db.execute(select(Question.id).where(Question.exam_id == exam.id)),
        "fetch questions",
    )
    known = {str(question_id) for question_id in rows.scalars().all()}
    unknown = sorted(set(entries) - known)
    if unknown:
        raise InvalidRequest(f"Answer key references unknown questions: {', '.join(unknown)}")

    latest = await db_call(
        db.execute(select(func.max(AnswerKey.version)).where(AnswerKey.exam_id == exam.id)),
        "load answer key",
    )
    answer_key = AnswerKey(
        exam_id=exam.id,
        answers=entries,
        version=(latest.scalar() or 0) + 1,
        uploaded_by=caller.user_id,
    )
    db.add(answer_key)
    try:
        await db_call(db.commit(), "store answer key")
    except DependencyFailure as exc:
        await db.rollback()
        # Another upload took the same version number first
        if isinstance(exc.__cause__, IntegrityError):
            raise DependencyFailure("Answer key version conflict, retry the upload") from exc.__cause__
        raise
    logger.info(
        "Answer key published",
        extra={"exam_id": str(exam.id), "version": answer_key.version, "entries": len(entries)},
    )
    return answer_key


async def finished_session_ids(db: AsyncSession, exam_id: uuid.UUID) -> list[uuid.UUID]:
    rows = await db_call(
        db.execute(
            select(ExamSession.id)
            .where(ExamSession.exam_id == exam_id)
            .where(ExamSession.status.in_(TERMINAL_STATUSES))
        ),
        "fetch sessions",
    )
    return list(rows.scalars().all())
