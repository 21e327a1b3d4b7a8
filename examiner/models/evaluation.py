import asyncio
import logging
import math
import uuid
from collections.abc import Awaitable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, TypeVar

from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from examiner.core.config import settings
from examiner.core.errors import DependencyFailure, Forbidden, InvalidRequest, NotFound
from examiner.models.answers import Answer, parse_answer, parse_answer_key
from examiner.models.db import AnswerKey, Exam, Question, Response, Result, Session as ExamSession
from examiner.models.grading import QuestionSpec, ScoreCard, aggregate
from examiner.models.identity import CallerIdentity, can_evaluate

logger = logging.getLogger(__name__)

T = TypeVar("T")

TERMINAL_STATUSES = frozenset({"submitted", "auto_submitted", "terminated"})

_UPSERT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


@dataclass
class Evaluation:
    result: Result
    scorecard: ScoreCard

    def summary(self) -> dict:
        return self.scorecard.summary()


def parse_session_id(session_id: Any) -> uuid.UUID:
    if isinstance(session_id, uuid.UUID):
        return session_id
    if not session_id or not isinstance(session_id, str):
        raise InvalidRequest("Session ID is required")
    try:
        return uuid.UUID(session_id)
    except ValueError as exc:
        raise InvalidRequest("Invalid session_id") from exc


async def db_call(awaitable: Awaitable[T], action: str) -> T:
    try:
        return await asyncio.wait_for(awaitable, timeout=settings.EVALUATION_TIMEOUT_SECONDS)
    except (SQLAlchemyError, OSError, asyncio.TimeoutError) as exc:
        logger.error("Database call failed while trying to %s: %r", action, exc)
        raise DependencyFailure(f"Failed to {action}") from exc


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def time_taken_seconds(start_time: datetime | None, end_time: datetime | None) -> int:
    if start_time is None or end_time is None:
        return 0
    return math.floor((_as_utc(end_time) - _as_utc(start_time)).total_seconds())


def passed_exam(marks_obtained: float, passing_marks: float | None) -> bool | None:
    if passing_marks is None:
        return None
    return marks_obtained >= passing_marks


async def load_session_and_exam(
    db: AsyncSession, session_id: uuid.UUID
) -> tuple[ExamSession, Exam]:
    row = await db_call(
        db.execute(
            select(ExamSession, Exam)
            .join(Exam, Exam.id == ExamSession.exam_id)
            .where(ExamSession.id == session_id)
        ),
        "load session",
    )
    found = row.first()
    if not found:
        raise NotFound("Session not found")
    return found[0], found[1]


async def load_latest_answer_key(db: AsyncSession, exam_id: uuid.UUID) -> dict[str, Answer]:
    row = await db_call(
        db.execute(
            select(AnswerKey.answers)
            .where(AnswerKey.exam_id == exam_id)
            .order_by(AnswerKey.version.desc())
            .limit(1)
        ),
        "load answer key",
    )
    return parse_answer_key(row.scalar_one_or_none())


async def _load_questions(db: AsyncSession, exam_id: uuid.UUID) -> list[QuestionSpec]:
    rows = await db_call(
        db.execute(
            select(
                Question.id,
                Question.question_type,
                Question.correct_answer,
                Question.marks,
                Question.negative_marks,
                Question.section_id,
            ).where(Question.exam_id == exam_id)
        ),
        "fetch questions",
    )
    return [
        QuestionSpec.from_record(
            id=question_id,
            question_type=question_type,
            correct_answer=correct_answer,
            marks=marks,
            negative_marks=negative_marks,
            section_id=section_id,
        )
        for question_id, question_type, correct_answer, marks, negative_marks, section_id in rows.all()
    ]


async def _load_responses(db: AsyncSession, session_id: uuid.UUID) -> dict[str, Answer]:
    rows = await db_call(
        db.execute(
            select(Response.question_id, Response.selected_answer)
            .where(Response.session_id == session_id)
            .order_by(Response.answered_at.asc().nulls_first())
        ),
        "fetch responses",
    )
    # Last write wins if the same question was answered twice
    return {str(question_id): parse_answer(selected) for question_id, selected in rows.all()}


def _upsert_statement(dialect_name: str, values: dict[str, Any]):
    insert = _UPSERT_INSERTS.get(dialect_name)
    if insert is None:
        raise DependencyFailure(f"Atomic result upsert is not supported on {dialect_name}")
    stmt = insert(Result).values(**values)
    # rank/percentile are left alone; they are owned by rank_exam
    updates = {key: stmt.excluded[key] for key in values if key not in ("id", "session_id")}
    return stmt.on_conflict_do_update(index_elements=[Result.session_id], set_=updates)


async def upsert_result(db: AsyncSession, values: dict[str, Any]) -> Result:
    stmt = _upsert_statement(db.get_bind().dialect.name, {"id": uuid.uuid4(), **values})
    try:
        await db_call(db.execute(stmt), "store result")
        await db_call(db.commit(), "store result")
    except DependencyFailure:
        await db.rollback()
        raise
    row = await db_call(
        db.execute(
            select(Result)
            .where(Result.session_id == values["session_id"])
            .execution_options(populate_existing=True)
        ),
        "reload result",
    )
    return row.scalar_one()


async def evaluate_session(
    session_id: Any,
    caller: CallerIdentity,
    db: AsyncSession,
) -> Evaluation:
    session_uuid = parse_session_id(session_id)
    session, exam = await load_session_and_exam(db, session_uuid)

    if not can_evaluate(caller, session.student_id, exam.institute_id, exam.created_by):
        logger.warning(
            "Evaluation refused",
            extra={"user_id": str(caller.user_id), "session_id": str(session_uuid)},
        )
        raise Forbidden("Not authorized to evaluate this exam session")

    if session.status not in TERMINAL_STATUSES:
        logger.info(
            "Evaluating a session that is still open",
            extra={"session_id": str(session_uuid), "status": session.status},
        )

    questions = await _load_questions(db, exam.id)
    answer_key = await load_latest_answer_key(db, exam.id)
    responses = await _load_responses(db, session_uuid)

    scorecard = aggregate(questions, responses, answer_key, bool(exam.negative_marking))

    values = {
        "session_id": session_uuid,
        "exam_id": exam.id,
        "student_id": session.student_id,
        "total_questions": scorecard.total_questions,
        "attempted": scorecard.attempted,
        "correct": scorecard.correct,
        "wrong": scorecard.wrong,
        "skipped": scorecard.skipped,
        "total_marks": scorecard.total_marks,
        "marks_obtained": scorecard.marks_obtained,
        "percentage": scorecard.percentage,
        "accuracy": scorecard.accuracy,
        "time_taken_seconds": time_taken_seconds(session.start_time, session.end_time),
        "section_wise_scores": scorecard.sections_document(),
        "is_published": bool(exam.show_result_immediately),
        "passed": passed_exam(scorecard.marks_obtained, exam.passing_marks),
        "evaluated_at": datetime.now(timezone.utc),
    }
    result = await upsert_result(db, values)
    logger.info(
        "Session evaluated",
        extra={
            "session_id": str(session_uuid),
            "exam_id": str(exam.id),
            "question_count": scorecard.total_questions,
            "answer_key_entries": len(answer_key),
            "marks_obtained": scorecard.marks_obtained,
        },
    )
    return Evaluation(result=result, scorecard=scorecard)
