import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from examiner.models.db import AnswerKey, Base, Exam, ExamSection, Question, Response, Session, UserRole
from examiner.models.identity import CallerIdentity, RoleGrant


@asynccontextmanager
async def open_database(path: str):
    engine = create_async_engine(f"sqlite+aiosqlite:///{path}", poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
    finally:
        await engine.dispose()


def student(user_id: uuid.UUID) -> CallerIdentity:
    return CallerIdentity(user_id=user_id, grants=(RoleGrant("student"),))


def staff(role: str, institute_id: uuid.UUID | None = None) -> CallerIdentity:
    return CallerIdentity(user_id=uuid.uuid4(), grants=(RoleGrant(role, institute_id),))


async def seed_exam(
    db: AsyncSession,
    questions: list[dict[str, Any]],
    answers: dict[int, Any] | None = None,
    *,
    negative_marking: bool = True,
    show_result_immediately: bool = False,
    passing_marks: float | None = None,
    status: str = "submitted",
    duration: timedelta | None = timedelta(minutes=42, seconds=7),
    sections: list[str] | None = None,
    student_id: uuid.UUID | None = None,
    institute_id: uuid.UUID | None = None,
    created_by: uuid.UUID | None = None,
) -> dict[str, Any]:
    """
    Create an exam, its questions, one session and its responses.

    ``answers`` maps the question's index in ``questions`` to the selected answer.
    A question dict may carry ``section`` as an index into ``sections``.
    """
    exam = Exam(
        title="Physics mock",
        institute_id=institute_id or uuid.uuid4(),
        created_by=created_by or uuid.uuid4(),
        negative_marking=negative_marking,
        show_result_immediately=show_result_immediately,
        passing_marks=passing_marks,
        status="published",
    )
    db.add(exam)
    await db.flush()

    section_rows = [ExamSection(exam_id=exam.id, name=name, order_index=i) for i, name in enumerate(sections or [])]
    db.add_all(section_rows)
    await db.flush()

    question_rows = []
    for index, spec in enumerate(questions):
        section = spec.get("section")
        question_rows.append(
            Question(
                exam_id=exam.id,
                section_id=section_rows[section].id if section is not None else None,
                question_text=f"Question {index + 1}",
                question_type=spec.get("type", "single_correct"),
                options=spec.get("options"),
                correct_answer=spec.get("correct"),
                marks=spec.get("marks"),
                negative_marks=spec.get("negative"),
                order_index=index,
            )
        )
    db.add_all(question_rows)
    await db.flush()

    start = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)
    session = Session(
        exam_id=exam.id,
        student_id=student_id or uuid.uuid4(),
        status=status,
        start_time=start,
        end_time=start + duration if duration is not None else None,
    )
    db.add(session)
    await db.flush()

    for index, selected in (answers or {}).items():
        db.add(Response(session_id=session.id, question_id=question_rows[index].id, selected_answer=selected))
    await db.commit()
    return {
        "exam": exam,
        "session": session,
        "questions": question_rows,
        "sections": section_rows,
    }


async def add_session(
    db: AsyncSession,
    exam: Exam,
    questions: list[Question],
    answers: dict[int, Any],
    status: str = "submitted",
) -> Session:
    start = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)
    session = Session(
        exam_id=exam.id,
        student_id=uuid.uuid4(),
        status=status,
        start_time=start,
        end_time=start + timedelta(minutes=30) if status != "in_progress" else None,
    )
    db.add(session)
    await db.flush()
    for index, selected in answers.items():
        db.add(Response(session_id=session.id, question_id=questions[index].id, selected_answer=selected))
    await db.commit()
    return session


async def add_answer_key(db: AsyncSession, exam: Exam, answers: dict[Any, Any], version: int) -> AnswerKey:
    answer_key = AnswerKey(
        exam_id=exam.id,
        answers={str(question_id): value for question_id, value in answers.items()},
        version=version,
    )
    db.add(answer_key)
    await db.commit()
    return answer_key


async def grant_role(db: AsyncSession, user_id: uuid.UUID, role: str, institute_id: uuid.UUID | None = None) -> None:
    db.add(UserRole(user_id=user_id, role=role, institute_id=institute_id))
    await db.commit()


TWO_SINGLE_CORRECT = [
    {"type": "single_correct", "correct": "opt1", "marks": 2, "negative": 0.5},
    {"type": "single_correct", "correct": "opt3", "marks": 2, "negative": 0.5},
]
