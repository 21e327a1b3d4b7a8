from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class EvaluateRequest(BaseModel):
    session_id: str | None = None


class SectionScoreResponse(BaseModel):
    correct: int
    wrong: int
    marks: float
    total: float


class ResultResponse(BaseModel):
    id: str
    session_id: str
    exam_id: str
    student_id: str
    total_questions: int
    attempted: int
    correct: int
    wrong: int
    skipped: int
    total_marks: float
    marks_obtained: float
    percentage: float
    accuracy: float
    time_taken_seconds: int
    section_wise_scores: dict[str, SectionScoreResponse]
    is_published: bool
    passed: bool | None = None
    rank: int | None = None
    percentile: float | None = None
    evaluated_at: datetime

    @classmethod
    def from_row(cls, result: Any) -> "ResultResponse":
        return cls(
            id=str(result.id),
            session_id=str(result.session_id),
            exam_id=str(result.exam_id),
            student_id=str(result.student_id),
            total_questions=result.total_questions,
            attempted=result.attempted,
            correct=result.correct,
            wrong=result.wrong,
            skipped=result.skipped,
            total_marks=result.total_marks,
            marks_obtained=result.marks_obtained,
            percentage=result.percentage,
            accuracy=result.accuracy,
            time_taken_seconds=result.time_taken_seconds,
            section_wise_scores=result.section_wise_scores or {},
            is_published=result.is_published,
            passed=result.passed,
            rank=result.rank,
            percentile=result.percentile,
            evaluated_at=result.evaluated_at,
        )


class SummaryResponse(BaseModel):
    total_questions: int
    attempted: int
    correct: int
    wrong: int
    skipped: int
    marks_obtained: float
    total_marks: float
    percentage: float
    accuracy: float


class EvaluateResponse(BaseModel):
    success: bool = Field(default=True)
    result: ResultResponse
    summary: SummaryResponse


class StandingResponse(BaseModel):
    session_id: str
    rank: int
    percentile: float


class RankExamResponse(BaseModel):
    exam_id: str
    ranked: int
    standings: list[StandingResponse]


class SubmitSessionRequest(BaseModel):
    auto: bool = False


class SubmitSessionResponse(BaseModel):
    session_id: str
    status: str
    end_time: datetime | None = None
    evaluation_scheduled: bool


class AnswerKeyCreate(BaseModel):
    answers: dict[str, Any]


class AnswerKeyResponse(BaseModel):
    id: str
    exam_id: str
    version: int
    entries: int
    reevaluating_sessions: int
