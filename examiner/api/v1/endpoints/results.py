import logging

from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from examiner.api.deps import get_current_user
from examiner.core.database import get_db
from examiner.core.errors import Forbidden, NotFound
from examiner.models.db import Result
from examiner.models.evaluation import db_call, evaluate_session, load_session_and_exam, parse_session_id
from examiner.models.identity import CallerIdentity, can_evaluate, can_manage_exam
from examiner.models.ranking import exam_stats, rank_exam
from examiner.schemas.evaluation import (
    EvaluateRequest,
    EvaluateResponse,
    RankExamResponse,
    ResultResponse,
    StandingResponse,
    SummaryResponse,
)


router = APIRouter(prefix="/results", tags=["results"])
logger = logging.getLogger(__name__)


@router.post("/evaluate", response_model=EvaluateResponse)
async def evaluate_exam_session(
    payload: EvaluateRequest,
    db: AsyncSession = Depends(get_db),
    current_user: CallerIdentity = Depends(get_current_user),
) -> EvaluateResponse:
    evaluation = await evaluate_session(payload.session_id, current_user, db)
    return EvaluateResponse(
        result=ResultResponse.from_row(evaluation.result),
        summary=SummaryResponse(**evaluation.summary()),
    )


@router.get("/{session_id}", response_model=ResultResponse)
async def get_session_result(
    session_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: CallerIdentity = Depends(get_current_user),
) -> ResultResponse:
    session_uuid = parse_session_id(session_id)
    session, exam = await load_session_and_exam(db, session_uuid)
    if not can_evaluate(current_user, session.student_id, exam.institute_id, exam.created_by):
        raise Forbidden("Forbidden")

    row = await db_call(db.execute(select(Result).where(Result.session_id == session_uuid)), "load result")
    result = row.scalar_one_or_none()
    if not result:
        raise NotFound("Result not found")
    is_staff = can_manage_exam(current_user, exam.institute_id, exam.created_by)
    if not is_staff and not result.is_published:
        raise Forbidden("Result not published yet")
    return ResultResponse.from_row(result)


@router.post("/exam/{exam_id}/rank", response_model=RankExamResponse)
async def rank_exam_results(
    exam_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: CallerIdentity = Depends(get_current_user),
) -> RankExamResponse:
    standings = await rank_exam(exam_id, current_user, db)
    ordered = sorted(standings.items(), key=lambda item: (item[1][0], str(item[0])))
    return RankExamResponse(
        exam_id=exam_id,
        ranked=len(standings),
        standings=[
            StandingResponse(session_id=str(session_id), rank=rank, percentile=percentile)
            for session_id, (rank, percentile) in ordered
        ],
    )


@router.get("/exam/{exam_id}/stats")
async def get_exam_stats(
    exam_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: CallerIdentity = Depends(get_current_user),
) -> dict:
    stats = await exam_stats(exam_id, current_user, db)
    logger.info("Exam stats fetched", extra={"exam_id": exam_id, "students": stats["total_students"]})
    return stats
