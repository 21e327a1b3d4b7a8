import logging

from fastapi import APIRouter, BackgroundTasks, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from examiner.api.deps import get_current_user
from examiner.api.v1.endpoints.sessions import evaluate_sessions_background
from examiner.core.database import get_db
from examiner.models.answer_keys import finished_session_ids, publish_answer_key
from examiner.models.identity import CallerIdentity
from examiner.schemas.evaluation import AnswerKeyCreate, AnswerKeyResponse


router = APIRouter(prefix="/exams", tags=["exams"])
logger = logging.getLogger(__name__)


@router.post("/{exam_id}/answer-keys", response_model=AnswerKeyResponse)
async def upload_answer_key(
    exam_id: str,
    payload: AnswerKeyCreate,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    current_user: CallerIdentity = Depends(get_current_user),
) -> AnswerKeyResponse:
    answer_key = await publish_answer_key(exam_id, payload.answers, current_user, db)
    session_ids = await finished_session_ids(db, answer_key.exam_id)
    if session_ids:
        background_tasks.add_task(evaluate_sessions_background, session_ids, current_user)
    logger.info(
        "Re-evaluation scheduled",
        extra={"exam_id": str(answer_key.exam_id), "session_count": len(session_ids)},
    )
    return AnswerKeyResponse(
        id=str(answer_key.id),
        exam_id=str(answer_key.exam_id),
        version=answer_key.version,
        entries=len(answer_key.answers),
        reevaluating_sessions=len(session_ids),
    )
