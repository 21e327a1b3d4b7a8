import logging
import uuid
from datetime import datetime, timezone

from fastapi import APIRouter, BackgroundTasks, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from examiner.api.deps import get_current_user
from examiner.core.database import AsyncSessionLocal, get_db
from examiner.core.errors import Forbidden
from examiner.models.evaluation import (
    TERMINAL_STATUSES,
    db_call,
    evaluate_session,
    load_session_and_exam,
    parse_session_id,
)
from examiner.models.identity import CallerIdentity
from examiner.schemas.evaluation import SubmitSessionRequest, SubmitSessionResponse


router = APIRouter(prefix="/sessions", tags=["sessions"])
logger = logging.getLogger(__name__)


async def evaluate_sessions_background(session_ids: list[uuid.UUID], caller: CallerIdentity) -> None:
    for session_id in session_ids:
        try:
            async with AsyncSessionLocal() as db:
                await evaluate_session(session_id, caller, db)
            logger.info("Evaluation completed", extra={"session_id": str(session_id)})
        except Exception:
            logger.exception("Background evaluation failed for session %s", session_id)


@router.post("/{session_id}/submit", response_model=SubmitSessionResponse)
async def submit_session(
    session_id: str,
    background_tasks: BackgroundTasks,
    payload: SubmitSessionRequest | None = None,
    db: AsyncSession = Depends(get_db),
    current_user: CallerIdentity = Depends(get_current_user),
) -> SubmitSessionResponse:
    session_uuid = parse_session_id(session_id)
    session, _ = await load_session_and_exam(db, session_uuid)
    if session.student_id != current_user.user_id:
        raise Forbidden("Only the student who owns the session can submit it")

    if session.status in TERMINAL_STATUSES:
        return SubmitSessionResponse(
            session_id=str(session.id),
            status=session.status,
            end_time=session.end_time,
            evaluation_scheduled=False,
        )

    auto = payload.auto if payload else False
    session.status = "auto_submitted" if auto else "submitted"
    session.end_time = datetime.now(timezone.utc)
    await db_call(db.commit(), "submit session")
    logger.info(
        "Session submitted",
        extra={"session_id": str(session.id), "status": session.status},
    )
    background_tasks.add_task(evaluate_sessions_background, [session.id], current_user)
    return SubmitSessionResponse(
        session_id=str(session.id),
        status=session.status,
        end_time=session.end_time,
        evaluation_scheduled=True,
    )
