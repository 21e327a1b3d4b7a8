from fastapi import APIRouter

from examiner.api.v1.endpoints.exams import router as exams_router
from examiner.api.v1.endpoints.results import router as results_router
from examiner.api.v1.endpoints.sessions import router as sessions_router


router = APIRouter()
router.include_router(exams_router)
router.include_router(results_router)
router.include_router(sessions_router)
