import logging
import traceback

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from mangum import Mangum

from examiner.api.v1 import router as api_v1_router
from examiner.core.config import settings
from examiner.core.database import init_db
from examiner.core.errors import EvaluationError

logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

app = FastAPI(title="examiner")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(EvaluationError)
async def evaluation_exception_handler(request: Request, exc: EvaluationError):
    logger.info(
        "Evaluation error on %s %s: %s (%s)",
        request.method,
        request.url.path,
        exc.message,
        exc.kind,
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error("Unhandled error on %s %s: %s", request.method, request.url.path, exc)
    logger.debug(traceback.format_exc())
    return JSONResponse(
        status_code=500,
        content={"detail": str(exc)},
    )


@app.on_event("startup")
async def on_startup() -> None:
    await init_db()


@app.get("/")
async def health_check() -> dict:
    return {"status": "ok", "version": "1.0"}


app.include_router(api_v1_router, prefix="/api/v1")

handler = Mangum(app)
