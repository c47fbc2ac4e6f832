"""FastAPI entrypoint for the assessment-taking engine."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from exam_engine.config import get_settings
from exam_engine.database import create_db_and_tables
from exam_engine.exceptions import ExamEngineError
from exam_engine.logging_config import configure_logging
from exam_engine.routers import assessments as assessments_router_module
from exam_engine.routers import attempts as attempts_router_module
from exam_engine.routers import grading as grading_router_module

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Configure logging and initialize the database schema."""
    configure_logging()
    if get_settings().create_tables_on_startup:
        create_db_and_tables()
    logger.info("Assessment engine started")
    yield


app = FastAPI(title="Assessment Engine", lifespan=lifespan)


@app.exception_handler(ExamEngineError)
async def exam_engine_exception_handler(request: Request, exc: ExamEngineError):
    """Turn domain errors into JSON with a stable error code."""
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    else:
        logger.warning("%s %s rejected (%s): %s", request.method, request.url.path, exc.code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# Routers
app.include_router(assessments_router_module.router, tags=["authoring"])
app.include_router(attempts_router_module.router, tags=["attempts"])
app.include_router(grading_router_module.router, tags=["grading"])


@app.get("/healthz")
def healthz():
    return {"status": "ok"}
