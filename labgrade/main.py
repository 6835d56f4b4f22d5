"""
Main FastAPI application entry point.
"""
from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app
import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from labgrade.core.config import settings
from labgrade.core.errors import LabGradeError
from labgrade.jobs.queue import GradeQueue
from labgrade.api.attempts import router as attempts_router
from labgrade.api.grades import router as grades_router

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

if settings.SENTRY_DSN:
    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.ENVIRONMENT,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
        ],
        traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
    )

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    """
    logger.info("Starting %s...", settings.APP_NAME)
    app.state.grade_queue = GradeQueue.from_settings()
    logger.info("Grade passback queue ready: %s", settings.RQ_QUEUE)

    yield

    logger.info("Shutting down %s...", settings.APP_NAME)
    app.state.grade_queue.close()

app = FastAPI(
    title=settings.APP_NAME,
    description=settings.APP_DESCRIPTION,
    version=settings.APP_VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.exception_handler(LabGradeError)
async def labgrade_error_handler(request: Request, exc: LabGradeError):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.error, "message": exc.message})

app.include_router(attempts_router, tags=["attempts"])
app.include_router(grades_router, tags=["grades"])
app.mount("/metrics", make_asgi_app())

@app.get("/health")
def health(): return {"status": "ok"}
