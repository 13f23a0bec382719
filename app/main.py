"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.api import ai_actions, alerts, automation_rules, leads, scoring, users
from app.config import get_settings
from app.exceptions import (
    ActionExecutionError,
    InvalidTransitionError,
    NotFoundError,
    RuleValidationError,
    SuggestionGeneratorError,
)

settings = get_settings()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: create tables when running on SQLite without migrations
    if settings.is_sqlite:
        from app.database import Base, engine

        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    logger.info(f"{settings.app_name} started ({settings.app_env})")
    yield


app = FastAPI(
    title=settings.app_name,
    version="0.1.0",
    description="Lead scoring, lifecycle automation, AI suggestions and SLA alerts for a sales pipeline",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register routers
app.include_router(leads.router, prefix="/api/v1")
app.include_router(users.router, prefix="/api/v1")
app.include_router(users.companies_router, prefix="/api/v1")
app.include_router(scoring.router, prefix="/api/v1")
app.include_router(automation_rules.router, prefix="/api/v1")
app.include_router(ai_actions.router, prefix="/api/v1")
app.include_router(alerts.router, prefix="/api/v1")


# ── Exception handlers ─────────────────────────────────
@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    logger.warning(f"Not found: {exc.detail}")
    return JSONResponse(status_code=404, content={"detail": exc.detail, "type": "not_found"})


@app.exception_handler(RuleValidationError)
async def rule_validation_handler(request: Request, exc: RuleValidationError):
    logger.warning(f"Rule rejected: {exc.detail}")
    return JSONResponse(status_code=422, content={"detail": exc.detail, "type": "rule_validation"})


@app.exception_handler(InvalidTransitionError)
async def invalid_transition_handler(request: Request, exc: InvalidTransitionError):
    logger.warning(f"Invalid transition: {exc.detail}")
    return JSONResponse(status_code=409, content={"detail": exc.detail, "type": "invalid_transition"})


@app.exception_handler(ActionExecutionError)
async def action_execution_handler(request: Request, exc: ActionExecutionError):
    logger.error(f"Action execution failed: {exc.detail}")
    return JSONResponse(status_code=502, content={"detail": exc.detail, "type": "action_execution_failed"})


@app.exception_handler(SuggestionGeneratorError)
async def suggestion_generator_handler(request: Request, exc: SuggestionGeneratorError):
    logger.error(f"Suggestion generator failed: {exc.detail}")
    return JSONResponse(status_code=502, content={"detail": exc.detail, "type": "suggestion_generator_failed"})


@app.get("/health")
async def health():
    return {"status": "ok", "app": settings.app_name}
