"""
Ride Bot - Main FastAPI Application
"""
import asyncio
import contextlib
from typing import Optional

from fastapi import FastAPI

from app.core.config import settings
from app.core.logging import setup_logging, get_logger
from app.core.middleware import setup_middleware, setup_exception_handlers
from app.api.routes import router as api_router
from app.db.database import create_tables, engine
from app.state_machine.session_store import get_session_store, run_session_sweeper

# Setup logging before anything else
setup_logging(
    level=settings.log_level,
    json_format=not settings.DEBUG,
    app_name=settings.APP_NAME
)

logger = get_logger(__name__)

_OPENAPI_TAGS = [
    {"name": "Webhooks", "description": "Telegram Bot API webhook: commands, wizard answers and buttons."},
    {"name": "Health", "description": "Liveness probe."},
]

app = FastAPI(
    title=settings.APP_NAME,
    version="1.0.0",
    description="Telegram bot for announcing group bike rides across chats and keeping every card in sync.",
    openapi_tags=_OPENAPI_TAGS,
)

# Setup middleware (correlation ID, request logging)
setup_middleware(app)
setup_exception_handlers(app)

app.include_router(api_router, prefix="/api")

_sweeper_task: Optional[asyncio.Task] = None


@app.on_event("startup")
async def startup() -> None:
    """Initialize database tables and start the wizard session sweeper"""
    global _sweeper_task

    logger.info("Starting application", extra_data={"app_name": settings.APP_NAME})
    await create_tables()
    logger.info("Database tables initialized")

    _sweeper_task = asyncio.create_task(run_session_sweeper(get_session_store()))


@app.on_event("shutdown")
async def shutdown() -> None:
    """Cleanup on shutdown"""
    global _sweeper_task

    logger.info("Shutting down application")
    if _sweeper_task is not None:
        _sweeper_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await _sweeper_task
        _sweeper_task = None

    # סגירת חיבורי מסד הנתונים
    await engine.dispose()
    logger.info("Database connections disposed")


@app.get(
    "/health",
    summary="Liveness probe",
    description="Light check that the process is alive; external dependencies are not checked.",
    tags=["Health"],
)
async def health_check() -> dict[str, str]:
    return {"status": "healthy"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level=settings.log_level.lower(),
    )
