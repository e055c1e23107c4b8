import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from duel_engine import __version__
from duel_engine.config import settings
from duel_engine.database import AsyncSessionLocal, init_db, close_db
from duel_engine.exceptions import DuelEngineError
from duel_engine.routes import status as status_routes
from duel_engine.services.challenge_scheduler import ChallengeScheduler
from duel_engine.services.codeforces_client import CodeforcesClient
from duel_engine.services.collaborators import LoggingMessageSink
from duel_engine.services.handle_store import SqlHandleStore
from duel_engine.services.tournament_engine import TournamentEngine
from duel_engine.tasks.tick_runner import build_guards, start_tick_loops, stop_tick_loops

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler()]
)
logger = logging.getLogger(__name__)


def wire_services(app: FastAPI, scheduler: ChallengeScheduler, engine: TournamentEngine) -> None:
    """Attach scheduler and engine to the app and link challenge completion and cancellation across them."""
    scheduler.set_completion_listener(engine.on_challenge_completed)
    engine.set_cancellation_listener(scheduler.render_cancelled)
    app.state.scheduler = scheduler
    app.state.engine = engine
    app.state.guards = build_guards(scheduler, engine)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting application...")
    client = None
    tasks = []
    try:
        await init_db()
        logger.info("Database connected successfully")
    except Exception as e:
        logger.error(f"Failed to connect to database: {str(e)}")
        raise

    if getattr(app.state, "scheduler", None) is None:
        client = CodeforcesClient()
        handle_store = SqlHandleStore()
        sink = LoggingMessageSink()
        scheduler = ChallengeScheduler(AsyncSessionLocal, client, handle_store, sink)
        engine = TournamentEngine(AsyncSessionLocal, client, handle_store, client, sink)
        wire_services(app, scheduler, engine)

    if settings.ENABLE_TICK_LOOPS:
        tasks = start_tick_loops(app.state.guards)
        logger.info(f"✓ Tick loops started: {[guard.name for guard in app.state.guards]}")

    yield

    logger.info("Shutting down application...")
    await stop_tick_loops(tasks)
    try:
        if client is not None:
            await client.aclose()
        await close_db()
    except Exception as e:
        logger.error(f"Error closing database connection: {str(e)}")


def create_app(
    scheduler: Optional[ChallengeScheduler] = None,
    engine: Optional[TournamentEngine] = None,
) -> FastAPI:
    app = FastAPI(
        title="Duel Engine",
        description="Timed coding challenges and tournaments",
        version=__version__,
        docs_url="/docs" if settings.ENVIRONMENT == "development" else None,
        redoc_url=None,
        lifespan=lifespan
    )
    if scheduler is not None and engine is not None:
        wire_services(app, scheduler, engine)

    app.include_router(status_routes.router)

    @app.exception_handler(DuelEngineError)
    async def engine_error_handler(request: Request, exc: DuelEngineError):
        logger.warning(f"Engine error on {request.url.path}: {exc.code} - {exc.message}")
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "success": False,
                "error": type(exc).__name__,
                "message": exc.message,
                "code": exc.code
            }
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        logger.warning(f"Validation error on {request.url.path}: {exc.errors()}")
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={
                "success": False,
                "error": "Validation Error",
                "message": "Request validation failed",
                "code": "VALIDATION_ERROR",
                "details": [
                    {"loc": error.get("loc"), "msg": error.get("msg"), "type": error.get("type")}
                    for error in exc.errors()
                ]
            }
        )

    @app.get("/health", tags=["Health"])
    async def health_check(request: Request):
        scheduler = getattr(request.app.state, "scheduler", None)
        engine = getattr(request.app.state, "engine", None)
        guards = getattr(request.app.state, "guards", [])
        return {
            "status": "healthy",
            "environment": settings.ENVIRONMENT,
            "version": __version__,
            "challenge_tick": {
                "last_tick_at": scheduler.last_tick_at if scheduler else None,
                "last_error": scheduler.last_error if scheduler else None,
                "active_challenges": await scheduler.get_active_count() if scheduler else 0,
            },
            "arena_tick": {
                "last_tick_at": engine.last_arena_tick_at if engine else None,
                "last_error": engine.last_error if engine else None,
            },
            "loops": {
                guard.name: {"runs": guard.runs, "skipped": guard.skipped, "last_error": guard.last_error}
                for guard in guards
            },
        }

    return app


app = create_app()


if __name__ == "__main__":
    import os
    import uvicorn

    uvicorn.run(
        "duel_engine.main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        reload=settings.ENVIRONMENT == "development",
        log_level="info"
    )
