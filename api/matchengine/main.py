import logging
import time
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from . import config
from .database import make_engine, make_session_factory
from .domain import GroupSizing
from .errors import MatchingError
from .logging_config import setup_logging
from .memory_repo import InMemoryMatchingRepository
from .repo import SqlMatchingRepository
from .routes import include_modular_routers
from .services.coordinator import MatchingCoordinator
from .services.eligibility import EligibilityResolver
from .services.overrides import ManualOverrideService
from .services.provisioning import ProvisioningDispatcher, build_chat_provisioner
from .sources import InMemoryParticipantSource, SqlParticipantSource

logger = logging.getLogger(__name__)

app = FastAPI(title="Group Matching Engine")
include_modular_routers(app)


@app.exception_handler(MatchingError)
async def matching_error_handler(request: Request, exc: MatchingError) -> JSONResponse:
    logger.warning("[MATCHING] %s %s -> %s: %s %s", request.method, request.url.path, exc.code, exc.message, exc.details)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def run_migrations(session_factory, migrations_dir: Path | None = None) -> None:
    migrations_dir = migrations_dir or config.MIGRATIONS_DIR
    if not migrations_dir.exists() or not migrations_dir.is_dir():
        raise FileNotFoundError(f"Migrations directory not found: {migrations_dir}")

    files = sorted([f.name for f in migrations_dir.iterdir() if f.is_file() and f.suffix == ".sql"])
    with session_factory() as db:
        for fname in files:
            sql = (migrations_dir / fname).read_text(encoding="utf-8")
            db.execute(text(sql))
        db.commit()
    logger.info("[STARTUP] applied %s migration file(s) from %s", len(files), migrations_dir)


def wait_for_db(session_factory, max_attempts: int = 20, delay_seconds: float = 1.5) -> None:
    last_err: Exception | None = None
    for _ in range(max_attempts):
        try:
            with session_factory() as db:
                db.execute(text("SELECT 1"))
                db.commit()
            return
        except OperationalError as exc:
            last_err = exc
            logger.warning("[STARTUP] database not ready, retrying in %ss", delay_seconds)
            time.sleep(delay_seconds)
    if last_err:
        raise last_err


def configure_services(app: FastAPI, *, repository, source, dispatcher=None) -> None:
    """Wire the matching services onto ``app.state``."""
    sizing = GroupSizing(config.MIN_GROUP_SIZE, config.TARGET_GROUP_SIZE, config.MAX_GROUP_SIZE)
    resolver = EligibilityResolver(source)
    app.state.repository = repository
    app.state.source = source
    app.state.dispatcher = dispatcher
    app.state.coordinator = MatchingCoordinator(
        repository,
        resolver,
        sizing=sizing,
        scoring_config=config.DEFAULT_MATCHING_CONFIG,
        dispatcher=dispatcher,
        timeout_seconds=config.MATCHING_TIMEOUT_SECONDS,
        auto_lead_hours=config.AUTO_MATCHING_LEAD_HOURS,
        auto_window_hours=config.AUTO_MATCHING_WINDOW_HOURS,
    )
    app.state.overrides = ManualOverrideService(
        repository,
        resolver,
        sizing=sizing,
        dispatcher=dispatcher,
        timeout_seconds=config.MATCHING_TIMEOUT_SECONDS,
    )


@app.on_event("startup")
def on_startup() -> None:
    setup_logging(config.LOG_LEVEL)
    dispatcher = ProvisioningDispatcher(
        build_chat_provisioner(config.CHAT_PROVISIONER_URL, config.CHAT_PROVISIONER_TIMEOUT_SECONDS),
        max_attempts=config.PROVISIONING_MAX_ATTEMPTS,
        backoff_seconds=config.PROVISIONING_BACKOFF_SECONDS,
        workers=config.PROVISIONING_WORKERS,
        history_limit=config.PROVISIONING_HISTORY_LIMIT,
    )
    if config.MATCHING_BACKEND == "memory":
        configure_services(
            app,
            repository=InMemoryMatchingRepository(),
            source=InMemoryParticipantSource(),
            dispatcher=dispatcher,
        )
        logger.info("[STARTUP] matching engine running on the in-memory backend")
        return

    engine = make_engine(config.DATABASE_URL)
    session_factory = make_session_factory(engine)
    wait_for_db(session_factory)
    run_migrations(session_factory)
    app.state.engine = engine
    configure_services(
        app,
        repository=SqlMatchingRepository(
            session_factory,
            statement_timeout_ms=int(config.MATCHING_TIMEOUT_SECONDS * 1000),
        ),
        source=SqlParticipantSource(session_factory),
        dispatcher=dispatcher,
    )
    logger.info("[STARTUP] matching engine running on PostgreSQL")


@app.on_event("shutdown")
def on_shutdown() -> None:
    dispatcher = getattr(app.state, "dispatcher", None)
    if dispatcher is not None:
        dispatcher.shutdown(wait=True)
    engine = getattr(app.state, "engine", None)
    if engine is not None:
        engine.dispose()
