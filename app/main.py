from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from collections.abc import AsyncIterator

from fastapi import FastAPI

from app.schemas.sync import HealthResponse


def _validate_env() -> None:
    """
    Validate all required environment variables at startup.

    Runs before any service or database connection is initialised.
    Raises RuntimeError listing every missing or invalid variable so the
    operator can fix all problems in one restart cycle.

    Rules:
    - No empty-string values are accepted.
    - A PostgreSQL URL must be resolvable through ``db.config``.
    - At least one upstream API token and website property id are required.
    """

    from db.config import load_env_files, resolve_database_url

    load_env_files()

    errors: list[str] = []

    # --- Database URL ---------------------------------------------------
    try:
        resolve_database_url()
    except RuntimeError as exc:
        errors.append(str(exc))

    # --- Upstream credentials -------------------------------------------
    tokens = [item for item in os.getenv("CATALOG_API_TOKENS", "").split(",") if item.strip()]
    if not tokens:
        errors.append("CATALOG_API_TOKENS is not set. Provide at least one upstream API token.")

    property_ids = [item for item in os.getenv("CATALOG_WEBSITE_PROPERTY_IDS", "").split(",") if item.strip()]
    if not property_ids:
        errors.append("CATALOG_WEBSITE_PROPERTY_IDS is not set. Provide at least one website property id.")
    elif not all(item.strip().isdigit() and int(item) > 0 for item in property_ids):
        errors.append("CATALOG_WEBSITE_PROPERTY_IDS must be a comma-separated list of positive integers.")

    if errors:
        raise RuntimeError(
            "Startup validation failed, missing or invalid environment variables:\n"
            + "\n".join(f"  - {e}" for e in errors)
        )


def _configure_logging() -> None:
    """
    Configure root logging once for the API process.
    """

    log_level = os.getenv("LOG_LEVEL", "INFO").strip().upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def _check_db() -> None:
    """Open a session and run SELECT 1. Raises RuntimeError if the DB is unreachable."""
    from sqlalchemy import text

    from db.session import SessionLocal

    try:
        db = SessionLocal()
        try:
            db.execute(text("SELECT 1"))
        finally:
            db.close()
    except Exception as exc:
        raise RuntimeError("Database unavailable.") from exc


def _check_schema() -> None:
    """
    Compare Base.metadata table names against the live DB schema.

    Every table registered on Base.metadata must exist in the database.
    Does NOT auto-migrate.
    """
    from sqlalchemy import inspect as sa_inspect

    import db.models  # noqa: F401  registers all ORM models on Base.metadata
    from db.base import Base
    from db.session import get_engine

    inspector = sa_inspect(get_engine())
    actual: set[str] = set(inspector.get_table_names())
    expected: set[str] = set(Base.metadata.tables.keys())
    missing = expected - actual

    if missing:
        logging.getLogger(__name__).critical(
            "Schema mismatch: %d table(s) defined in ORM metadata are absent from "
            "the database: %s. Run 'alembic upgrade head' and restart.",
            len(missing),
            ", ".join(sorted(missing)),
        )
        raise RuntimeError(
            f"Schema mismatch: {len(missing)} table(s) missing from the database "
            f"({', '.join(sorted(missing))}). Run migrations and restart."
        )


@asynccontextmanager
async def _lifespan(application: FastAPI) -> AsyncIterator[None]:
    """Validate DB connectivity and schema, start the scheduler on boot; shut it down on exit."""
    log = logging.getLogger(__name__)
    _check_db()
    log.info("Database connectivity confirmed")
    _check_schema()
    log.info("Database schema validated")

    from app.config import get_scheduler_settings
    from app.scheduler.jobs import build_scheduler

    settings = get_scheduler_settings()
    if not settings.enabled:
        log.info("Scheduler disabled via SCHEDULER_ENABLED")
        yield
        return

    scheduler = build_scheduler(settings)
    scheduler.start()
    log.info("Scheduler started with %d jobs", len(scheduler.get_jobs()))
    try:
        yield
    finally:
        scheduler.shutdown(wait=True)
        log.info("Scheduler shut down")


def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.
    """

    _validate_env()
    _configure_logging()

    application = FastAPI(
        title="Catalog Sync API",
        version="1.0.0",
        lifespan=_lifespan,
    )

    from app.api.routers import sync_router

    application.include_router(sync_router)

    @application.get("/health", response_model=HealthResponse)
    def healthcheck() -> HealthResponse:
        from app.services.sync_orchestrator import get_sync_orchestrator
        from db.repositories.errors import StoreError

        orchestrator = get_sync_orchestrator()
        try:
            return HealthResponse(
                status="ok",
                sync_running=orchestrator.is_running(),
                active_run_id=orchestrator.active_run_id(),
            )
        except StoreError:
            logging.getLogger(__name__).exception("Health check could not read sync state")
            return HealthResponse(status="degraded", sync_running=False)

    return application


app = create_app()
