"""EMD — FastAPI Application Entry Point.

Dispatch job monitor: polls FileMaker jobs, detects changes,
evaluates alert rules and exposes the alert queue over HTTP.
"""

import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from emd.config import Settings, settings
from emd.analyzer.alert_store import AlertStore
from emd.analyzer.pipeline import Poller
from emd.analyzer.rule_engine import RuleEngine
from emd.analyzer.rules import default_rules
from emd.analyzer.snapshot_cache import SnapshotCache
from emd.connectors.filemaker.client import FileMakerClient
from emd.connectors.filemaker.endpoints import FileMakerJobSource
from emd.connectors.samsara.client import SamsaraVerificationSource
from emd.core.events import EventBus
from emd.database import engine, init_db, test_connection
from emd.persistence.gateway import PersistenceGateway
from emd.persistence.store import SQLModelStore
from emd.api.alert_routes import router as alert_router
from emd.api.job_routes import router as job_router
from emd.api.polling_routes import router as polling_router
from emd.core.logging import get_logger

logger = get_logger("main")

IS_SERVERLESS = bool(
    os.environ.get("VERCEL") or os.environ.get("AWS_LAMBDA_FUNCTION_NAME")
)


def build_poller(config: Settings = settings, db_ok: bool = True) -> Poller:
    """Wire the production poller from settings."""
    store = SQLModelStore(engine) if config.persistence_enabled and db_ok else None
    verifier = SamsaraVerificationSource() if config.samsara_configured else None
    return Poller(
        source=FileMakerJobSource(FileMakerClient()),
        cache=SnapshotCache(config.cache_max_size, config.cache_ttl_seconds),
        engine=RuleEngine(
            default_rules(
                config.long_in_progress_hours, config.gps_proximity_threshold_miles
            )
        ),
        alerts=AlertStore(config.dedup_window_seconds, config.alert_history_limit),
        verifier=verifier,
        persistence=PersistenceGateway(
            store,
            config.persistence_backoff_seconds,
            config.persistence_backoff_max_seconds,
        ),
        bus=EventBus(),
        interval_seconds=config.polling_interval_seconds,
        fetch_timeout_seconds=config.fetch_timeout_seconds,
        verification_timeout_seconds=config.verification_timeout_seconds,
        comparison_window_days=config.comparison_window_days,
        source_timezone=config.source_timezone,
        history_retention_days=config.job_history_retention_days,
    )


async def _close(component) -> None:
    close = getattr(component, "close", None)
    if close is None:
        return
    try:
        await close()
    except Exception as e:
        logger.warning(f"Error closing {type(component).__name__}: {e}")


def create_app(poller: Optional[Poller] = None) -> FastAPI:
    """Build the app; pass a poller to skip database and connector wiring."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown lifecycle."""
        logger.info("EMD starting up...")
        if poller is None:
            db_ok = test_connection()
            if db_ok:
                try:
                    init_db()
                except Exception as e:
                    logger.error(f"Table creation failed: {e}")
                    db_ok = False
            else:
                logger.error("Database NOT connected; persistence disabled")
            app.state.poller = build_poller(settings, db_ok)
        else:
            app.state.poller = poller

        active: Poller = app.state.poller
        if settings.scheduler_enabled and not IS_SERVERLESS and poller is None:
            if settings.filemaker_configured:
                await active.start()
            else:
                logger.warning("FileMaker not configured; polling not started")
        yield
        await active.stop()
        await active.persistence.drain()
        await _close(active.source)
        if active.verifier is not None:
            await _close(active.verifier)
        logger.info("EMD shut down")

    app = FastAPI(
        title="EMD",
        description="Dispatch job monitor — poll jobs, detect changes, raise prioritized alerts.",
        version="1.0.0",
        lifespan=lifespan,
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Routers
    app.include_router(alert_router)
    app.include_router(job_router)
    app.include_router(polling_router)

    @app.get("/health", tags=["System"])
    async def health_check():
        """Health check endpoint."""
        active: Optional[Poller] = getattr(app.state, "poller", None)
        return {
            "status": "healthy",
            "service": "emd",
            "version": "1.0.0",
            "poller": active.health().status if active else "not_configured",
        }

    return app


app = create_app()
