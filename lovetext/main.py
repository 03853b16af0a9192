"""
LoveTextForHer API

Customer accounts and recipients, Stripe billing, and the background loops
that deliver love notes on schedule and expire lapsed trials.
"""
import logging
import sys
from pathlib import Path
from typing import Optional

from alembic import command
from alembic.config import Config
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from lovetext.api.routes import admin, auth, billing, recipients, unsubscribe, webhooks
from lovetext.core.config import Settings
from lovetext.core.context import AppContext, build_context
from lovetext.db.base import Base
# Import all models to ensure they're registered with Base
from lovetext.models import Customer, MessageLog, Recipient  # noqa: F401
from lovetext.tasks import start_background_tasks, stop_background_tasks

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )


def run_migrations(database_url: str) -> None:
    """Run Alembic migrations on startup. Fails startup if migrations fail,
    so the DB is never left out of sync."""
    project_root = Path(__file__).resolve().parent.parent
    alembic_ini = project_root / "alembic.ini"
    if not alembic_ini.exists():
        logger.warning("alembic.ini not found, skipping Alembic migrations")
        return
    try:
        alembic_cfg = Config(str(alembic_ini))
        alembic_cfg.set_main_option("script_location", str(project_root / "alembic"))
        alembic_cfg.set_main_option("sqlalchemy.url", database_url)
        command.upgrade(alembic_cfg, "head")
        logger.info("Alembic migrations completed successfully")
    except Exception as e:
        logger.exception("Alembic migration failed: %s", e)
        raise


def create_app(settings: Optional[Settings] = None, context: Optional[AppContext] = None) -> FastAPI:
    if context is None:
        settings = settings or Settings.from_env()
        context = build_context(settings)
    settings = context.settings

    app = FastAPI(title=settings.app_name)
    app.state.context = context
    app.state.background_tasks = []

    @app.on_event("startup")
    async def startup_event():
        Base.metadata.create_all(bind=context.engine)
        logger.info("Database tables ready")
        if settings.run_migrations:
            run_migrations(settings.database_url)

        if settings.scheduler_enabled:
            app.state.background_tasks = start_background_tasks(context)
        else:
            logger.info("[Tasks] Scheduler disabled; background loops not started")

    @app.on_event("shutdown")
    async def shutdown_event():
        await stop_background_tasks(app.state.background_tasks)
        app.state.background_tasks = []
        context.engine.dispose()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Webhook first: it reads the raw body for signature verification
    app.include_router(webhooks.router, prefix="/webhooks", tags=["Webhooks"])
    app.include_router(auth.router, prefix="/api/customer", tags=["Auth"])
    app.include_router(recipients.router, prefix="/api/customer/recipients", tags=["Recipients"])
    app.include_router(billing.router, prefix="/api/billing", tags=["Billing"])
    app.include_router(unsubscribe.router, prefix="/unsubscribe", tags=["Unsubscribe"])
    app.include_router(admin.router, prefix="/api/admin", tags=["Admin"])

    @app.get("/health")
    def health():
        return {"status": "ok", "scheduler_running": bool(app.state.background_tasks)}

    return app


def _app_from_env() -> FastAPI:
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    return create_app(settings)


app = _app_from_env()
