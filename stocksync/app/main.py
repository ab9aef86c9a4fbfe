from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI

from stocksync.app.api.v1.router import router as v1_router
from stocksync.app.core.config import get_settings
from stocksync.app.core.logging import configure_logging
from stocksync.app.db.session import SessionLocal
from stocksync.services.scheduler import build_scheduler

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    settings = get_settings()

    # un scheduler déjà posé (tests) n'est ni remplacé ni démarré ici
    owned = getattr(app.state, "scheduler", None) is None
    if owned:
        app.state.scheduler = build_scheduler(settings, SessionLocal)
        if app.state.scheduler is None:
            logger.warning("No source adapter configured, sync endpoints disabled")
        elif settings.scheduler_enabled:
            app.state.scheduler.start()

    yield

    if owned and app.state.scheduler is not None:
        app.state.scheduler.stop()


app = FastAPI(title="stocksync", version="0.1.0", lifespan=lifespan)
app.include_router(v1_router, prefix="/v1")
