from __future__ import annotations

from typing import Generator

from fastapi import Header, HTTPException, Request

from stocksync.app.db.session import SessionLocal
from stocksync.services.scheduler import SyncScheduler


def get_db() -> Generator:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_scheduler(request: Request) -> SyncScheduler:
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        raise HTTPException(status_code=503, detail="Sync scheduler is not configured")
    return scheduler


def get_actor(x_actor: str | None = Header(default=None, alias="X-Actor")) -> str:
    # pas d'auth ici : l'appelant s'identifie, "system" par défaut
    return (x_actor or "").strip() or "system"
