from __future__ import annotations

from fastapi import APIRouter, Depends

from stocksync.app.api.deps import get_scheduler
from stocksync.services.scheduler import SyncScheduler

router = APIRouter(prefix="/scheduler")


@router.get("/status")
def scheduler_status(scheduler: SyncScheduler = Depends(get_scheduler)):
    """running | idle par source + dernier run."""
    return scheduler.status()


@router.post("/start")
def start_scheduler(scheduler: SyncScheduler = Depends(get_scheduler)):
    scheduler.start()
    return {"scheduler_running": scheduler.is_running}


@router.post("/stop")
def stop_scheduler(scheduler: SyncScheduler = Depends(get_scheduler)):
    scheduler.stop()
    return {"scheduler_running": scheduler.is_running}
