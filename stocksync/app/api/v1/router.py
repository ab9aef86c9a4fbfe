from fastapi import APIRouter

from stocksync.app.api.v1.endpoints.health import router as health_router
from stocksync.app.api.v1.endpoints.products import router as products_router
from stocksync.app.api.v1.endpoints.scheduler import router as scheduler_router
from stocksync.app.api.v1.endpoints.stock import router as stock_router
from stocksync.app.api.v1.endpoints.stock_movements import router as stock_movements_router
from stocksync.app.api.v1.endpoints.sync import router as sync_router

router = APIRouter()
router.include_router(health_router, tags=["health"])
router.include_router(products_router, tags=["products"])
router.include_router(stock_router, tags=["stock"])
router.include_router(stock_movements_router, tags=["stock_movements"])
router.include_router(sync_router, tags=["sync"])
router.include_router(scheduler_router, tags=["scheduler"])
