from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from stocksync.app.api.deps import get_db
from stocksync.app.schemas.stock import MovementTotalsRead, StockMovementRead, StockSummaryRead
from stocksync.services import inventory
from stocksync.services.errors import IdentityNotFoundError

router = APIRouter(prefix="/stock")


@router.get(
    "",
    response_model=list[StockSummaryRead],
)
def get_stock(
    low_stock_only: bool = False,
    limit: int = 100,
    offset: int = 0,
    db: Session = Depends(get_db),
):
    """
    Stock courant par SKU (READ ONLY)
    - dérivé du ledger, jamais écrit directement
    - low_stock_only : available_qty <= low_stock_threshold
    """
    if limit < 1 or limit > 1000:
        raise HTTPException(status_code=400, detail="limit must be between 1 and 1000")
    return inventory.list_summaries(db, low_stock_only=low_stock_only, limit=limit, offset=max(offset, 0))


@router.post("/recalculate")
def recalculate_all(db: Session = Depends(get_db)):
    count = inventory.recalculate_all(db)
    db.commit()
    return {"recalculated": count}


@router.get("/{sku}", response_model=StockSummaryRead)
def get_stock_for_sku(sku: str, db: Session = Depends(get_db)):
    summary = inventory.get_summary(db, sku)
    if not summary:
        raise HTTPException(status_code=404, detail="No stock summary for this SKU")
    return summary


@router.get("/{sku}/movements", response_model=list[StockMovementRead])
def get_movements(
    sku: str,
    start: datetime | None = None,
    end: datetime | None = None,
    limit: int = 100,
    db: Session = Depends(get_db),
):
    if start and end and start > end:
        raise HTTPException(status_code=400, detail="start must be before end")
    if limit < 1 or limit > 1000:
        raise HTTPException(status_code=400, detail="limit must be between 1 and 1000")
    return inventory.list_movements(db, sku, start=start, end=end, limit=limit)


@router.get("/{sku}/totals", response_model=MovementTotalsRead)
def get_totals(sku: str, db: Session = Depends(get_db)):
    return inventory.movement_totals(db, sku)


@router.post("/{sku}/recalculate", response_model=StockSummaryRead)
def recalculate_sku(sku: str, db: Session = Depends(get_db)):
    try:
        summary = inventory.recalculate(db, sku)
    except IdentityNotFoundError as exc:
        db.rollback()
        raise HTTPException(status_code=404, detail=str(exc))
    db.commit()
    db.refresh(summary)
    return summary
