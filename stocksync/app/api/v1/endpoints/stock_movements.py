from __future__ import annotations

from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.orm import Session

from stocksync.app.api.deps import get_actor, get_db
from stocksync.services.errors import IdentityNotFoundError, InvalidMovementError
from stocksync.services.inventory import create_adjustment

router = APIRouter(prefix="/stock-movements")


# ---------- Schemas ----------
class AdjustmentCreate(BaseModel):
    sku: str = Field(min_length=1, max_length=64)
    quantity: int  # signé : +N entrée d'inventaire, -N perte / casse
    reason: str = Field(min_length=1, max_length=255)

    @field_validator("quantity")
    @classmethod
    def quantity_nonzero(cls, v: int) -> int:
        if v == 0:
            raise ValueError("quantity must be non-zero")
        return v


# ---------- Helpers ----------
def _optional_idempotency_key(idempotency_key: str | None) -> str | None:
    if idempotency_key is None:
        return None
    if not idempotency_key.strip():
        raise HTTPException(status_code=400, detail="Empty Idempotency-Key header")
    return idempotency_key.strip()


# ---------- Endpoints ----------
@router.post("/adjustments")
def adjust_stock(
    payload: AdjustmentCreate,
    db: Session = Depends(get_db),
    actor: str = Depends(get_actor),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    idem = _optional_idempotency_key(idempotency_key)

    try:
        result = create_adjustment(
            db,
            sku=payload.sku,
            quantity=payload.quantity,
            reason=payload.reason,
            actor=actor,
            idempotency_key=idem,
        )
    except IdentityNotFoundError as exc:
        db.rollback()
        raise HTTPException(status_code=404, detail=str(exc))
    except InvalidMovementError as exc:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(exc))

    db.commit()
    mv = result.movement
    return {
        "id": int(mv.id),
        "idempotency_key": mv.idempotency_key,
        "sku": mv.sku,
        "quantity": mv.quantity,
        "replayed": not result.created,
    }
