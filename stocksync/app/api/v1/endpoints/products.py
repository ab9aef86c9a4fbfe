from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.orm import Session

from stocksync.app.api.deps import get_actor, get_db
from stocksync.app.db.models.models_v1 import Product
from stocksync.services.errors import IdentityNotFoundError, InvalidMappingError
from stocksync.services.identity import IdentityResolver, is_temp_sku, normalize_sku

router = APIRouter(prefix="/products")


class ProductCreate(BaseModel):
    sku: str = Field(min_length=1, max_length=64)
    name: str = Field(min_length=1, max_length=255)
    uom: str = Field(default="unit", min_length=1, max_length=32)
    barcode: str | None = Field(default=None, max_length=64)
    active: bool = True


class RemapRequest(BaseModel):
    temp_sku: str = Field(min_length=1, max_length=64)
    real_sku: str = Field(min_length=1, max_length=64)


def _product_dict(p: Product) -> dict:
    return {
        "id": p.id,
        "sku": p.sku,
        "name": p.name,
        "uom": p.uom,
        "barcode": p.barcode,
        "active": p.active,
        "is_temporary": p.is_temporary,
        "merged_into_id": p.merged_into_id,
        "aliases": sorted(a.alias for a in p.aliases),
    }


@router.get("")
def list_products(include_inactive: bool = False, db: Session = Depends(get_db)):
    stmt = select(Product).order_by(Product.sku)
    if not include_inactive:
        stmt = stmt.where(Product.active.is_(True))
    rows = db.execute(stmt).scalars().all()
    return [_product_dict(p) for p in rows]


@router.post("")
def create_product(payload: ProductCreate, db: Session = Depends(get_db)):
    sku = normalize_sku(payload.sku)
    if is_temp_sku(sku):
        raise HTTPException(status_code=400, detail="TEMP- prefix is reserved for unmapped items")

    exists = db.execute(select(Product).where(Product.sku == sku)).scalar_one_or_none()
    if exists:
        raise HTTPException(status_code=409, detail="SKU already exists")

    p = Product(
        sku=sku,
        name=payload.name,
        uom=payload.uom,
        barcode=payload.barcode,
        active=payload.active,
    )
    db.add(p)
    db.commit()
    db.refresh(p)

    return {"id": p.id, "sku": p.sku, "name": p.name}


@router.get("/unmapped")
def list_unmapped(db: Session = Depends(get_db)):
    """Identités TEMP- encore actives, à rattacher manuellement."""
    rows = IdentityResolver().unmapped_products(db)
    return [
        {
            "id": p.id,
            "sku": p.sku,
            "name": p.name,
            "source": p.source,
            "external_code": p.external_code,
            "created_at": p.created_at,
        }
        for p in rows
    ]


@router.post("/remap")
def remap_product(
    payload: RemapRequest,
    db: Session = Depends(get_db),
    actor: str = Depends(get_actor),
):
    try:
        result = IdentityResolver().remap(db, payload.temp_sku, payload.real_sku, actor=actor)
    except IdentityNotFoundError as exc:
        db.rollback()
        raise HTTPException(status_code=404, detail=str(exc))
    except InvalidMappingError as exc:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(exc))

    db.commit()
    return {
        "sku": result.product.sku,
        "merged": result.merged,
        "lines_rewritten": result.lines_rewritten,
    }
