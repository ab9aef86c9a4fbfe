from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime

import structlog
from sqlalchemy import select, func
from sqlalchemy.orm import Session

from stocksync.app.core.config import get_settings
from stocksync.app.db.base import utcnow
from stocksync.app.db.models.models_v1 import Product, StockMovement, StockSummary
from stocksync.app.db.models.core_types import MovementType, RefType
from stocksync.app.db.upsert import dialect_insert
from stocksync.services.errors import IdentityNotFoundError, InvalidMovementError
from stocksync.services.identity import normalize_sku

logger = structlog.get_logger(__name__)


@dataclass
class SummaryChange:
    summary: StockSummary
    previous_qty: int

    @property
    def went_negative(self) -> bool:
        return self.summary.available_qty < 0 <= self.previous_qty

    @property
    def crossed_low_stock(self) -> bool:
        threshold = self.summary.low_stock_threshold
        return self.previous_qty > threshold >= self.summary.available_qty


@dataclass
class RecordedMovement:
    movement: StockMovement
    created: bool
    change: SummaryChange | None = None


def line_idempotency_key(ref_type: RefType, ref_id: int, line_no: int) -> str:
    return f"{ref_type.value}:{ref_id}:{line_no}"


def _validate_quantity(movement_type: MovementType, quantity: int) -> None:
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise InvalidMovementError(f"Quantity must be an integer (got {quantity!r})")
    if movement_type == MovementType.adjust:
        if quantity == 0:
            raise InvalidMovementError("ADJUST quantity must be non-zero")
    elif quantity <= 0:
        raise InvalidMovementError(f"{movement_type.value} quantity must be > 0 (got {quantity})")


# ---------- LEDGER ----------
def find_movement(db: Session, idempotency_key: str) -> StockMovement | None:
    return db.execute(
        select(StockMovement).where(StockMovement.idempotency_key == idempotency_key)
    ).scalar_one_or_none()


def append_movement(
    db: Session,
    *,
    sku: str,
    movement_type: MovementType,
    quantity: int,
    ref_type: RefType,
    source: str,
    idempotency_key: str,
    ref_id: int | None = None,
    source_ref: str | None = None,
    note: str | None = None,
    happened_at: datetime | None = None,
    created_by: str = "system",
) -> StockMovement:
    """
    Ajoute UNE ligne au ledger. Jamais d'update ni de delete ensuite.
    Ne touche pas au résumé (voir apply_to_summary / record_movement).
    """
    _validate_quantity(movement_type, quantity)
    sku = normalize_sku(sku)
    if not sku:
        raise InvalidMovementError("SKU is required")

    mv = StockMovement(
        sku=sku,
        movement_type=movement_type,
        quantity=quantity,
        ref_type=ref_type,
        ref_id=ref_id,
        source_ref=source_ref,
        source=source,
        note=note,
        happened_at=happened_at or utcnow(),
        created_by=created_by,
        idempotency_key=idempotency_key,
    )
    db.add(mv)
    db.flush()
    return mv


# ---------- AGGREGATOR ----------
def _lock_summary(db: Session, sku: str) -> StockSummary:
    """
    Retourne la ligne résumé verrouillée (FOR UPDATE), en la créant si besoin.

    La création passe par INSERT ... ON CONFLICT DO NOTHING : deux sources
    qui touchent le même SKU en même temps ne se marchent pas dessus.
    """
    product_id = db.execute(select(Product.id).where(Product.sku == sku)).scalar_one_or_none()
    stmt = (
        dialect_insert(db, StockSummary)
        .values(
            sku=sku,
            product_id=product_id,
            available_qty=0,
            reserved_qty=0,
            total_in_qty=0,
            total_out_qty=0,
            low_stock_threshold=get_settings().low_stock_threshold,
            updated_at=utcnow(),
        )
        .on_conflict_do_nothing(index_elements=["sku"])
    )
    db.execute(stmt)

    return db.execute(
        select(StockSummary).where(StockSummary.sku == sku).with_for_update()
    ).scalar_one()


def apply_to_summary(
    db: Session,
    *,
    sku: str,
    quantity: int,
    movement_type: MovementType,
    happened_at: datetime | None = None,
) -> SummaryChange:
    _validate_quantity(movement_type, quantity)
    sku = normalize_sku(sku)
    summary = _lock_summary(db, sku)
    previous = summary.available_qty

    if movement_type == MovementType.inbound:
        summary.available_qty += quantity
        summary.total_in_qty += quantity
    elif movement_type == MovementType.outbound:
        summary.available_qty -= quantity
        summary.total_out_qty += quantity
    else:
        summary.available_qty += quantity

    summary.last_movement_at = happened_at or utcnow()
    summary.updated_at = utcnow()
    db.flush()

    change = SummaryChange(summary=summary, previous_qty=previous)
    if summary.available_qty < 0:
        # vente au-delà du stock : on trace, on ne bloque pas
        logger.warning(
            "Stock went negative",
            sku=sku,
            available_qty=summary.available_qty,
            movement_type=movement_type.value,
            quantity=quantity,
        )
    elif change.crossed_low_stock:
        logger.info(
            "Stock below threshold",
            sku=sku,
            available_qty=summary.available_qty,
            threshold=summary.low_stock_threshold,
        )
    return change


def record_movement(
    db: Session,
    *,
    sku: str,
    movement_type: MovementType,
    quantity: int,
    ref_type: RefType,
    source: str,
    idempotency_key: str,
    ref_id: int | None = None,
    source_ref: str | None = None,
    note: str | None = None,
    happened_at: datetime | None = None,
    created_by: str = "system",
) -> RecordedMovement:
    """
    Append + mise à jour du résumé, idempotent sur idempotency_key.

    Une clé déjà présente renvoie le mouvement existant sans toucher au résumé.
    """
    existing = find_movement(db, idempotency_key)
    if existing:
        return RecordedMovement(movement=existing, created=False)

    mv = append_movement(
        db,
        sku=sku,
        movement_type=movement_type,
        quantity=quantity,
        ref_type=ref_type,
        source=source,
        idempotency_key=idempotency_key,
        ref_id=ref_id,
        source_ref=source_ref,
        note=note,
        happened_at=happened_at,
        created_by=created_by,
    )
    change = apply_to_summary(
        db,
        sku=mv.sku,
        quantity=mv.quantity,
        movement_type=mv.movement_type,
        happened_at=mv.happened_at,
    )
    return RecordedMovement(movement=mv, created=True, change=change)


def recalculate(db: Session, sku: str) -> StockSummary:
    """
    Rejoue le ledger d'un SKU et écrase le résumé.

    Propriétés :
    - déterministe
    - idempotent
    - fait foi en cas de divergence avec les mises à jour incrémentales
    """
    sku = normalize_sku(sku)
    rows = db.execute(
        select(
            StockMovement.movement_type,
            func.coalesce(func.sum(StockMovement.quantity), 0).label("qty"),
            func.max(StockMovement.happened_at).label("last_at"),
        )
        .where(StockMovement.sku == sku)
        .group_by(StockMovement.movement_type)
    ).all()

    totals = {mt: 0 for mt in MovementType}
    last_at = None
    for movement_type, qty, happened in rows:
        totals[movement_type] = int(qty)
        if happened is not None and (last_at is None or happened > last_at):
            last_at = happened

    # pas de mouvement ni de résumé : rien à rejouer, on ne crée pas de ligne
    if not rows and get_summary(db, sku) is None:
        raise IdentityNotFoundError(sku)

    summary = _lock_summary(db, sku)
    summary.total_in_qty = totals[MovementType.inbound]
    summary.total_out_qty = totals[MovementType.outbound]
    summary.available_qty = (
        totals[MovementType.inbound]
        - totals[MovementType.outbound]
        + totals[MovementType.adjust]
    )
    summary.last_movement_at = last_at
    summary.updated_at = utcnow()
    db.flush()

    logger.info("Stock summary recalculated", sku=sku, available_qty=summary.available_qty)
    return summary


def recalculate_all(db: Session) -> int:
    skus = db.execute(select(StockMovement.sku).distinct().order_by(StockMovement.sku)).scalars().all()
    for sku in skus:
        recalculate(db, sku)
    return len(skus)


def create_adjustment(
    db: Session,
    *,
    sku: str,
    quantity: int,
    reason: str,
    actor: str,
    idempotency_key: str | None = None,
) -> RecordedMovement:
    """Seul chemin manuel vers le stock : un mouvement ADJUST signé."""
    sku = normalize_sku(sku)
    product = db.execute(select(Product).where(Product.sku == sku)).scalar_one_or_none()
    if not product:
        raise IdentityNotFoundError(sku)

    key = idempotency_key or f"{RefType.adjustment.value}:{uuid.uuid4().hex}"
    result = record_movement(
        db,
        sku=sku,
        movement_type=MovementType.adjust,
        quantity=quantity,
        ref_type=RefType.adjustment,
        source="manual",
        idempotency_key=key,
        ref_id=product.id,
        note=reason,
        created_by=actor,
    )
    if result.created:
        logger.info("Stock adjusted", sku=sku, quantity=quantity, actor=actor, reason=reason)
    return result


# ---------- LECTURE ----------
def get_summary(db: Session, sku: str) -> StockSummary | None:
    return db.execute(
        select(StockSummary).where(StockSummary.sku == normalize_sku(sku))
    ).scalar_one_or_none()


def list_summaries(
    db: Session,
    *,
    low_stock_only: bool = False,
    limit: int = 100,
    offset: int = 0,
) -> list[StockSummary]:
    stmt = select(StockSummary)
    if low_stock_only:
        stmt = stmt.where(StockSummary.available_qty <= StockSummary.low_stock_threshold)
    stmt = stmt.order_by(StockSummary.sku.asc()).limit(limit).offset(offset)
    return list(db.execute(stmt).scalars().all())


def list_movements(
    db: Session,
    sku: str,
    *,
    start: datetime | None = None,
    end: datetime | None = None,
    limit: int = 100,
) -> list[StockMovement]:
    stmt = select(StockMovement).where(StockMovement.sku == normalize_sku(sku))
    if start is not None:
        stmt = stmt.where(StockMovement.happened_at >= start)
    if end is not None:
        stmt = stmt.where(StockMovement.happened_at <= end)
    stmt = stmt.order_by(StockMovement.happened_at.desc(), StockMovement.id.desc()).limit(limit)
    return list(db.execute(stmt).scalars().all())


def movement_totals(db: Session, sku: str) -> dict:
    sku = normalize_sku(sku)
    rows = db.execute(
        select(
            StockMovement.movement_type,
            func.coalesce(func.sum(StockMovement.quantity), 0),
            func.count(StockMovement.id),
        )
        .where(StockMovement.sku == sku)
        .group_by(StockMovement.movement_type)
    ).all()

    totals = {mt: 0 for mt in MovementType}
    count = 0
    for movement_type, qty, n in rows:
        totals[movement_type] = int(qty)
        count += int(n)

    return {
        "sku": sku,
        "total_in": totals[MovementType.inbound],
        "total_out": totals[MovementType.outbound],
        "total_adjust": totals[MovementType.adjust],
        "current_stock": totals[MovementType.inbound] - totals[MovementType.outbound] + totals[MovementType.adjust],
        "movement_count": count,
    }
