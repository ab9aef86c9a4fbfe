"""
Identity resolver.

Traduit un code / libellé de portail en SKU canonique :
    1. SKU exact (code puis libellé)
    2. alias exact, insensible à la casse (code puis libellé)
    3. libellé contenu dans le nom canonique
Sans correspondance, une identité temporaire TEMP-... est créée et la ligne
est marquée "needs_mapping" jusqu'au remap manuel.

Les identités temporaires ne participent pas aux recherches.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Callable, Iterable

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from stocksync.app.db.base import utcnow
from stocksync.app.db.models.models_v1 import (
    Product,
    ProductAlias,
    PurchaseOrder,
    PurchaseOrderLine,
    SalesInvoice,
    SalesInvoiceLine,
)
from stocksync.app.db.models.core_types import SyncSource
from stocksync.services.errors import IdentityNotFoundError, InvalidMappingError

logger = structlog.get_logger(__name__)

TEMP_PREFIX = "TEMP"
TEMP_SKU_ATTEMPTS = 5
_NON_ALNUM = re.compile(r"[^A-Z0-9]")
_BASE36 = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"


def normalize_sku(value: str | None) -> str:
    return (value or "").strip().upper()


def normalize_alias(value: str | None) -> str:
    return " ".join((value or "").split()).lower()


def is_temp_sku(sku: str | None) -> bool:
    return normalize_sku(sku).startswith(f"{TEMP_PREFIX}-")


def _to_base36(n: int) -> str:
    if n == 0:
        return "0"
    out = []
    while n:
        n, r = divmod(n, 36)
        out.append(_BASE36[r])
    return "".join(reversed(out))


def temp_sku_fragment(name: str | None) -> str:
    if not name:
        return "XXX"
    return _NON_ALNUM.sub("", name[:3].upper()) or "XXX"


def generate_temp_sku(name: str | None, epoch_ms: int) -> str:
    return f"{TEMP_PREFIX}-{temp_sku_fragment(name)}-{_to_base36(epoch_ms)}"


@dataclass
class Resolution:
    sku: str
    product_id: int
    matched_by: str  # sku | alias | name | temporary
    needs_mapping: bool = False


@dataclass
class RemapResult:
    product: Product
    merged: bool
    lines_rewritten: int


@dataclass
class CatalogRefreshResult:
    created: int = 0
    updated: int = 0
    skipped: int = 0
    total: int = 0
    errors: list[str] = field(default_factory=list)


class IdentityResolver:
    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self.clock = clock

    # ---------- LOOKUP ----------
    def _searchable(self):
        return select(Product).where(Product.active.is_(True)).where(Product.is_temporary.is_(False))

    def _by_sku(self, db: Session, term: str | None) -> Product | None:
        sku = normalize_sku(term)
        if not sku:
            return None
        return db.execute(self._searchable().where(Product.sku == sku)).scalar_one_or_none()

    def _by_alias(self, db: Session, term: str | None) -> Product | None:
        alias = normalize_alias(term)
        if not alias:
            return None
        return (
            db.execute(
                self._searchable()
                .join(ProductAlias, ProductAlias.product_id == Product.id)
                .where(ProductAlias.alias == alias)
            )
            .scalars()
            .first()
        )

    def _by_name(self, db: Session, term: str | None) -> Product | None:
        needle = normalize_alias(term)
        if not needle:
            return None
        return (
            db.execute(
                self._searchable()
                .where(Product.name.icontains(needle, autoescape=True))
                .order_by(Product.id.asc())
            )
            .scalars()
            .first()
        )

    def find(self, db: Session, code: str | None, name: str | None) -> tuple[Product | None, str | None]:
        for matched_by, lookup in (("sku", self._by_sku), ("alias", self._by_alias)):
            for term in (code, name):
                product = lookup(db, term)
                if product:
                    return product, matched_by

        product = self._by_name(db, name or code)
        if product:
            return product, "name"
        return None, None

    # ---------- WRITE-THROUGH ----------
    def _learn_alias(self, db: Session, product: Product, name: str | None) -> bool:
        alias = normalize_alias(name)
        if not alias:
            return False
        owned = db.execute(select(ProductAlias.id).where(ProductAlias.alias == alias)).first()
        if owned:
            return False
        try:
            with db.begin_nested():
                product.aliases.append(ProductAlias(alias=alias))
        except IntegrityError:
            # réclamé entre-temps par une autre source
            logger.info("Alias already claimed", alias=alias, sku=product.sku)
            return False
        return True

    def _refresh_price(self, product: Product, source: str, unit_price: Decimal | None) -> None:
        if not unit_price or unit_price <= 0:
            return
        if source == SyncSource.customerconnect.value:
            product.last_purchase_price = unit_price
        elif source == SyncSource.routestar.value:
            product.last_sale_price = unit_price

    def _new_temp_sku(self, db: Session, name: str | None) -> str:
        epoch_ms = int(self.clock().timestamp() * 1000)
        while True:
            sku = generate_temp_sku(name, epoch_ms)
            taken = db.execute(select(Product.id).where(Product.sku == sku)).first()
            if not taken:
                return sku
            epoch_ms += 1

    def _create_temp_product(
        self,
        db: Session,
        *,
        code: str | None,
        name: str | None,
        source: str,
        unit_price: Decimal | None,
    ) -> Product:
        # un autre thread peut prendre le même SKU dans la même milliseconde
        for attempt in range(1, TEMP_SKU_ATTEMPTS + 1):
            product = Product(
                sku=self._new_temp_sku(db, name or code),
                name=(name or code or "Unknown Product").strip(),
                is_temporary=True,
                source=source,
                external_code=code,
            )
            self._refresh_price(product, source, unit_price)
            try:
                with db.begin_nested():
                    db.add(product)
            except IntegrityError:
                if attempt == TEMP_SKU_ATTEMPTS:
                    raise
                logger.info("Temporary SKU already taken, retrying", sku=product.sku)
                continue
            return product

    def resolve(
        self,
        db: Session,
        *,
        code: str | None,
        name: str | None,
        source: str,
        unit_price: Decimal | None = None,
        reuse_temp_sku: str | None = None,
    ) -> Resolution:
        """
        Résout un article portail vers un SKU canonique.

        reuse_temp_sku : SKU temporaire déjà porté par la ligne réécrite ; s'il
        est encore actif et qu'aucun vrai produit ne correspond, il est repris
        au lieu d'en créer un nouveau.
        """
        product, matched_by = self.find(db, code, name)
        if product:
            self._learn_alias(db, product, name)
            self._refresh_price(product, source, unit_price)
            return Resolution(sku=product.sku, product_id=product.id, matched_by=matched_by)

        if reuse_temp_sku:
            temp = db.execute(
                select(Product)
                .where(Product.sku == reuse_temp_sku)
                .where(Product.is_temporary.is_(True))
                .where(Product.active.is_(True))
            ).scalar_one_or_none()
            if temp:
                self._refresh_price(temp, source, unit_price)
                return Resolution(sku=temp.sku, product_id=temp.id, matched_by="temporary", needs_mapping=True)

        product = self._create_temp_product(db, code=code, name=name, source=source, unit_price=unit_price)
        sku = product.sku
        self._learn_alias(db, product, name)

        logger.warning("Unmapped item, temporary SKU created", sku=sku, code=code, name=name, source=source)
        return Resolution(sku=sku, product_id=product.id, matched_by="temporary", needs_mapping=True)

    # ---------- ADMIN ----------
    def unmapped_products(self, db: Session) -> list[Product]:
        return list(
            db.execute(
                select(Product)
                .where(Product.sku.like(f"{TEMP_PREFIX}-%"))
                .where(Product.active.is_(True))
                .order_by(Product.created_at.desc(), Product.id.desc())
            )
            .scalars()
            .all()
        )

    def remap(self, db: Session, temp_sku: str, real_sku: str, actor: str = "system") -> RemapResult:
        """
        Rattache une identité temporaire à un vrai SKU.

        - SKU réel existant : alias fusionnés, identité temporaire désactivée
        - sinon : renommage sur place, l'identité devient permanente
        Les lignes des enregistrements pas encore traités en stock sont réécrites.
        Pas de commit ici : l'appelant garde la transaction.
        """
        temp_sku = normalize_sku(temp_sku)
        real_sku = normalize_sku(real_sku)
        if not real_sku:
            raise InvalidMappingError("Target SKU is required")
        if is_temp_sku(real_sku):
            raise InvalidMappingError(f"Target SKU cannot be temporary ({real_sku})")

        temp = db.execute(
            select(Product).where(Product.sku == temp_sku).with_for_update()
        ).scalar_one_or_none()
        if not temp or not temp.is_temporary:
            raise IdentityNotFoundError(temp_sku)
        if not temp.active:
            raise InvalidMappingError(f"Temporary SKU already merged ({temp_sku})")

        target = db.execute(select(Product).where(Product.sku == real_sku)).scalar_one_or_none()
        merged = target is not None
        if target is not None:
            db.execute(
                update(ProductAlias)
                .where(ProductAlias.product_id == temp.id)
                .values(product_id=target.id)
                .execution_options(synchronize_session="fetch")
            )
            db.expire(temp, ["aliases"])
            db.expire(target, ["aliases"])
            temp.active = False
            temp.merged_into_id = target.id
        else:
            temp.sku = real_sku
            temp.is_temporary = False
            target = temp
        db.flush()

        rewritten = 0
        for line_model, fk, parent in (
            (PurchaseOrderLine, PurchaseOrderLine.order_id, PurchaseOrder),
            (SalesInvoiceLine, SalesInvoiceLine.invoice_id, SalesInvoice),
        ):
            res = db.execute(
                update(line_model)
                .where(line_model.sku == temp_sku)
                .where(fk.in_(select(parent.id).where(parent.stock_processed.is_(False))))
                .values(sku=real_sku, needs_mapping=False)
                .execution_options(synchronize_session=False)
            )
            rewritten += res.rowcount or 0

        logger.info(
            "Temporary SKU remapped",
            temp_sku=temp_sku,
            real_sku=real_sku,
            merged=merged,
            lines_rewritten=rewritten,
            actor=actor,
        )
        return RemapResult(product=target, merged=merged, lines_rewritten=rewritten)

    def refresh_catalog(self, db: Session, items: Iterable) -> CatalogRefreshResult:
        """
        Catalogue RouteStar -> produits permanents (nouveau SKU créé, SKU connu rafraîchi).
        Un commit par article : un article en échec ne bloque pas les autres.
        """
        result = CatalogRefreshResult()
        for item in items:
            result.total += 1
            sku = normalize_sku(item.item_name)
            if not sku:
                result.skipped += 1
                continue

            try:
                product = db.execute(select(Product).where(Product.sku == sku)).scalar_one_or_none()
                display = (item.description or item.item_name).strip()
                created = product is None
                if product:
                    if product.name != display:
                        product.name = display
                    if item.uom:
                        product.uom = item.uom
                    self._refresh_price(product, SyncSource.routestar.value, item.sales_price)
                else:
                    product = Product(
                        sku=sku,
                        name=display,
                        uom=item.uom or "unit",
                        source=SyncSource.routestar.value,
                        external_code=item.item_name,
                        last_purchase_price=item.purchase_cost or None,
                        last_sale_price=item.sales_price or None,
                    )
                    db.add(product)
                db.flush()
                self._learn_alias(db, product, item.item_name)
                db.commit()
                if created:
                    result.created += 1
                else:
                    result.updated += 1
            except Exception as exc:
                db.rollback()
                result.skipped += 1
                result.errors.append(f"{sku}: {exc}")
                logger.exception("Catalog item failed", sku=sku)

        logger.info(
            "Catalog refreshed",
            created=result.created,
            updated=result.updated,
            skipped=result.skipped,
            total=result.total,
        )
        return result
