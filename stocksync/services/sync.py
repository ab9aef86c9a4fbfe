"""
Sync orchestrator (base commune CustomerConnect / RouteStar).

Trois étapes, composables :
    sync_list         liste du portail -> upsert du miroir (clé naturelle)
    backfill_details  lignes manquantes -> fetch détail + résolution des SKU
    process_eligible  enregistrements éligibles -> ledger, exactement une fois

Une transaction par enregistrement : un enregistrement en échec ne fait
jamais tomber le lot. Seule une source injoignable interrompt l'étape
(SyncAbortedError, avec le résultat partiel).
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, time as dtime, timezone
from typing import Any, Callable, ClassVar, Mapping

import structlog
from pydantic import BaseModel
from pydantic.alias_generators import to_camel
from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from stocksync.app.db.base import utcnow
from stocksync.app.db.models.core_types import FetchDirection, MovementType, RefType, SyncSource
from stocksync.app.db.upsert import dialect_insert
from stocksync.app.schemas.raw import RawDetail
from stocksync.services.errors import RecordNotFoundError, SourceUnavailableError, SyncAbortedError
from stocksync.services.identity import IdentityResolver
from stocksync.services.inventory import line_idempotency_key, record_movement
from stocksync.services.sources import UNAVAILABLE_ERRORS, DetailRef, SourceAdapter

logger = structlog.get_logger(__name__)


# ---------- RÉSULTATS ----------
@dataclass
class RecordError:
    key: str
    message: str


@dataclass
class SyncEvent:
    kind: str  # unmapped_item | negative_stock | low_stock | stock_processing_failed
    source: str
    key: str | None = None
    sku: str | None = None
    message: str | None = None


@dataclass
class ListSyncResult:
    created: int = 0
    updated: int = 0
    skipped: int = 0
    total: int = 0
    errors: list[RecordError] = field(default_factory=list)


@dataclass
class DetailSyncResult:
    synced: int = 0
    skipped: int = 0
    total: int = 0
    errors: list[RecordError] = field(default_factory=list)
    events: list[SyncEvent] = field(default_factory=list)


@dataclass
class StockProcessResult:
    processed: int = 0
    skipped: int = 0
    total: int = 0
    movements: int = 0
    errors: list[RecordError] = field(default_factory=list)
    events: list[SyncEvent] = field(default_factory=list)


@dataclass
class FullSyncResult:
    listing: ListSyncResult | None = None
    details: DetailSyncResult | None = None
    stock: StockProcessResult | None = None

    def counts(self) -> dict[str, int]:
        listing = self.listing or ListSyncResult()
        details = self.details or DetailSyncResult()
        stock = self.stock or StockProcessResult()
        return {
            "found": listing.total,
            "inserted": listing.created,
            "updated": listing.updated,
            "failed": listing.skipped + details.skipped + stock.skipped,
            "processed": stock.processed,
        }

    @property
    def errors(self) -> list[RecordError]:
        out: list[RecordError] = []
        for step in (self.listing, self.details, self.stock):
            if step is not None:
                out.extend(step.errors)
        return out

    @property
    def events(self) -> list[SyncEvent]:
        out: list[SyncEvent] = []
        for step in (self.details, self.stock):
            if step is not None:
                out.extend(step.events)
        return out


@dataclass
class SyncOptions:
    limit: int | None = 50
    process_stock: bool = True
    direction: FetchDirection = FetchDirection.newest
    force_details: bool = False
    details_limit: int | None = None


def _unbounded(limit: int | None) -> bool:
    return limit is None or limit <= 0


# ---------- ORCHESTRATOR ----------
class SyncOrchestrator:
    source: ClassVar[SyncSource]
    model: ClassVar[type]
    line_model: ClassVar[type]
    raw_model: ClassVar[type[BaseModel]]
    key_attr: ClassVar[str]
    line_fk_attr: ClassVar[str]
    date_attr: ClassVar[str]
    feeds: ClassVar[tuple[str, ...]]
    eligible_statuses: ClassVar[frozenset]
    movement_type: ClassVar[MovementType]
    ref_type: ClassVar[RefType]

    def __init__(
        self,
        adapter: SourceAdapter,
        resolver: IdentityResolver | None = None,
        *,
        detail_delay: float = 0.0,
        pause: Callable[[float], Any] = time.sleep,
        clock: Callable[[], datetime] = utcnow,
        max_errors: int = 50,
    ):
        self.adapter = adapter
        self.resolver = resolver or IdentityResolver(clock=clock)
        self.detail_delay = detail_delay
        self.pause = pause
        self.clock = clock
        self.max_errors = max_errors

    # ---------- hooks sous-classes ----------
    def list_values(self, raw: Any, feed: str) -> dict[str, Any]:
        raise NotImplementedError

    def apply_detail(self, record: Any, detail: RawDetail) -> None:
        raise NotImplementedError

    def movement_note(self, record: Any) -> str:
        raise NotImplementedError

    # ---------- helpers ----------
    @property
    def key_column(self):
        return getattr(self.model, self.key_attr)

    @property
    def date_column(self):
        return getattr(self.model, self.date_attr)

    @property
    def line_fk(self):
        return getattr(self.line_model, self.line_fk_attr)

    def _key_of(self, raw: Any) -> str:
        if isinstance(raw, BaseModel):
            value = getattr(raw, self.key_attr, None)
        elif isinstance(raw, Mapping):
            value = raw.get(self.key_attr) or raw.get(to_camel(self.key_attr))
        else:
            value = None
        return str(value) if value else "UNKNOWN"

    def _add_error(self, errors: list[RecordError], key: str, exc: BaseException | str) -> None:
        if len(errors) < self.max_errors:
            errors.append(RecordError(key=key, message=str(exc)))

    def _abort(self, exc: BaseException, partial: Any) -> SyncAbortedError:
        logger.error("Source unavailable, step aborted", source=self.source.value, error=str(exc))
        cause = exc if isinstance(exc, SourceUnavailableError) else SourceUnavailableError(str(exc))
        return SyncAbortedError(self.source.value, cause, partial)

    def movement_time(self, record: Any) -> datetime:
        day = getattr(record, self.date_attr)
        if day is None:
            return self.clock()
        return datetime.combine(day, dtime.min, tzinfo=timezone.utc)

    def get_record(self, db: Session, key: str):
        record = db.execute(select(self.model).where(self.key_column == key)).scalar_one_or_none()
        if not record:
            raise RecordNotFoundError(self.model.__name__, key)
        return record

    # ---------- LIST ----------
    def _upsert(self, db: Session, raw: BaseModel, feed: str) -> bool:
        """INSERT ... ON CONFLICT DO UPDATE sur la clé naturelle. Retourne True si créé."""
        key = getattr(raw, self.key_attr)
        existed = db.execute(select(self.model.id).where(self.key_column == key)).first() is not None

        now = self.clock()
        values = self.list_values(raw, feed)
        values["last_synced_at"] = now
        values["raw_data"] = raw.model_dump(mode="json")

        # jamais de stock_processed* ni de lignes ici ; None n'écrase pas une valeur connue
        set_ = {k: v for k, v in values.items() if v is not None}
        set_["updated_at"] = now

        stmt = (
            dialect_insert(db, self.model)
            .values(**{self.key_attr: key}, created_at=now, updated_at=now, **values)
            .on_conflict_do_update(index_elements=[self.key_attr], set_=set_)
        )
        db.execute(stmt)
        return not existed

    def sync_list(
        self,
        db: Session,
        limit: int | None = None,
        direction: FetchDirection = FetchDirection.newest,
    ) -> ListSyncResult:
        result = ListSyncResult()
        fetch_limit = None if _unbounded(limit) else limit

        for feed in self.feeds:
            try:
                raws = self.adapter.fetch_list(fetch_limit, direction, feed)
            except UNAVAILABLE_ERRORS as exc:
                raise self._abort(exc, result) from exc

            if fetch_limit is not None:
                raws = list(raws)[:fetch_limit]

            for raw in raws:
                result.total += 1
                key = self._key_of(raw)
                try:
                    item = self.raw_model.model_validate(raw)
                    key = getattr(item, self.key_attr)
                    created = self._upsert(db, item, feed)
                    db.commit()
                except Exception as exc:
                    db.rollback()
                    result.skipped += 1
                    self._add_error(result.errors, key, exc)
                    logger.exception("List record failed", source=self.source.value, key=key, feed=feed)
                    continue

                if created:
                    result.created += 1
                else:
                    result.updated += 1

        logger.info(
            "List sync completed",
            source=self.source.value,
            created=result.created,
            updated=result.updated,
            skipped=result.skipped,
            total=result.total,
        )
        return result

    # ---------- DETAIL ----------
    def _sync_detail_one(self, db: Session, record: Any, *, force: bool) -> list[SyncEvent] | None:
        """Écrase (jamais n'ajoute) les lignes et totaux d'un enregistrement. None = rien à faire."""
        if record.lines and not force:
            return None

        key = getattr(record, self.key_attr)
        raw = self.adapter.fetch_detail(DetailRef(number=key, url=record.detail_url))
        detail = RawDetail.model_validate(raw)

        # SKU temporaires déjà attribués : réutilisés à la réécriture
        previous_temp = {line.name: line.sku for line in record.lines if line.needs_mapping}

        db.execute(delete(self.line_model).where(self.line_fk == record.id))
        db.flush()
        db.expire(record, ["lines"])

        events: list[SyncEvent] = []
        for line_no, item in enumerate(detail.line_items, start=1):
            label = item.name or item.code
            res = self.resolver.resolve(
                db,
                code=item.code,
                name=item.name,
                source=self.source.value,
                unit_price=item.unit_price,
                reuse_temp_sku=previous_temp.get(label),
            )
            db.add(
                self.line_model(
                    **{self.line_fk_attr: record.id},
                    line_no=line_no,
                    sku=res.sku,
                    name=label or res.sku,
                    description=item.description,
                    quantity=item.quantity,
                    unit_price=item.unit_price,
                    line_total=item.line_total,
                    needs_mapping=res.needs_mapping,
                )
            )
            if res.needs_mapping:
                events.append(
                    SyncEvent(
                        kind="unmapped_item",
                        source=self.source.value,
                        key=key,
                        sku=res.sku,
                        message=item.name or item.code,
                    )
                )

        self.apply_detail(record, detail)
        record.last_synced_at = self.clock()
        db.flush()
        return events

    def sync_detail(self, db: Session, key: str, force: bool = False) -> DetailSyncResult:
        result = DetailSyncResult(total=1)
        record = self.get_record(db, key)
        try:
            events = self._sync_detail_one(db, record, force=force)
            db.commit()
        except UNAVAILABLE_ERRORS as exc:
            db.rollback()
            raise self._abort(exc, result) from exc
        except Exception as exc:
            db.rollback()
            result.skipped += 1
            self._add_error(result.errors, key, exc)
            logger.exception("Detail sync failed", source=self.source.value, key=key)
            return result

        if events is None:
            result.skipped += 1
        else:
            result.synced += 1
            result.events.extend(events)
        return result

    def backfill_details(
        self,
        db: Session,
        limit: int | None = None,
        force_all: bool = False,
    ) -> DetailSyncResult:
        """
        Détail des enregistrements sans lignes (tous si force_all), plus récents d'abord.

        La pause de courtoisie tombe entre deux fetch, après le commit :
        aucune transaction ni verrou n'est tenu pendant l'attente.
        """
        result = DetailSyncResult()

        stmt = select(self.key_column)
        if not force_all:
            stmt = stmt.where(~self.model.lines.any())
        stmt = stmt.order_by(self.date_column.desc().nulls_last(), self.model.id.desc())
        if not _unbounded(limit):
            stmt = stmt.limit(limit)
        keys = list(db.execute(stmt).scalars().all())
        db.commit()

        for n, key in enumerate(keys):
            if n and self.detail_delay:
                self.pause(self.detail_delay)

            result.total += 1
            try:
                record = self.get_record(db, key)
                events = self._sync_detail_one(db, record, force=True)
                db.commit()
            except UNAVAILABLE_ERRORS as exc:
                db.rollback()
                raise self._abort(exc, result) from exc
            except Exception as exc:
                db.rollback()
                result.skipped += 1
                self._add_error(result.errors, key, exc)
                logger.exception("Detail sync failed", source=self.source.value, key=key)
                continue

            result.synced += 1
            result.events.extend(events or [])

        logger.info(
            "Detail backfill completed",
            source=self.source.value,
            synced=result.synced,
            skipped=result.skipped,
            total=result.total,
        )
        return result

    # ---------- STOCK ----------
    def _post_movements(self, db: Session, record: Any, actor: str) -> tuple[int, list[SyncEvent]]:
        key = getattr(record, self.key_attr)
        note = self.movement_note(record)
        happened_at = self.movement_time(record)

        created = 0
        events: list[SyncEvent] = []
        for line in record.lines:
            if line.quantity <= 0:
                continue
            rec = record_movement(
                db,
                sku=line.sku,
                movement_type=self.movement_type,
                quantity=line.quantity,
                ref_type=self.ref_type,
                source=self.source.value,
                idempotency_key=line_idempotency_key(self.ref_type, record.id, line.line_no),
                ref_id=record.id,
                source_ref=key,
                note=note,
                happened_at=happened_at,
                created_by=actor,
            )
            if not rec.created:
                continue
            created += 1

            change = rec.change
            if change.summary.available_qty < 0:
                events.append(
                    SyncEvent(
                        kind="negative_stock",
                        source=self.source.value,
                        key=key,
                        sku=line.sku,
                        message=f"available={change.summary.available_qty}",
                    )
                )
            elif change.crossed_low_stock:
                events.append(
                    SyncEvent(
                        kind="low_stock",
                        source=self.source.value,
                        key=key,
                        sku=line.sku,
                        message=f"available={change.summary.available_qty}",
                    )
                )
        return created, events

    def eligible_ids(self, db: Session) -> list[int]:
        stmt = (
            select(self.model.id)
            .where(self.model.stock_processed.is_(False))
            .where(self.model.status.in_(self.eligible_statuses))
            .where(self.model.lines.any())
            .order_by(self.date_column.asc().nulls_first(), self.model.id.asc())
        )
        return list(db.execute(stmt).scalars().all())

    def process_eligible(self, db: Session, actor: str = "system") -> StockProcessResult:
        result = StockProcessResult()
        ids = self.eligible_ids(db)
        db.commit()

        for record_id in ids:
            result.total += 1
            record = db.get(self.model, record_id)
            key = getattr(record, self.key_attr)
            try:
                created, events = self._post_movements(db, record, actor)
                record.stock_processed = True
                record.stock_processed_at = self.clock()
                record.stock_processing_error = None
                db.commit()
            except Exception as exc:
                # mouvements du record annulés ; marqué traité pour ne pas boucler
                db.rollback()
                record = db.get(self.model, record_id)
                record.stock_processed = True
                record.stock_processed_at = self.clock()
                record.stock_processing_error = str(exc)[:2000]
                db.commit()

                result.skipped += 1
                self._add_error(result.errors, key, exc)
                result.events.append(
                    SyncEvent(
                        kind="stock_processing_failed",
                        source=self.source.value,
                        key=key,
                        message=str(exc),
                    )
                )
                logger.exception("Stock processing failed", source=self.source.value, key=key)
                continue

            result.processed += 1
            result.movements += created
            result.events.extend(events)

        logger.info(
            "Stock processing completed",
            source=self.source.value,
            processed=result.processed,
            skipped=result.skipped,
            movements=result.movements,
            total=result.total,
        )
        return result

    def requeue(self, db: Session, key: str):
        """Relance administrative : l'enregistrement redevient éligible."""
        record = self.get_record(db, key)
        record.stock_processed = False
        record.stock_processed_at = None
        record.stock_processing_error = None
        db.commit()
        logger.info("Record requeued for stock processing", source=self.source.value, key=key)
        return record

    # ---------- FULL ----------
    def full_sync(self, db: Session, options: SyncOptions | None = None, actor: str = "system") -> FullSyncResult:
        options = options or SyncOptions()
        result = FullSyncResult()

        try:
            result.listing = self.sync_list(db, limit=options.limit, direction=options.direction)
            result.details = self.backfill_details(
                db,
                limit=options.details_limit,
                force_all=options.force_details,
            )
            if options.process_stock:
                result.stock = self.process_eligible(db, actor=actor)
        except SyncAbortedError as exc:
            # on range le résultat partiel de l'étape interrompue
            if isinstance(exc.partial, ListSyncResult):
                result.listing = exc.partial
            elif isinstance(exc.partial, DetailSyncResult):
                result.details = exc.partial
            raise SyncAbortedError(self.source.value, exc.cause, result) from exc.cause

        logger.info("Full sync completed", source=self.source.value, **result.counts())
        return result
