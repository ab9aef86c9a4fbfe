"""
Enregistrements bruts renvoyés par les adapters des portails.

Les adapters peuvent renvoyer ces modèles ou de simples dicts (camelCase ou
snake_case) : tout passe par model_validate avant d'arriver dans le cœur.
Les valeurs "portail" (montants "$1,234.50", dates MM/DD/YYYY) sont
normalisées ici.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def parse_money(value: Any) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, bool):
        raise ValueError(f"Invalid amount: {value!r}")
    if isinstance(value, (int, Decimal)):
        return Decimal(value)
    if isinstance(value, float):
        return Decimal(str(value))

    text = str(value).strip().replace("$", "").replace(",", "")
    if not text:
        return Decimal("0")
    negative = text.startswith("(") and text.endswith(")")
    if negative:
        text = text[1:-1]
    try:
        amount = Decimal(text)
    except InvalidOperation:
        raise ValueError(f"Invalid amount: {value!r}") from None
    return -amount if negative else amount


def parse_portal_date(value: Any) -> date | None:
    """MM/DD/YYYY (format des deux portails), ISO en repli. Illisible -> None."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value

    text = str(value).strip()
    if not text:
        return None
    for fmt in ("%m/%d/%Y", "%Y-%m-%d"):
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    try:
        return datetime.fromisoformat(text).date()
    except ValueError:
        return None


def parse_quantity(value: Any) -> int:
    if value is None:
        return 0
    if isinstance(value, bool):
        raise ValueError(f"Invalid quantity: {value!r}")
    if isinstance(value, int):
        return value

    text = str(value).strip().replace(",", "")
    if not text:
        return 0
    try:
        qty = Decimal(text)
    except InvalidOperation:
        raise ValueError(f"Invalid quantity: {value!r}") from None
    if qty != qty.to_integral_value():
        raise ValueError(f"Quantity must be a whole number (got {value!r})")
    return int(qty)


class RawModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
        extra="ignore",
    )


class RawLineItem(RawModel):
    code: str | None = Field(default=None, validation_alias=AliasChoices("code", "sku", "itemCode"))
    name: str | None = None
    description: str | None = None
    quantity: int = 0
    unit_price: Decimal = Field(
        default=Decimal("0"),
        validation_alias=AliasChoices("unit_price", "unitPrice", "rate"),
    )
    line_total: Decimal = Field(
        default=Decimal("0"),
        validation_alias=AliasChoices("line_total", "lineTotal", "amount", "total"),
    )

    @field_validator("quantity", mode="before")
    @classmethod
    def _qty(cls, v: Any) -> int:
        return parse_quantity(v)

    @field_validator("unit_price", "line_total", mode="before")
    @classmethod
    def _money(cls, v: Any) -> Decimal:
        return parse_money(v)


class RawOrder(RawModel):
    order_number: str = Field(min_length=1)
    status: str | None = None
    order_date: date | None = None
    vendor_name: str | None = None
    po_number: str | None = None
    total: Decimal = Decimal("0")
    detail_url: str | None = None

    @field_validator("order_date", mode="before")
    @classmethod
    def _date(cls, v: Any) -> date | None:
        return parse_portal_date(v)

    @field_validator("total", mode="before")
    @classmethod
    def _money(cls, v: Any) -> Decimal:
        return parse_money(v)


class RawInvoice(RawModel):
    invoice_number: str = Field(min_length=1)
    status: str | None = None
    invoice_date: date | None = None
    date_completed: date | None = None
    customer_name: str | None = None
    entered_by: str | None = None
    assigned_to: str | None = None
    is_complete: bool = False
    is_posted: bool = False
    total: Decimal = Decimal("0")
    detail_url: str | None = None

    @field_validator("invoice_date", "date_completed", mode="before")
    @classmethod
    def _date(cls, v: Any) -> date | None:
        return parse_portal_date(v)

    @field_validator("total", mode="before")
    @classmethod
    def _money(cls, v: Any) -> Decimal:
        return parse_money(v)

    @field_validator("is_complete", "is_posted", mode="before")
    @classmethod
    def _flag(cls, v: Any) -> Any:
        return False if v is None or v == "" else v


class RawDetail(RawModel):
    line_items: list[RawLineItem] = Field(
        default_factory=list,
        validation_alias=AliasChoices("line_items", "lineItems", "items"),
    )
    subtotal: Decimal = Decimal("0")
    tax: Decimal = Decimal("0")
    shipping: Decimal = Decimal("0")
    total: Decimal = Decimal("0")
    po_number: str | None = None
    vendor_name: str | None = None

    @field_validator("subtotal", "tax", "shipping", "total", mode="before")
    @classmethod
    def _money(cls, v: Any) -> Decimal:
        return parse_money(v)


class RawCatalogItem(RawModel):
    item_name: str = Field(min_length=1)
    description: str | None = None
    uom: str | None = None
    sales_price: Decimal = Decimal("0")
    purchase_cost: Decimal = Decimal("0")
    qty_on_hand: int = 0

    @field_validator("sales_price", "purchase_cost", mode="before")
    @classmethod
    def _money(cls, v: Any) -> Decimal:
        return parse_money(v)

    @field_validator("qty_on_hand", mode="before")
    @classmethod
    def _qty(cls, v: Any) -> int:
        return parse_quantity(v)
