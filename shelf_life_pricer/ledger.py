"""
Read side of the price-change ledger plus the item listings built on it.
"""

from __future__ import annotations

import typing as t
from datetime import date, timedelta
from decimal import Decimal

from .db import Database
from .errors import ValidationError
from .repositories import PriceChangeRepository, ShelfLifeRepository


def latest_price_for_item(db: Database, shop: str, item_id: int) -> t.Optional[Decimal]:
    """Newest ledger price for the item; the synced variant price if it was never changed."""
    with db.session() as s:
        item = ShelfLifeRepository(s).get(shop, item_id)
        row = PriceChangeRepository(s).latest_for_item(shop, item_id)
        if row is not None:
            return row.new_price
        return item.variant_price


def latest_compare_at_for_variant(db: Database, shop: str, variant_id: str) -> t.Optional[Decimal]:
    with db.session() as s:
        row = PriceChangeRepository(s).latest_for_variant(shop, variant_id)
        return row.new_compare_at_price if row is not None else None


def active_automatic_discounts(db: Database, shop: str) -> list[dict]:
    with db.session() as s:
        return [r.to_dict() for r in PriceChangeRepository(s).active_automatic_discounts(shop)]


def price_history(db: Database, shop: str, limit: t.Optional[int] = None) -> list[dict]:
    with db.session() as s:
        return [r.to_dict() for r in PriceChangeRepository(s).history(shop, limit)]


def items_with_latest_change(db: Database, shop: str) -> list[dict]:
    with db.session() as s:
        items = ShelfLifeRepository(s).list_for_shop(shop)
        changes = PriceChangeRepository(s)
        out = []
        for item in items:
            d = item.to_dict()
            row = changes.latest_for_item(shop, item.id)
            d["latestPriceChange"] = row.to_dict() if row is not None else None
            out.append(d)
        return out


def expiring_items(db: Database, shop: str, days: int = 30, today: t.Optional[date] = None) -> list[dict]:
    if days < 0:
        raise ValidationError("days must be >= 0")
    threshold = (today or date.today()) + timedelta(days=days)
    with db.session() as s:
        return [i.to_dict() for i in ShelfLifeRepository(s).list_expiring(shop, threshold)]


def expiration_data_for_variant(db: Database, shop: str, variant_id: str) -> list[dict]:
    """Batches of a variant, earliest expiry first (storefront widget)."""
    with db.session() as s:
        return [
            {
                "batchId": i.batch_id,
                "expirationDate": i.expiration_date.isoformat(),
                "quantity": i.quantity,
                "location": i.location,
            }
            for i in ShelfLifeRepository(s).find_by_variant(shop, variant_id)
        ]
