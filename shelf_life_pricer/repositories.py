"""
One repository per table. Every query takes the shop and filters on it.
"""

from __future__ import annotations

import typing as t
from datetime import date, datetime

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from .errors import NotFoundError, ValidationError
from .models import (
    DailyDiscountLog,
    DailyDiscountReason,
    PriceChangeReason,
    PriceChangeStatus,
    ShelfLifeItem,
    ShelfLifeItemPriceChange,
    SyncStatus,
)


class ShelfLifeRepository:
    def __init__(self, session: Session):
        self.session = session

    def upsert(
        self,
        shop: str,
        product_id: str,
        batch_id: str,
        expiration_date: date,
        quantity: int,
        batch_quantity: t.Optional[int] = None,
        location: t.Optional[str] = None,
    ) -> ShelfLifeItem:
        item = self.session.execute(
            select(ShelfLifeItem).where(
                ShelfLifeItem.shop == shop,
                ShelfLifeItem.product_id == product_id,
                ShelfLifeItem.batch_id == batch_id,
            )
        ).scalar_one_or_none()
        if item is None:
            item = ShelfLifeItem(
                shop=shop,
                product_id=product_id,
                batch_id=batch_id,
                expiration_date=expiration_date,
                quantity=quantity,
                batch_quantity=batch_quantity,
                location=location or "default",
            )
            self.session.add(item)
        else:
            item.expiration_date = expiration_date
            item.quantity = quantity
            item.batch_quantity = batch_quantity
            if location:
                item.location = location
        self.session.flush()
        return item

    def get(self, shop: str, item_id: int) -> ShelfLifeItem:
        item = self.session.execute(
            select(ShelfLifeItem).where(ShelfLifeItem.shop == shop, ShelfLifeItem.id == item_id)
        ).scalar_one_or_none()
        if item is None:
            raise NotFoundError(f"Shelf-life item {item_id} not found")
        return item

    def list_for_shop(self, shop: str) -> list[ShelfLifeItem]:
        stmt = (
            select(ShelfLifeItem)
            .where(ShelfLifeItem.shop == shop)
            .order_by(ShelfLifeItem.expiration_date.asc(), ShelfLifeItem.id.asc())
        )
        return list(self.session.execute(stmt).scalars())

    def list_for_sync(self, shop: str, only_pending: bool = False) -> list[ShelfLifeItem]:
        stmt = select(ShelfLifeItem).where(ShelfLifeItem.shop == shop)
        if only_pending:
            stmt = stmt.where(
                (ShelfLifeItem.sync_status.is_(None)) | (ShelfLifeItem.sync_status != SyncStatus.MATCHED)
            )
        return list(self.session.execute(stmt.order_by(ShelfLifeItem.id.asc())).scalars())

    def list_matched(self, shop: str) -> list[ShelfLifeItem]:
        stmt = (
            select(ShelfLifeItem)
            .where(ShelfLifeItem.shop == shop, ShelfLifeItem.sync_status == SyncStatus.MATCHED)
            .order_by(ShelfLifeItem.expiration_date.asc(), ShelfLifeItem.id.asc())
        )
        return list(self.session.execute(stmt).scalars())

    def list_expiring(self, shop: str, threshold: date) -> list[ShelfLifeItem]:
        stmt = (
            select(ShelfLifeItem)
            .where(
                ShelfLifeItem.shop == shop,
                ShelfLifeItem.expiration_date <= threshold,
                ShelfLifeItem.quantity > 0,
            )
            .order_by(ShelfLifeItem.expiration_date.asc())
        )
        return list(self.session.execute(stmt).scalars())

    def find_by_variant(self, shop: str, variant_id: str) -> list[ShelfLifeItem]:
        stmt = (
            select(ShelfLifeItem)
            .where(ShelfLifeItem.shop == shop, ShelfLifeItem.shopify_variant_id == variant_id)
            .order_by(ShelfLifeItem.expiration_date.asc(), ShelfLifeItem.id.asc())
        )
        return list(self.session.execute(stmt).scalars())

    def set_variant_price(self, shop: str, variant_id: str, price) -> int:
        items = self.find_by_variant(shop, variant_id)
        for item in items:
            item.variant_price = price
        self.session.flush()
        return len(items)

    def delete(self, shop: str, item_id: int) -> None:
        self.session.delete(self.get(shop, item_id))
        self.session.flush()

    def bulk_delete(self, shop: str, ids: t.Iterable[int]) -> int:
        ids = list(ids)
        if not ids:
            return 0
        res = self.session.execute(
            delete(ShelfLifeItem).where(ShelfLifeItem.shop == shop, ShelfLifeItem.id.in_(ids))
        )
        return res.rowcount or 0

    def delete_all(self, shop: str) -> int:
        res = self.session.execute(delete(ShelfLifeItem).where(ShelfLifeItem.shop == shop))
        return res.rowcount or 0


class PriceChangeRepository:
    def __init__(self, session: Session):
        self.session = session

    def append(self, **fields) -> ShelfLifeItemPriceChange:
        row = ShelfLifeItemPriceChange(**fields)
        self.session.add(row)
        self.session.flush()
        return row

    def _newest_first(self, stmt):
        return stmt.order_by(ShelfLifeItemPriceChange.applied_at.desc(), ShelfLifeItemPriceChange.id.desc())

    def latest_for_item(self, shop: str, item_id: int) -> t.Optional[ShelfLifeItemPriceChange]:
        stmt = self._newest_first(
            select(ShelfLifeItemPriceChange).where(
                ShelfLifeItemPriceChange.shop == shop,
                ShelfLifeItemPriceChange.shelf_life_item_id == item_id,
            )
        ).limit(1)
        return self.session.execute(stmt).scalar_one_or_none()

    def latest_for_variant(self, shop: str, variant_id: str) -> t.Optional[ShelfLifeItemPriceChange]:
        stmt = self._newest_first(
            select(ShelfLifeItemPriceChange).where(
                ShelfLifeItemPriceChange.shop == shop,
                ShelfLifeItemPriceChange.shopify_variant_id == variant_id,
            )
        ).limit(1)
        return self.session.execute(stmt).scalar_one_or_none()

    def active_automatic_discounts(self, shop: str) -> list[ShelfLifeItemPriceChange]:
        """Still-APPLIED automatic discounts, newest row per variant."""
        stmt = self._newest_first(
            select(ShelfLifeItemPriceChange).where(
                ShelfLifeItemPriceChange.shop == shop,
                ShelfLifeItemPriceChange.reason == PriceChangeReason.AUTOMATIC_DISCOUNT,
                ShelfLifeItemPriceChange.status == PriceChangeStatus.APPLIED,
            )
        )
        seen: dict[str, ShelfLifeItemPriceChange] = {}
        for row in self.session.execute(stmt).scalars():
            seen.setdefault(row.shopify_variant_id, row)
        return list(seen.values())

    def active_automatic_discount_for_variant(self, shop: str, variant_id: str) -> t.Optional[ShelfLifeItemPriceChange]:
        stmt = self._newest_first(
            select(ShelfLifeItemPriceChange).where(
                ShelfLifeItemPriceChange.shop == shop,
                ShelfLifeItemPriceChange.shopify_variant_id == variant_id,
                ShelfLifeItemPriceChange.reason == PriceChangeReason.AUTOMATIC_DISCOUNT,
                ShelfLifeItemPriceChange.status == PriceChangeStatus.APPLIED,
            )
        ).limit(1)
        return self.session.execute(stmt).scalar_one_or_none()

    def revert_automatic_discounts(self, shop: str, variant_id: str, except_id: t.Optional[int] = None) -> int:
        """Flip APPLIED automatic rows of a variant to REVERTED."""
        stmt = update(ShelfLifeItemPriceChange).where(
            ShelfLifeItemPriceChange.shop == shop,
            ShelfLifeItemPriceChange.shopify_variant_id == variant_id,
            ShelfLifeItemPriceChange.reason == PriceChangeReason.AUTOMATIC_DISCOUNT,
            ShelfLifeItemPriceChange.status == PriceChangeStatus.APPLIED,
        )
        if except_id is not None:
            stmt = stmt.where(ShelfLifeItemPriceChange.id != except_id)
        res = self.session.execute(
            stmt.values(status=PriceChangeStatus.REVERTED).execution_options(synchronize_session="fetch")
        )
        return res.rowcount or 0

    def history(self, shop: str, limit: t.Optional[int] = None) -> list[ShelfLifeItemPriceChange]:
        stmt = self._newest_first(select(ShelfLifeItemPriceChange).where(ShelfLifeItemPriceChange.shop == shop))
        if limit:
            stmt = stmt.limit(limit)
        return list(self.session.execute(stmt).scalars())

    def latest_by_variant(self, shop: str) -> dict[str, ShelfLifeItemPriceChange]:
        out: dict[str, ShelfLifeItemPriceChange] = {}
        for row in self.history(shop):
            out.setdefault(row.shopify_variant_id, row)
        return out


STOREFRONT_SORTS = {
    "newest": (DailyDiscountLog.applied_at.desc(),),
    "highest_discount": (DailyDiscountLog.savings_percentage.desc(),),
    "lowest_price": (DailyDiscountLog.discounted_price.asc(),),
}


class DailyDiscountLogRepository:
    def __init__(self, session: Session):
        self.session = session

    def append(self, **fields) -> DailyDiscountLog:
        row = DailyDiscountLog(**fields)
        self.session.add(row)
        self.session.flush()
        return row

    def active(self, shop: str) -> list[DailyDiscountLog]:
        stmt = (
            select(DailyDiscountLog)
            .where(
                DailyDiscountLog.shop == shop,
                DailyDiscountLog.is_random_discount.is_(True),
                DailyDiscountLog.reason == DailyDiscountReason.DAILY_DISCOUNT,
                DailyDiscountLog.status == PriceChangeStatus.APPLIED,
            )
            .order_by(DailyDiscountLog.applied_at.desc(), DailyDiscountLog.id.desc())
        )
        return list(self.session.execute(stmt).scalars())

    def storefront(self, shop: str, limit: int = 4, sort: str = "newest") -> list[DailyDiscountLog]:
        """Live daily discounts for the storefront widget."""
        order = STOREFRONT_SORTS.get(sort)
        if order is None:
            raise ValidationError(f"sort must be one of: {', '.join(STOREFRONT_SORTS)}")
        stmt = (
            select(DailyDiscountLog)
            .where(
                DailyDiscountLog.shop == shop,
                DailyDiscountLog.reason == DailyDiscountReason.DAILY_DISCOUNT,
                DailyDiscountLog.status == PriceChangeStatus.APPLIED,
            )
            .order_by(*order, DailyDiscountLog.id.desc())
            .limit(limit)
        )
        return list(self.session.execute(stmt).scalars())

    def mark_reverted(self, row: DailyDiscountLog) -> None:
        row.status = PriceChangeStatus.REVERTED
        self.session.flush()

    def recent(self, shop: str, limit: int = 50) -> list[DailyDiscountLog]:
        stmt = (
            select(DailyDiscountLog)
            .where(DailyDiscountLog.shop == shop)
            .order_by(DailyDiscountLog.applied_at.desc(), DailyDiscountLog.id.desc())
            .limit(limit)
        )
        return list(self.session.execute(stmt).scalars())

    def stats_since(self, shop: str, since: datetime) -> dict[str, int]:
        stmt = (
            select(DailyDiscountLog.reason, func.count(DailyDiscountLog.id))
            .where(DailyDiscountLog.shop == shop, DailyDiscountLog.applied_at >= since)
            .group_by(DailyDiscountLog.reason)
        )
        counts = {reason: n for reason, n in self.session.execute(stmt)}
        applied = counts.get(DailyDiscountReason.DAILY_DISCOUNT, 0)
        reverted = counts.get(DailyDiscountReason.REVERSION, 0)
        return {"total": applied + reverted, "applied": applied, "reverted": reverted}

    def delete_all(self, shop: str) -> int:
        res = self.session.execute(delete(DailyDiscountLog).where(DailyDiscountLog.shop == shop))
        return res.rowcount or 0
