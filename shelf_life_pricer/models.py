from __future__ import annotations

import enum
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)

from .db import Base


def utcnow() -> datetime:
    # naive UTC; SQLite drops tzinfo anyway
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _num(v):
    return float(v) if isinstance(v, Decimal) else v


def _iso(v):
    return v.isoformat() if v is not None else None


class SyncStatus(str, enum.Enum):
    MATCHED = "MATCHED"
    UNMATCHED = "UNMATCHED"


class PriceChangeStatus(str, enum.Enum):
    APPLIED = "APPLIED"
    REVERTED = "REVERTED"


class PriceChangeReason(str, enum.Enum):
    AUTOMATIC_DISCOUNT = "AUTOMATIC_DISCOUNT"
    MANUAL_PRICE_CHANGE = "MANUAL_PRICE_CHANGE"
    REVERSION = "REVERSION"


class DailyDiscountReason(str, enum.Enum):
    DAILY_DISCOUNT = "DAILY_DISCOUNT"
    REVERSION = "REVERSION"


class ShelfLifeItem(Base):
    __tablename__ = "shelf_life_item"

    id = Column(Integer, primary_key=True)
    shop = Column(String(255), nullable=False)
    product_id = Column(String(255), nullable=False)  # external SKU
    batch_id = Column(String(64), nullable=False)
    expiration_date = Column(Date, nullable=False)
    quantity = Column(Integer, nullable=False, default=0)
    batch_quantity = Column(Integer, nullable=True)
    location = Column(String(255), nullable=True)

    shopify_product_id = Column(String(255), nullable=True)
    shopify_variant_id = Column(String(255), nullable=True)
    shopify_product_title = Column(String(512), nullable=True)
    shopify_variant_title = Column(String(512), nullable=True)
    variant_price = Column(Numeric(12, 2), nullable=True)
    variant_cost = Column(Numeric(12, 2), nullable=True)
    currency_code = Column(String(8), nullable=True)
    sync_status = Column(Enum(SyncStatus, native_enum=False, length=16), nullable=True)
    sync_message = Column(Text, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    version = Column(Integer, nullable=False)

    __table_args__ = (
        UniqueConstraint("shop", "product_id", "batch_id", name="uq_shelf_life_item_shop_product_batch"),
        Index("ix_shelf_life_item_shop_variant", "shop", "shopify_variant_id"),
        Index("ix_shelf_life_item_shop_expiration", "shop", "expiration_date"),
    )
    __mapper_args__ = {"version_id_col": version}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "shop": self.shop,
            "productId": self.product_id,
            "batchId": self.batch_id,
            "expirationDate": _iso(self.expiration_date),
            "quantity": self.quantity,
            "batchQuantity": self.batch_quantity,
            "location": self.location,
            "shopifyProductId": self.shopify_product_id,
            "shopifyVariantId": self.shopify_variant_id,
            "shopifyProductTitle": self.shopify_product_title,
            "shopifyVariantTitle": self.shopify_variant_title,
            "variantPrice": _num(self.variant_price),
            "variantCost": _num(self.variant_cost),
            "currencyCode": self.currency_code,
            "syncStatus": self.sync_status.value if self.sync_status else None,
            "syncMessage": self.sync_message,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }


class ShelfLifeItemPriceChange(Base):
    __tablename__ = "shelf_life_item_price_change"

    id = Column(Integer, primary_key=True)
    shop = Column(String(255), nullable=False)
    shelf_life_item_id = Column(Integer, ForeignKey("shelf_life_item.id", ondelete="SET NULL"), nullable=True)
    shopify_variant_id = Column(String(255), nullable=False)
    original_price = Column(Numeric(12, 2), nullable=False)
    original_compare_at_price = Column(Numeric(12, 2), nullable=True)
    new_price = Column(Numeric(12, 2), nullable=False)
    new_compare_at_price = Column(Numeric(12, 2), nullable=True)
    currency_code = Column(String(8), nullable=True)
    applied_at = Column(DateTime, nullable=False, default=utcnow)
    applied_by_user_id = Column(String(255), nullable=True)
    applied_by_user_name = Column(String(255), nullable=True)
    status = Column(Enum(PriceChangeStatus, native_enum=False, length=16), nullable=False, default=PriceChangeStatus.APPLIED)
    reason = Column(Enum(PriceChangeReason, native_enum=False, length=32), nullable=False)
    bucket = Column(String(32), nullable=True)
    notes = Column(Text, nullable=True)

    __table_args__ = (
        Index("ix_price_change_shop_variant", "shop", "shopify_variant_id"),
        Index("ix_price_change_item", "shelf_life_item_id"),
        Index("ix_price_change_shop_reason_status", "shop", "reason", "status"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "shop": self.shop,
            "shelfLifeItemId": self.shelf_life_item_id,
            "shopifyVariantId": self.shopify_variant_id,
            "originalPrice": _num(self.original_price),
            "originalCompareAtPrice": _num(self.original_compare_at_price),
            "newPrice": _num(self.new_price),
            "newCompareAtPrice": _num(self.new_compare_at_price),
            "currencyCode": self.currency_code,
            "appliedAt": _iso(self.applied_at),
            "appliedByUserId": self.applied_by_user_id,
            "appliedByUserName": self.applied_by_user_name,
            "status": self.status.value,
            "reason": self.reason.value,
            "bucket": self.bucket,
            "notes": self.notes,
        }


class DailyDiscountLog(Base):
    __tablename__ = "daily_discount_log"

    id = Column(Integer, primary_key=True)
    shop = Column(String(255), nullable=False)
    product_id = Column(String(255), nullable=False)
    product_title = Column(String(512), nullable=False)
    variant_id = Column(String(255), nullable=False)
    variant_title = Column(String(512), nullable=True)
    original_price = Column(Numeric(12, 2), nullable=False)
    discounted_price = Column(Numeric(12, 2), nullable=False)
    compare_at_price = Column(Numeric(12, 2), nullable=True)
    cost_price = Column(Numeric(12, 2), nullable=True)
    profit_margin = Column(Numeric(8, 2), nullable=True)
    discount_percentage = Column(Numeric(8, 2), nullable=False)
    savings_amount = Column(Numeric(12, 2), nullable=False)
    savings_percentage = Column(Numeric(8, 2), nullable=False)
    currency_code = Column(String(8), nullable=False, default="USD")
    applied_at = Column(DateTime, nullable=False, default=utcnow)
    applied_by_user_id = Column(String(255), nullable=True)
    image_url = Column(Text, nullable=True)
    inventory_quantity = Column(Integer, nullable=True)
    is_random_discount = Column(Boolean, nullable=False, default=True)
    status = Column(Enum(PriceChangeStatus, native_enum=False, length=16), nullable=False, default=PriceChangeStatus.APPLIED)
    reason = Column(Enum(DailyDiscountReason, native_enum=False, length=32), nullable=False, default=DailyDiscountReason.DAILY_DISCOUNT)
    notes = Column(Text, nullable=True)

    __table_args__ = (
        Index("ix_daily_discount_log_shop", "shop"),
        Index("ix_daily_discount_log_variant", "variant_id"),
        Index("ix_daily_discount_log_applied_at", "applied_at"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "shop": self.shop,
            "productId": self.product_id,
            "productTitle": self.product_title,
            "variantId": self.variant_id,
            "variantTitle": self.variant_title,
            "originalPrice": _num(self.original_price),
            "discountedPrice": _num(self.discounted_price),
            "compareAtPrice": _num(self.compare_at_price),
            "costPrice": _num(self.cost_price),
            "profitMargin": _num(self.profit_margin),
            "discountPercentage": _num(self.discount_percentage),
            "savingsAmount": _num(self.savings_amount),
            "savingsPercentage": _num(self.savings_percentage),
            "currencyCode": self.currency_code,
            "appliedAt": _iso(self.applied_at),
            "imageUrl": self.image_url,
            "inventoryQuantity": self.inventory_quantity,
            "isRandomDiscount": self.is_random_discount,
            "status": self.status.value,
            "reason": self.reason.value,
            "notes": self.notes,
        }
