"""
Random "daily discount" rotation.

Each run reverts the previous day's picks, then discounts ``count`` random
eligible products (featured image + stock on the first variant). The discount
is taken out of the profit, not the price, so the product never sells below
cost; the new price always ends in .99.
"""

from __future__ import annotations

import logging
import random
import typing as t
from datetime import timedelta
from decimal import ROUND_FLOOR, Decimal

from .db import Database
from .errors import ExternalAPIError, PersistenceError, ValidationError
from .models import DailyDiscountReason, PriceChangeStatus, utcnow
from .repositories import DailyDiscountLogRepository
from .shopify import ShopifyClient

log = logging.getLogger(__name__)

DAILY_DISCOUNT_TAG = "DailyDiscount_每日優惠"
RESET_CONFIRMATION = "DELETE_ALL_DISCOUNT_LOGS"
DEFAULT_COUNT = 6
MIN_DISCOUNT_PCT = 10
MAX_DISCOUNT_PCT = 25
ESTIMATED_COST_RATIO = Decimal("0.5")

APPLY_NOTE = "Auto Discount Applied"
REVERT_NOTE = "Auto Discount Reverted"

CENT = Decimal("0.01")


def _dec(v) -> t.Optional[Decimal]:
    if v in (None, ""):
        return None
    return Decimal(str(v))


def candidate_from_node(node: dict, default_currency: str = "USD") -> t.Optional[dict]:
    """Flatten a product node; None if it is not eligible."""
    image = node.get("featuredImage") or {}
    variants = (node.get("variants") or {}).get("nodes") or []
    if not image.get("url") or not variants:
        return None
    v = variants[0]
    inventory = v.get("inventoryQuantity") or 0
    price = _dec(v.get("price"))
    if inventory <= 0 or price is None or price <= 0:
        return None
    unit_cost = ((v.get("inventoryItem") or {}).get("unitCost")) or {}
    cost = _dec(unit_cost.get("amount"))
    return {
        "productId": node.get("id"),
        "title": node.get("title") or "",
        "variantId": v.get("id"),
        "variantTitle": v.get("title"),
        "sellingPrice": price,
        "cost": cost if cost is not None else (price * ESTIMATED_COST_RATIO).quantize(CENT),
        "costEstimated": cost is None,
        "currencyCode": unit_cost.get("currencyCode") or default_currency,
        "imageUrl": image.get("url"),
        "inventoryQuantity": inventory,
    }


def fisher_yates(items: list, rng: random.Random) -> list:
    out = list(items)
    for i in range(len(out) - 1, 0, -1):
        j = rng.randint(0, i)
        out[i], out[j] = out[j], out[i]
    return out


def round_to_99(raw: Decimal, selling_price: Decimal, cost: Decimal) -> t.Optional[Decimal]:
    """Smallest x.99 >= raw, one unit lower if that is not a discount; None if below cost."""
    price = raw.to_integral_value(rounding=ROUND_FLOOR) + Decimal("0.99")
    if price < raw:
        price += 1
    if price >= selling_price:
        price -= 1
    if price < cost or price <= 0:
        return None
    return price


def generate_discount(product: dict, rng: random.Random) -> t.Optional[dict]:
    selling, cost = product["sellingPrice"], product["cost"]
    profit = selling - cost
    if profit <= 0:
        return None
    pct = rng.randint(MIN_DISCOUNT_PCT, MAX_DISCOUNT_PCT)
    raw = cost + profit * (Decimal(100 - pct) / 100)
    new_price = round_to_99(raw, selling, cost)
    if new_price is None:
        return None
    savings = selling - new_price
    return {
        "discountPercentage": Decimal(pct),
        "profitMargin": (profit / selling * 100).quantize(CENT),
        "originalPrice": selling,
        "discountedPrice": new_price,
        "savingsAmount": savings,
        "savingsPercentage": (savings / selling * 100).quantize(CENT),
    }


class DailyDiscountService:
    def __init__(
        self,
        db: Database,
        client: ShopifyClient,
        rng: t.Optional[random.Random] = None,
        default_currency: str = "USD",
        page_size: int = 100,
    ):
        self.db = db
        self.client = client
        self.rng = rng or random.Random()
        self.default_currency = default_currency
        self.page_size = page_size

    def eligible_products(self) -> list[dict]:
        out = []
        for node in self.client.iter_discount_candidates(page_size=self.page_size):
            c = candidate_from_node(node, self.default_currency)
            if c is not None:
                out.append(c)
        return out

    def apply(self, shop: str, count: int = DEFAULT_COUNT, user_id: t.Optional[str] = None) -> dict:
        if count < 1:
            raise ValidationError("count must be >= 1")
        candidates = self.eligible_products()
        picked = fisher_yates(candidates, self.rng)[:count]
        applied: list[dict] = []
        skipped: list[dict] = []
        errors: list[dict] = []
        warnings: list[str] = []

        for p in picked:
            d = generate_discount(p, self.rng)
            if d is None:
                skipped.append({"productId": p["productId"], "reason": "No room for a discount above cost"})
                continue
            try:
                self.client.update_variant_price(p["productId"], p["variantId"], d["discountedPrice"], compare_at_price=p["sellingPrice"])
            except ExternalAPIError as e:
                log.warning("shop=%s daily discount failed for %s: %s", shop, p["productId"], e)
                errors.append({"productId": p["productId"], "reason": str(e)})
                continue
            try:
                with self.db.session() as s:
                    row = DailyDiscountLogRepository(s).append(
                        shop=shop,
                        product_id=p["productId"],
                        product_title=p["title"],
                        variant_id=p["variantId"],
                        variant_title=p["variantTitle"],
                        original_price=d["originalPrice"],
                        discounted_price=d["discountedPrice"],
                        compare_at_price=p["sellingPrice"],
                        cost_price=p["cost"],
                        profit_margin=d["profitMargin"],
                        discount_percentage=d["discountPercentage"],
                        savings_amount=d["savingsAmount"],
                        savings_percentage=d["savingsPercentage"],
                        currency_code=p["currencyCode"],
                        applied_by_user_id=user_id,
                        image_url=p["imageUrl"],
                        inventory_quantity=p["inventoryQuantity"],
                        is_random_discount=True,
                        status=PriceChangeStatus.APPLIED,
                        reason=DailyDiscountReason.DAILY_DISCOUNT,
                        notes=APPLY_NOTE + (" (cost estimated)" if p["costEstimated"] else ""),
                    )
                    applied.append(row.to_dict())
            except PersistenceError as e:
                log.error("shop=%s log write failed for %s after Shopify update: %s", shop, p["productId"], e)
                warnings.append(f"{p['title']}: price updated on Shopify but the log write failed: {e}")
            try:
                self.client.tags_add(p["productId"], [DAILY_DISCOUNT_TAG])
            except ExternalAPIError as e:
                warnings.append(f"{p['title']}: could not add tag: {e}")

        log.info("shop=%s daily discounts: eligible=%d applied=%d skipped=%d errors=%d",
                 shop, len(candidates), len(applied), len(skipped), len(errors))
        return {
            "success": True,
            "eligibleCount": len(candidates),
            "appliedCount": len(applied),
            "applied": applied,
            "skipped": skipped,
            "errors": errors,
            "warnings": warnings,
        }

    def revert(self, shop: str, user_id: t.Optional[str] = None) -> dict:
        with self.db.session() as s:
            active = DailyDiscountLogRepository(s).active(shop)

        reverted = 0
        errors: list[dict] = []
        warnings: list[str] = []
        for row in active:
            try:
                self.client.update_variant_price(row.product_id, row.variant_id, row.original_price, compare_at_price=None)
            except ExternalAPIError as e:
                log.warning("shop=%s daily discount revert failed for %s: %s", shop, row.product_id, e)
                errors.append({"productId": row.product_id, "reason": str(e)})
                continue
            reverted += 1
            try:
                with self.db.session() as s:
                    repo = DailyDiscountLogRepository(s)
                    repo.append(
                        shop=shop,
                        product_id=row.product_id,
                        product_title=row.product_title,
                        variant_id=row.variant_id,
                        variant_title=row.variant_title,
                        original_price=row.discounted_price,
                        discounted_price=row.original_price,
                        compare_at_price=None,
                        cost_price=row.cost_price,
                        profit_margin=row.profit_margin,
                        discount_percentage=row.discount_percentage,
                        savings_amount=-row.savings_amount,
                        savings_percentage=-row.savings_percentage,
                        currency_code=row.currency_code,
                        applied_by_user_id=user_id,
                        image_url=row.image_url,
                        inventory_quantity=row.inventory_quantity,
                        is_random_discount=True,
                        status=PriceChangeStatus.APPLIED,
                        reason=DailyDiscountReason.REVERSION,
                        notes=REVERT_NOTE,
                    )
                    repo.mark_reverted(s.merge(row))
            except PersistenceError as e:
                log.error("shop=%s log write failed for %s after revert: %s", shop, row.product_id, e)
                warnings.append(f"{row.product_title}: price reverted on Shopify but the log write failed: {e}")
            try:
                self.client.tags_remove(row.product_id, [DAILY_DISCOUNT_TAG])
            except ExternalAPIError as e:
                warnings.append(f"{row.product_title}: could not remove tag: {e}")

        log.info("shop=%s daily discounts reverted=%d of %d", shop, reverted, len(active))
        return {
            "success": True,
            "revertedCount": reverted,
            "totalActive": len(active),
            "errors": errors,
            "warnings": warnings,
        }

    def run(self, shop: str, count: int = DEFAULT_COUNT, user_id: t.Optional[str] = None) -> dict:
        """Rotation: revert yesterday's picks, then pick new ones."""
        reverted = self.revert(shop, user_id=user_id)
        applied = self.apply(shop, count=count, user_id=user_id)
        return {"success": True, "revert": reverted, "apply": applied}

    def logs(self, shop: str, limit: int = 50) -> dict:
        limit = max(1, min(int(limit), 500))
        with self.db.session() as s:
            repo = DailyDiscountLogRepository(s)
            rows = [r.to_dict() for r in repo.recent(shop, limit)]
            stats = repo.stats_since(shop, utcnow() - timedelta(hours=24))
        return {"logs": rows, "last24h": stats}

    def reset(self, shop: str, confirm: t.Optional[str]) -> int:
        if confirm != RESET_CONFIRMATION:
            raise ValidationError(f"Confirmation required: send confirm={RESET_CONFIRMATION}")
        with self.db.session() as s:
            n = DailyDiscountLogRepository(s).delete_all(shop)
        log.warning("shop=%s deleted %d daily discount log rows", shop, n)
        return n


STOREFRONT_FIELDS = (
    "id", "productId", "productTitle", "variantId", "variantTitle", "originalPrice", "discountedPrice",
    "compareAtPrice", "discountPercentage", "savingsAmount", "savingsPercentage", "currencyCode",
    "imageUrl", "appliedAt",
)


def storefront_products(db: Database, shop: str, limit: int = 4, sort: str = "newest") -> list[dict]:
    """Current picks for the storefront widget; no cost or margin data."""
    limit = max(1, min(int(limit), 50))
    with db.session() as s:
        rows = DailyDiscountLogRepository(s).storefront(shop, limit=limit, sort=sort)
        return [{k: d[k] for k in STOREFRONT_FIELDS} for d in (r.to_dict() for r in rows)]
