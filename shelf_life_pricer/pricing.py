"""
Expiration-driven pricing.

``compute_discount`` is the pure rule: the closer a batch is to its expiry, the
less of the margin (price - cost) is kept. ``ExpirationPricingEngine`` runs the
rule over a shop's matched items, pushes prices to Shopify and records every
change in the ledger; it also reverts those discounts and handles manual
single-variant price updates.
"""

from __future__ import annotations

import logging
import typing as t
from dataclasses import dataclass
from datetime import date
from decimal import ROUND_CEILING, Decimal, InvalidOperation

from .db import Database
from .errors import ExternalAPIError, NotFoundError, PersistenceError, ValidationError
from .models import PriceChangeReason, PriceChangeStatus, ShelfLifeItem
from .repositories import PriceChangeRepository, ShelfLifeRepository
from .shopify import KEEP, ShopifyClient

log = logging.getLogger(__name__)

# (max days left, fraction of margin kept, label); first match wins
BUCKETS: tuple[tuple[int, Decimal, str], ...] = (
    (30, Decimal("0.10"), "30_DAYS_LEFT"),
    (60, Decimal("0.35"), "60_DAYS_LEFT"),
    (90, Decimal("0.60"), "90_DAYS_LEFT"),
    (180, Decimal("0.80"), "180_DAYS_LEFT"),
)

REVERT_NOTE = "Reverted automatic discount"
MANUAL_NOTE = "Manual price update"


@dataclass(frozen=True)
class DiscountDecision:
    days_left: int
    bucket: str
    keep_fraction: Decimal
    new_price: Decimal

    @property
    def margin_discount_percent(self) -> int:
        return int((Decimal(1) - self.keep_fraction) * 100)

    @property
    def notes(self) -> str:
        return f"Automatic discount: {self.bucket}, {self.margin_discount_percent}% margin discount"


def to_decimal(value, field: str = "price") -> Decimal:
    try:
        d = Decimal(str(value).strip())
    except (InvalidOperation, ValueError, AttributeError) as e:
        raise ValidationError(f"{field} must be a valid number") from e
    if not d.is_finite():
        raise ValidationError(f"{field} must be a valid number")
    return d


def days_left(expiration_date: date, today: date) -> int:
    return (expiration_date - today).days


def bucket_for(days: int) -> t.Optional[tuple[Decimal, str]]:
    # expired batches (negative days) land in the most urgent bucket
    for max_days, keep, label in BUCKETS:
        if days <= max_days:
            return keep, label
    return None


def compute_discount(price, cost, expiration_date: date, today: date) -> t.Optional[DiscountDecision]:
    """None means no change (more than 180 days left)."""
    days = days_left(expiration_date, today)
    hit = bucket_for(days)
    if hit is None:
        return None
    keep, label = hit
    price, cost = Decimal(str(price)), Decimal(str(cost))
    raw = cost + (price - cost) * keep
    new_price = raw.to_integral_value(rounding=ROUND_CEILING)
    return DiscountDecision(days_left=days, bucket=label, keep_fraction=keep, new_price=new_price)


def _pick_driver(items: list[ShelfLifeItem]) -> ShelfLifeItem:
    """Earliest-expiring batch with stock, else the earliest-expiring batch."""
    stocked = [i for i in items if (i.quantity or 0) > 0]
    return min(stocked or items, key=lambda i: (i.expiration_date, i.id))


class ExpirationPricingEngine:
    def __init__(
        self,
        db: Database,
        client: ShopifyClient,
        default_currency: str = "TWD",
        today: t.Callable[[], date] = date.today,
    ):
        self.db = db
        self.client = client
        self.default_currency = default_currency
        self._today = today

    # ---- apply ----
    def apply_automatic_discounts(self, shop: str, user_id: t.Optional[str] = None, user_name: t.Optional[str] = None) -> dict:
        today = self._today()
        with self.db.session() as s:
            items = ShelfLifeRepository(s).list_matched(shop)
            changes = PriceChangeRepository(s)
            by_variant: dict[str, list[ShelfLifeItem]] = {}
            errors: list[dict] = []
            for item in items:
                if not item.shopify_variant_id:
                    errors.append({"productId": item.product_id, "reason": "Missing Shopify variant id"})
                    continue
                by_variant.setdefault(item.shopify_variant_id, []).append(item)
            active = {v: changes.active_automatic_discount_for_variant(shop, v) for v in by_variant}
            latest = {v: changes.latest_for_variant(shop, v) for v in by_variant}

        discounted = 0
        warnings: list[str] = []
        for variant_id, group in by_variant.items():
            item = _pick_driver(group)
            if not item.shopify_product_id:
                errors.append({"productId": item.product_id, "reason": "Missing Shopify product id"})
                continue
            if item.variant_price is None:
                errors.append({"productId": item.product_id, "reason": "Missing price"})
                continue
            if item.variant_cost is None:
                errors.append({"productId": item.product_id, "reason": "Missing unit cost"})
                continue

            prior = active[variant_id]
            base = prior.original_price if prior is not None else item.variant_price
            decision = compute_discount(base, item.variant_cost, item.expiration_date, today)
            if decision is None:
                continue
            if base - item.variant_cost <= 0:
                errors.append({"productId": item.product_id, "reason": f"No margin to discount (price {base} <= cost {item.variant_cost})"})
                continue
            if decision.new_price == item.variant_price:
                continue
            if decision.new_price >= base:
                errors.append({"productId": item.product_id, "reason": f"Discounted price {decision.new_price} is not below {base}"})
                continue

            try:
                self.client.update_variant_price(item.shopify_product_id, variant_id, decision.new_price, compare_at_price=base)
            except ExternalAPIError as e:
                log.warning("shop=%s apply failed for %s: %s", shop, variant_id, e)
                errors.append({"productId": item.product_id, "reason": str(e)})
                continue
            discounted += 1
            log.info("shop=%s %s %s -> %s (%s, %d days left)", shop, variant_id, item.variant_price, decision.new_price, decision.bucket, decision.days_left)

            if prior is not None:
                original_compare = prior.original_compare_at_price
            else:
                original_compare = latest[variant_id].new_compare_at_price if latest[variant_id] is not None else None
            try:
                with self.db.session() as s:
                    changes = PriceChangeRepository(s)
                    row = changes.append(
                        shop=shop,
                        shelf_life_item_id=item.id,
                        shopify_variant_id=variant_id,
                        original_price=base,
                        original_compare_at_price=original_compare,
                        new_price=decision.new_price,
                        new_compare_at_price=base,
                        currency_code=item.currency_code or self.default_currency,
                        applied_by_user_id=user_id,
                        applied_by_user_name=user_name,
                        status=PriceChangeStatus.APPLIED,
                        reason=PriceChangeReason.AUTOMATIC_DISCOUNT,
                        bucket=decision.bucket,
                        notes=decision.notes,
                    )
                    # an older bucket's row is superseded by this one
                    changes.revert_automatic_discounts(shop, variant_id, except_id=row.id)
                    ShelfLifeRepository(s).set_variant_price(shop, variant_id, decision.new_price)
            except PersistenceError as e:
                log.error("shop=%s ledger write failed for %s after Shopify update: %s", shop, variant_id, e)
                warnings.append(f"{item.product_id}: price updated on Shopify but the ledger write failed: {e}")

        if discounted:
            message = f"Successfully applied automatic discounts to {discounted} items based on expiration date."
        else:
            message = "No items were discounted. Items may not meet discount criteria or already have discounts applied."
        return {
            "success": True,
            "itemsDiscounted": discounted,
            "totalItems": len(items),
            "message": message,
            "errors": errors,
            "warnings": warnings,
        }

    # ---- revert ----
    def _owner(self, shop: str, row) -> t.Optional[ShelfLifeItem]:
        """The ledger row's item, else any item of the variant that knows its product."""
        with self.db.session() as s:
            repo = ShelfLifeRepository(s)
            owner = None
            if row.shelf_life_item_id is not None:
                try:
                    owner = repo.get(shop, row.shelf_life_item_id)
                except NotFoundError:
                    owner = None
            if owner is not None and owner.shopify_product_id:
                return owner
            others = repo.find_by_variant(shop, row.shopify_variant_id)
            return next((o for o in others if o.shopify_product_id), owner or (others[0] if others else None))

    def _resolve_product_id(self, owner: t.Optional[ShelfLifeItem], row) -> t.Optional[str]:
        if owner is not None and owner.shopify_product_id:
            return owner.shopify_product_id
        return self.client.variant_product_id(row.shopify_variant_id)

    def revert_automatic_discounts(self, shop: str, user_id: t.Optional[str] = None, user_name: t.Optional[str] = None) -> dict:
        with self.db.session() as s:
            active = PriceChangeRepository(s).active_automatic_discounts(shop)

        reverted = 0
        errors: list[dict] = []
        warnings: list[str] = []
        for row in active:
            variant_id = row.shopify_variant_id
            owner = self._owner(shop, row)
            # SKU like apply's errors; the variant gid once every item is deleted
            label = owner.product_id if owner is not None else variant_id
            try:
                product_id = self._resolve_product_id(owner, row)
                if not product_id:
                    errors.append({"productId": label, "reason": "Cannot find product ID for this variant"})
                    continue
                self.client.update_variant_price(product_id, variant_id, row.original_price, compare_at_price=None)
            except ExternalAPIError as e:
                log.warning("shop=%s revert failed for %s: %s", shop, variant_id, e)
                errors.append({"productId": label, "reason": str(e)})
                continue
            reverted += 1
            log.info("shop=%s %s reverted %s -> %s", shop, variant_id, row.new_price, row.original_price)

            try:
                with self.db.session() as s:
                    changes = PriceChangeRepository(s)
                    changes.append(
                        shop=shop,
                        shelf_life_item_id=row.shelf_life_item_id,
                        shopify_variant_id=variant_id,
                        original_price=row.new_price,
                        original_compare_at_price=row.new_compare_at_price,
                        new_price=row.original_price,
                        new_compare_at_price=None,
                        currency_code=row.currency_code or self.default_currency,
                        applied_by_user_id=user_id,
                        applied_by_user_name=user_name,
                        status=PriceChangeStatus.APPLIED,
                        reason=PriceChangeReason.REVERSION,
                        notes=REVERT_NOTE,
                    )
                    changes.revert_automatic_discounts(shop, variant_id)
                    ShelfLifeRepository(s).set_variant_price(shop, variant_id, row.original_price)
            except PersistenceError as e:
                log.error("shop=%s ledger write failed for %s after revert: %s", shop, variant_id, e)
                warnings.append(f"{variant_id}: price reverted on Shopify but the ledger write failed: {e}")

        if reverted:
            message = f"Successfully reverted automatic discounts for {reverted} items."
        elif not active:
            message = "No active automatic discounts to revert."
        else:
            message = "No discounts were reverted."
        return {
            "success": True,
            "itemsReverted": reverted,
            "totalItems": len(active),
            "message": message,
            "errors": errors,
            "warnings": warnings,
        }

    # ---- manual ----
    def update_single_price(
        self,
        shop: str,
        variant_id: str,
        new_price,
        new_compare_at=None,
        user_id: t.Optional[str] = None,
        user_name: t.Optional[str] = None,
    ) -> dict:
        if not variant_id:
            raise ValidationError("Variant ID is required")
        if new_price is None or str(new_price).strip() == "":
            raise ValidationError("Price is required")
        price = to_decimal(new_price, "price")
        if price <= 0:
            raise ValidationError("price must be greater than 0")
        compare = to_decimal(new_compare_at, "compare-at price") if new_compare_at not in (None, "") else None

        with self.db.session() as s:
            items = ShelfLifeRepository(s).find_by_variant(shop, variant_id)
            latest = PriceChangeRepository(s).latest_for_variant(shop, variant_id)
        if not items:
            raise NotFoundError(f"No shelf-life item for variant {variant_id}")
        item = next((i for i in items if i.shopify_product_id), items[0])
        if not item.shopify_product_id:
            raise ValidationError("Cannot find product ID for this variant")
        if item.variant_price is None:
            raise ValidationError("Cannot find current price for this variant")

        previous_compare = latest.new_compare_at_price if latest is not None else None
        if compare is None:
            # keep an existing sale framing; leave Shopify's compare-at alone otherwise
            compare = previous_compare
        self.client.update_variant_price(
            item.shopify_product_id, variant_id, price, compare_at_price=KEEP if compare is None else compare
        )
        log.info("shop=%s %s manual price %s -> %s", shop, variant_id, item.variant_price, price)

        try:
            with self.db.session() as s:
                PriceChangeRepository(s).append(
                    shop=shop,
                    shelf_life_item_id=item.id,
                    shopify_variant_id=variant_id,
                    original_price=item.variant_price,
                    original_compare_at_price=previous_compare,
                    new_price=price,
                    new_compare_at_price=compare,
                    currency_code=item.currency_code or self.default_currency,
                    applied_by_user_id=user_id,
                    applied_by_user_name=user_name,
                    status=PriceChangeStatus.APPLIED,
                    reason=PriceChangeReason.MANUAL_PRICE_CHANGE,
                    notes=MANUAL_NOTE,
                )
                ShelfLifeRepository(s).set_variant_price(shop, variant_id, price)
        except PersistenceError as e:
            log.error("shop=%s ledger write failed for %s after manual update: %s", shop, variant_id, e)
            return {"status": "warning", "message": f"Price updated on Shopify but the ledger write failed: {e}"}
        return {"status": "success", "message": f"Price updated to {price:.2f}"}
