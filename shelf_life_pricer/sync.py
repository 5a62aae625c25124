"""
Inventory reconciliation: match shelf-life items to live Shopify variants by SKU.

Pass outline:
  1) collect the SKUs of the shop's items (all of them, or only not-yet-matched)
  2) page the catalog (page size / page cap from settings), first SKU hit wins,
     matches are committed page by page
  3) stop as soon as every wanted SKU is found
  4) everything left over is marked UNMATCHED with a reason
  5) every matched variant gets <namespace>.expiration_data (json) listing its batches

A catalog error aborts the pass; matches already committed stay committed and
are reported in matchedCount.
"""

from __future__ import annotations

import logging
import typing as t
from decimal import Decimal, InvalidOperation

from .db import Database
from .errors import ExternalAPIError
from .models import SyncStatus
from .repositories import ShelfLifeRepository
from .shopify import ShopifyClient

log = logging.getLogger(__name__)

MATCHED_MESSAGE = "Successfully matched with Shopify variant"
NOT_FOUND_MESSAGE = (
    "No matching SKU found in Shopify. Check that the variant SKU equals the product id "
    "exactly, and that the product has not been archived or deleted."
)
PAGE_CAP_MESSAGE = (
    "No matching SKU found in the first {pages} catalog pages (page cap reached). "
    "The SKU may be further down the catalog, mistyped, or the product may be archived or deleted."
)
METAFIELD_KEY = "expiration_data"
SHOPIFY_FIELDS = (
    "shopify_product_id",
    "shopify_product_title",
    "shopify_variant_id",
    "shopify_variant_title",
    "variant_price",
    "variant_cost",
    "currency_code",
)


def _dec(v) -> t.Optional[Decimal]:
    if v is None or v == "":
        return None
    try:
        return Decimal(str(v))
    except (InvalidOperation, ValueError):
        return None


def variant_details(product: dict, variant: dict, default_currency: str) -> dict:
    cost = ((variant.get("inventoryItem") or {}).get("unitCost")) or {}
    return {
        "shopify_product_id": product.get("id"),
        "shopify_product_title": product.get("title"),
        "shopify_variant_id": variant.get("id"),
        "shopify_variant_title": variant.get("title"),
        "variant_price": _dec(variant.get("price")),
        "variant_cost": _dec(cost.get("amount")),
        "currency_code": cost.get("currencyCode") or default_currency,
    }


def _commit_matches(db: Database, shop: str, wanted: dict[str, list[int]], matches: dict[str, dict]) -> int:
    n = 0
    with db.session() as s:
        repo = ShelfLifeRepository(s)
        for sku, details in matches.items():
            for item_id in wanted[sku]:
                item = repo.get(shop, item_id)
                for k, v in details.items():
                    setattr(item, k, v)
                item.sync_status = SyncStatus.MATCHED
                item.sync_message = MATCHED_MESSAGE
                n += 1
    return n


def _expiration_payload(items) -> list[dict]:
    return [
        {
            "batchId": i.batch_id,
            "expirationDate": i.expiration_date.isoformat(),
            "quantity": i.quantity,
            "batchQuantity": i.batch_quantity if i.batch_quantity is not None else i.quantity,
            "location": i.location or "",
        }
        for i in items
    ]


def push_expiration_metafields(db: Database, client: ShopifyClient, shop: str, variant_ids: t.Iterable[str], namespace: str) -> tuple[int, int]:
    """Returns (updated, failed). Failures are logged, never raised."""
    updated = failed = 0
    for variant_id in variant_ids:
        with db.session() as s:
            payload = _expiration_payload(ShelfLifeRepository(s).find_by_variant(shop, variant_id))
        try:
            client.set_json_metafield(variant_id, namespace, METAFIELD_KEY, payload)
            updated += 1
        except ExternalAPIError as e:
            failed += 1
            log.warning("shop=%s metafield update failed for %s: %s", shop, variant_id, e)
    return updated, failed


def reconcile(
    db: Database,
    client: ShopifyClient,
    shop: str,
    page_size: int = 100,
    max_pages: int = 25,
    namespace: str = "alpha_dog",
    default_currency: str = "TWD",
    only_pending: bool = False,
) -> dict:
    with db.session() as s:
        items = ShelfLifeRepository(s).list_for_sync(shop, only_pending=only_pending)
        wanted: dict[str, list[int]] = {}
        for i in items:
            wanted.setdefault(i.product_id.strip(), []).append(i.id)

    if not wanted:
        return {
            "success": True,
            "matchedCount": 0,
            "message": "No shelf-life items to sync",
            "unmatchedItems": [],
            "metafieldsUpdated": 0,
        }

    found: dict[str, str] = {}  # sku -> variant gid
    matched = 0
    pages = 0
    capped = False
    try:
        for nodes, has_next in client.iter_product_pages(page_size=page_size, max_pages=max_pages):
            pages += 1
            page_matches: dict[str, dict] = {}
            for product in nodes:
                for variant in ((product.get("variants") or {}).get("nodes") or []):
                    sku = (variant.get("sku") or "").strip()
                    if sku and sku in wanted and sku not in found and sku not in page_matches:
                        page_matches[sku] = variant_details(product, variant, default_currency)
            if page_matches:
                matched += _commit_matches(db, shop, wanted, page_matches)
                found.update({k: v["shopify_variant_id"] for k, v in page_matches.items()})
            log.info("shop=%s sync page %d: %d products, %d new SKU matches", shop, pages, len(nodes), len(page_matches))
            if len(found) >= len(wanted):
                break
            capped = has_next and pages >= max_pages
    except ExternalAPIError as e:
        log.error("shop=%s sync aborted on page %d: %s", shop, pages + 1, e)
        return {
            "success": False,
            "matchedCount": matched,
            "message": f"Error fetching products: {e}",
            "unmatchedItems": [],
            "metafieldsUpdated": 0,
        }

    if capped:
        log.warning("shop=%s sync stopped at the page cap (%d pages); catalog not fully scanned", shop, pages)
    reason = PAGE_CAP_MESSAGE.format(pages=pages) if capped else NOT_FOUND_MESSAGE

    unmatched: list[dict] = []
    with db.session() as s:
        repo = ShelfLifeRepository(s)
        for sku, ids in wanted.items():
            if sku in found:
                continue
            for item_id in ids:
                item = repo.get(shop, item_id)
                # a vanished variant must not keep driving prices
                for k in SHOPIFY_FIELDS:
                    setattr(item, k, None)
                item.sync_status = SyncStatus.UNMATCHED
                item.sync_message = reason
                unmatched.append({"productId": item.product_id, "reason": reason})

    updated, failed = push_expiration_metafields(db, client, shop, sorted(set(found.values())), namespace)

    total = sum(len(v) for v in wanted.values())
    message = f"Matched {matched} of {total} items with Shopify variants"
    if unmatched:
        message += f"; {len(unmatched)} unmatched"
    if failed:
        message += f"; {failed} metafield updates failed"
    log.info("shop=%s %s", shop, message)
    return {
        "success": True,
        "matchedCount": matched,
        "message": message,
        "unmatchedItems": unmatched,
        "metafieldsUpdated": updated,
    }
