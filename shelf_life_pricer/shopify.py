# -*- coding: utf-8 -*-

"""
Shopify Admin GraphQL client used by the sync, pricing and daily-discount passes.

- One requests.Session per client (one client per shop).
- Every call goes through the shared RateLimiter first.
- Throttling (HTTP 429 or a THROTTLED GraphQL error) is retried with backoff up
  to ``max_attempts``; anything else is raised as ExternalAPIError right away,
  so batch passes can record it per item and move on.
- userErrors on mutations are raised as ShopifyUserError.
"""

from __future__ import annotations

import json
import time
import random
import logging
import typing as t
from decimal import Decimal

import requests

from .errors import ExternalAPIError, ShopifyUserError
from .ratelimit import RateLimiter

log = logging.getLogger(__name__)

# sentinel: leave compareAtPrice untouched
KEEP = object()

# =============================== DOCUMENTS ===============================

Q_PRODUCTS_PAGE = """
query($first: Int!, $cursor: String) {
  products(first: $first, after: $cursor) {
    pageInfo { hasNextPage endCursor }
    nodes {
      id
      title
      status
      variants(first: 100) {
        nodes {
          id
          sku
          title
          price
          compareAtPrice
          inventoryQuantity
          inventoryItem {
            unitCost { amount currencyCode }
          }
        }
      }
    }
  }
}
"""

Q_DISCOUNT_CANDIDATES_PAGE = """
query($first: Int!, $cursor: String) {
  products(first: $first, after: $cursor) {
    pageInfo { hasNextPage endCursor }
    nodes {
      id
      title
      featuredImage { url altText }
      variants(first: 1) {
        nodes {
          id
          title
          price
          compareAtPrice
          inventoryQuantity
          inventoryItem {
            unitCost { amount currencyCode }
          }
        }
      }
    }
  }
}
"""

Q_VARIANT_PRODUCT = """
query($id: ID!) {
  productVariant(id: $id) {
    id
    price
    compareAtPrice
    product { id title }
  }
}
"""

M_VARIANTS_BULK_UPDATE = """
mutation productVariantsBulkUpdate($productId: ID!, $variants: [ProductVariantsBulkInput!]!) {
  productVariantsBulkUpdate(productId: $productId, variants: $variants) {
    productVariants { id title price compareAtPrice }
    userErrors { field message }
  }
}
"""

M_METAFIELDS_SET = """
mutation metafieldsSet($metafields: [MetafieldsSetInput!]!) {
  metafieldsSet(metafields: $metafields) {
    metafields { id key namespace }
    userErrors { field message code }
  }
}
"""

M_TAGS_ADD = """
mutation tagsAdd($id: ID!, $tags: [String!]!) {
  tagsAdd(id: $id, tags: $tags) {
    node { id }
    userErrors { field message }
  }
}
"""

M_TAGS_REMOVE = """
mutation tagsRemove($id: ID!, $tags: [String!]!) {
  tagsRemove(id: $id, tags: $tags) {
    node { id }
    userErrors { field message }
  }
}
"""

# =============================== HELPERS ===============================


def hdr(token: str) -> dict[str, str]:
    return {"X-Shopify-Access-Token": token, "Content-Type": "application/json", "Accept": "application/json"}


def _backoff_delay(attempt: int, base: float = 0.4, mx: float = 10.0) -> float:
    return min(mx, base * (2 ** (attempt - 1))) + random.uniform(0, 0.25)


def gid_num(gid: str) -> str:
    return (gid or "").split("/")[-1]


def money_str(value: Decimal | float | int) -> str:
    return f"{Decimal(str(value)):.2f}"


def _is_throttled(errors: list[dict]) -> bool:
    return any(((e.get("extensions") or {}).get("code") or "").upper() == "THROTTLED" for e in errors or [])


class ShopifyClient:
    def __init__(
        self,
        shop: str,
        token: str,
        api_version: str,
        limiter: RateLimiter,
        timeout: int = 30,
        max_attempts: int = 5,
        session: t.Optional[requests.Session] = None,
        sleep: t.Callable[[float], None] = time.sleep,
    ):
        self.shop = shop
        self.url = f"https://{shop}/admin/api/{api_version}/graphql.json"
        self.limiter = limiter
        self.timeout = timeout
        self.max_attempts = max(1, int(max_attempts))
        self.session = session or requests.Session()
        self.session.headers.update(hdr(token))
        self._sleep = sleep

    # ---- transport ----
    def gql(self, query: str, variables: t.Optional[dict] = None) -> dict:
        payload = {"query": query, "variables": variables or {}}
        for attempt in range(1, self.max_attempts + 1):
            self.limiter.acquire()
            try:
                r = self.session.post(self.url, json=payload, timeout=self.timeout)
            except requests.RequestException as e:
                raise ExternalAPIError(f"Shopify request failed: {e}") from e
            if r.status_code == 429:
                retry_after = float(r.headers.get("Retry-After") or _backoff_delay(attempt))
                log.warning("shop=%s throttled (HTTP 429), attempt %d/%d", self.shop, attempt, self.max_attempts)
                self._sleep(retry_after)
                continue
            if r.status_code != 200:
                raise ExternalAPIError(f"GraphQL HTTP {r.status_code}: {r.text[:500]}")
            try:
                data = r.json()
            except ValueError as e:
                raise ExternalAPIError(f"GraphQL returned non-JSON body: {r.text[:200]}") from e
            if data.get("errors"):
                if _is_throttled(data["errors"]):
                    log.warning("shop=%s throttled (THROTTLED), attempt %d/%d", self.shop, attempt, self.max_attempts)
                    self._sleep(_backoff_delay(attempt))
                    continue
                first = (data["errors"][0] or {}).get("message") or json.dumps(data["errors"])[:300]
                raise ExternalAPIError(f"GraphQL error: {first}")
            return data.get("data") or {}
        raise ExternalAPIError(f"GraphQL throttled {self.max_attempts} times in a row: {query.strip()[:60]}...")

    # ---- reads ----
    def iter_product_pages(self, page_size: int = 100, max_pages: t.Optional[int] = None, query: str = Q_PRODUCTS_PAGE):
        """
        Yields (nodes, has_next_page) per catalog page. Stops after max_pages
        even if more pages exist; the last yielded has_next_page tells the
        caller whether the catalog was exhausted.
        """
        cursor = None
        pages = 0
        while True:
            data = self.gql(query, {"first": int(page_size), "cursor": cursor})
            page = data.get("products") or {}
            info = page.get("pageInfo") or {}
            has_next = bool(info.get("hasNextPage"))
            pages += 1
            yield page.get("nodes") or [], has_next
            if not has_next or (max_pages is not None and pages >= max_pages):
                return
            cursor = info.get("endCursor")

    def iter_discount_candidates(self, page_size: int = 100):
        for nodes, _ in self.iter_product_pages(page_size=page_size, query=Q_DISCOUNT_CANDIDATES_PAGE):
            yield from nodes

    def variant_product_id(self, variant_id: str) -> t.Optional[str]:
        data = self.gql(Q_VARIANT_PRODUCT, {"id": variant_id})
        return (((data.get("productVariant") or {}).get("product")) or {}).get("id")

    # ---- writes ----
    def update_variant_price(self, product_id: str, variant_id: str, price, compare_at_price=KEEP) -> dict:
        """
        compare_at_price: KEEP leaves it untouched, None clears it, a number sets it.
        """
        variant: dict[str, t.Any] = {"id": variant_id, "price": money_str(price)}
        if compare_at_price is not KEEP:
            variant["compareAtPrice"] = None if compare_at_price is None else money_str(compare_at_price)
        data = self.gql(M_VARIANTS_BULK_UPDATE, {"productId": product_id, "variants": [variant]})
        result = data.get("productVariantsBulkUpdate") or {}
        if result.get("userErrors"):
            raise ShopifyUserError("productVariantsBulkUpdate", result["userErrors"])
        nodes = result.get("productVariants") or []
        return nodes[0] if nodes else {}

    def set_json_metafield(self, owner_id: str, namespace: str, key: str, value) -> None:
        metas = [{
            "ownerId": owner_id,
            "namespace": namespace,
            "key": key,
            "type": "json",
            "value": json.dumps(value, ensure_ascii=False),
        }]
        data = self.gql(M_METAFIELDS_SET, {"metafields": metas})
        errs = (data.get("metafieldsSet") or {}).get("userErrors") or []
        if errs:
            raise ShopifyUserError("metafieldsSet", errs)

    def tags_add(self, resource_id: str, tags: list[str]) -> None:
        data = self.gql(M_TAGS_ADD, {"id": resource_id, "tags": tags})
        errs = (data.get("tagsAdd") or {}).get("userErrors") or []
        if errs:
            raise ShopifyUserError("tagsAdd", errs)

    def tags_remove(self, resource_id: str, tags: list[str]) -> None:
        data = self.gql(M_TAGS_REMOVE, {"id": resource_id, "tags": tags})
        errs = (data.get("tagsRemove") or {}).get("userErrors") or []
        if errs:
            raise ShopifyUserError("tagsRemove", errs)
