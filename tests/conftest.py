"""
Pytest configuration and shared fixtures for the shelf-life pricer tests.
"""
import random
from datetime import date
from decimal import Decimal

import pytest

from shelf_life_pricer.app import create_app
from shelf_life_pricer.config import Settings
from shelf_life_pricer.db import Database
from shelf_life_pricer.errors import ExternalAPIError
from shelf_life_pricer.models import ShelfLifeItem, SyncStatus
from shelf_life_pricer.shopify import KEEP

SHOP = "test-shop.myshopify.com"
RUN_TOKEN = "test-run-token"
TODAY = date(2025, 3, 1)


def product_node(pid, title, variants, image=True):
    """variants: list of (variant_num, sku, price, cost, inventory)."""
    return {
        "id": f"gid://shopify/Product/{pid}",
        "title": title,
        "status": "ACTIVE",
        "featuredImage": {"url": f"https://cdn.example.com/{pid}.jpg", "altText": None} if image else None,
        "variants": {"nodes": [
            {
                "id": f"gid://shopify/ProductVariant/{vid}",
                "sku": sku,
                "title": "Default Title",
                "price": str(price),
                "compareAtPrice": None,
                "inventoryQuantity": inventory,
                "inventoryItem": {"unitCost": {"amount": str(cost), "currencyCode": "TWD"} if cost is not None else None},
            }
            for vid, sku, price, cost, inventory in variants
        ]},
    }


class FakeShopifyClient:
    """In-memory stand-in for ShopifyClient with the same public methods."""

    def __init__(self, products=None):
        self.products = list(products or [])
        self.pages_fetched = 0
        self.fail_on_page = None
        self.fail_variants = set()
        self.fail_tags = False
        self.fail_metafields = False
        self.price_updates = []
        self.metafields = {}
        self.tags_added = []
        self.tags_removed = []
        self.variant_products = {}

    def iter_product_pages(self, page_size=100, max_pages=None, query=None):
        pages = [self.products[i:i + page_size] for i in range(0, len(self.products), page_size)] or [[]]
        for n, nodes in enumerate(pages, start=1):
            if self.fail_on_page == n:
                raise ExternalAPIError("GraphQL error: boom")
            self.pages_fetched += 1
            has_next = n < len(pages)
            yield nodes, has_next
            if max_pages is not None and n >= max_pages:
                return

    def iter_discount_candidates(self, page_size=100):
        for nodes, _ in self.iter_product_pages(page_size=page_size):
            yield from nodes

    def variant_product_id(self, variant_id):
        return self.variant_products.get(variant_id)

    def update_variant_price(self, product_id, variant_id, price, compare_at_price=KEEP):
        if variant_id in self.fail_variants:
            raise ExternalAPIError(f"productVariantsBulkUpdate userErrors: variant {variant_id} is locked")
        call = {"product_id": product_id, "variant_id": variant_id, "price": Decimal(str(price))}
        if compare_at_price is not KEEP:
            call["compare_at_price"] = None if compare_at_price is None else Decimal(str(compare_at_price))
        self.price_updates.append(call)
        return {"id": variant_id, "price": str(price)}

    def set_json_metafield(self, owner_id, namespace, key, value):
        if self.fail_metafields:
            raise ExternalAPIError("metafieldsSet userErrors: bad value")
        self.metafields[(owner_id, namespace, key)] = value

    def tags_add(self, resource_id, tags):
        if self.fail_tags:
            raise ExternalAPIError("tagsAdd userErrors: nope")
        self.tags_added.append((resource_id, list(tags)))

    def tags_remove(self, resource_id, tags):
        if self.fail_tags:
            raise ExternalAPIError("tagsRemove userErrors: nope")
        self.tags_removed.append((resource_id, list(tags)))


def add_item(db, product_id="SKU-1", batch_id="B1", expiration=TODAY, quantity=5, variant=1, product=1,
             price="20.00", cost="10.00", matched=True, shop=SHOP):
    with db.session() as s:
        item = ShelfLifeItem(
            shop=shop,
            product_id=product_id,
            batch_id=batch_id,
            expiration_date=expiration,
            quantity=quantity,
            location="default",
        )
        if matched:
            item.shopify_product_id = f"gid://shopify/Product/{product}" if product else None
            item.shopify_variant_id = f"gid://shopify/ProductVariant/{variant}" if variant else None
            item.shopify_product_title = f"Product {product_id}"
            item.variant_price = Decimal(price) if price is not None else None
            item.variant_cost = Decimal(cost) if cost is not None else None
            item.currency_code = "TWD"
            item.sync_status = SyncStatus.MATCHED
        s.add(item)
        s.flush()
        return item.id


@pytest.fixture
def db():
    database = Database("sqlite://")
    database.create_all()
    yield database
    database.dispose()


@pytest.fixture
def shopify():
    return FakeShopifyClient()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        shop_tokens={SHOP: "shpat_testtoken"},
        database_url="sqlite://",
        web_trigger_token=RUN_TOKEN,
        state_dir=str(tmp_path / "state"),
        log_level="WARNING",
    )


@pytest.fixture
def app(settings, db, shopify):
    app = create_app(settings, database=db, client_factory=lambda shop: shopify, rng=random.Random(7))
    app.config["TESTING"] = True
    return app


@pytest.fixture
def client(app):
    """A test client for the app."""
    return app.test_client()


@pytest.fixture
def runner(app):
    """A test runner for the app's Click commands."""
    return app.test_cli_runner()


@pytest.fixture
def auth():
    return {"X-Run-Token": RUN_TOKEN}
