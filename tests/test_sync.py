from decimal import Decimal

from conftest import SHOP, TODAY, add_item, product_node
from shelf_life_pricer.models import ShelfLifeItem, SyncStatus
from shelf_life_pricer.sync import MATCHED_MESSAGE, reconcile


def _item(db, product_id, batch_id="B1"):
    with db.session() as s:
        return s.query(ShelfLifeItem).filter_by(product_id=product_id, batch_id=batch_id).one()


def _catalog(n, start=1):
    return [product_node(i, f"Product {i}", [(i, f"CAT-{i}", "20.00", "10.00", 5)]) for i in range(start, start + n)]


def test_match_and_unmatched(db, shopify):
    add_item(db, product_id="CAT-2", matched=False)
    add_item(db, product_id="GHOST", matched=False)
    shopify.products = _catalog(3)

    result = reconcile(db, shopify, SHOP, page_size=100)

    assert result["success"] is True
    assert result["matchedCount"] == 1
    matched = _item(db, "CAT-2")
    assert matched.sync_status == SyncStatus.MATCHED
    assert matched.shopify_variant_id == "gid://shopify/ProductVariant/2"
    assert matched.shopify_product_id == "gid://shopify/Product/2"
    assert matched.variant_price == Decimal("20.00")
    assert matched.variant_cost == Decimal("10.00")
    assert matched.currency_code == "TWD"
    assert matched.sync_message == MATCHED_MESSAGE

    ghost = _item(db, "GHOST")
    assert ghost.sync_status == SyncStatus.UNMATCHED
    assert ghost.sync_message
    assert result["unmatchedItems"] == [{"productId": "GHOST", "reason": ghost.sync_message}]


def test_match_on_a_later_page(db, shopify):
    add_item(db, product_id="CAT-7", matched=False)
    shopify.products = _catalog(8)

    result = reconcile(db, shopify, SHOP, page_size=3)

    assert result["matchedCount"] == 1
    assert _item(db, "CAT-7").shopify_variant_id == "gid://shopify/ProductVariant/7"


def test_stops_paging_once_everything_is_found(db, shopify):
    add_item(db, product_id="CAT-1", matched=False)
    shopify.products = _catalog(10)

    reconcile(db, shopify, SHOP, page_size=2)

    assert shopify.pages_fetched == 1


def test_page_cap_is_reported(db, shopify):
    add_item(db, product_id="CAT-9", matched=False)
    shopify.products = _catalog(10)

    result = reconcile(db, shopify, SHOP, page_size=2, max_pages=3)

    assert shopify.pages_fetched == 3
    assert result["matchedCount"] == 0
    assert "page cap" in result["unmatchedItems"][0]["reason"]


def test_all_batches_of_a_sku_are_matched(db, shopify):
    add_item(db, product_id="CAT-1", batch_id="B1", matched=False)
    add_item(db, product_id="CAT-1", batch_id="B2", matched=False)
    shopify.products = _catalog(1)

    result = reconcile(db, shopify, SHOP)

    assert result["matchedCount"] == 2
    assert _item(db, "CAT-1", "B2").sync_status == SyncStatus.MATCHED


def test_first_duplicate_sku_wins(db, shopify):
    add_item(db, product_id="DUP", matched=False)
    shopify.products = [
        product_node(1, "First", [(11, "DUP", "30.00", "12.00", 1)]),
        product_node(2, "Second", [(22, "DUP", "31.00", "12.00", 1)]),
    ]

    reconcile(db, shopify, SHOP)

    assert _item(db, "DUP").shopify_variant_id == "gid://shopify/ProductVariant/11"


def test_catalog_error_aborts_with_matches_so_far(db, shopify):
    add_item(db, product_id="CAT-1", matched=False)
    add_item(db, product_id="CAT-5", matched=False)
    shopify.products = _catalog(6)
    shopify.fail_on_page = 2

    result = reconcile(db, shopify, SHOP, page_size=3)

    assert result["success"] is False
    assert result["matchedCount"] == 1
    assert "boom" in result["message"]
    assert _item(db, "CAT-1").sync_status == SyncStatus.MATCHED
    assert _item(db, "CAT-5").sync_status is None


def test_expiration_metafield_lists_batches(db, shopify):
    add_item(db, product_id="CAT-1", batch_id="B1", quantity=4, matched=False)
    add_item(db, product_id="CAT-1", batch_id="B2", quantity=6, matched=False)
    shopify.products = _catalog(1)

    result = reconcile(db, shopify, SHOP, namespace="alpha_dog")

    assert result["metafieldsUpdated"] == 1
    payload = shopify.metafields[("gid://shopify/ProductVariant/1", "alpha_dog", "expiration_data")]
    assert [b["batchId"] for b in payload] == ["B1", "B2"]
    assert payload[0] == {
        "batchId": "B1",
        "expirationDate": TODAY.isoformat(),
        "quantity": 4,
        "batchQuantity": 4,
        "location": "default",
    }


def test_metafield_failure_is_not_fatal(db, shopify):
    add_item(db, product_id="CAT-1", matched=False)
    shopify.products = _catalog(1)
    shopify.fail_metafields = True

    result = reconcile(db, shopify, SHOP)

    assert result["success"] is True
    assert result["matchedCount"] == 1
    assert result["metafieldsUpdated"] == 0
    assert "metafield" in result["message"]


def test_only_pending_skips_matched_items(db, shopify):
    add_item(db, product_id="CAT-1")  # already matched
    add_item(db, product_id="CAT-2", matched=False)
    shopify.products = _catalog(2)

    result = reconcile(db, shopify, SHOP, only_pending=True)

    assert result["matchedCount"] == 1


def test_nothing_to_sync(db, shopify):
    result = reconcile(db, shopify, SHOP)
    assert result["success"] is True
    assert result["matchedCount"] == 0
    assert shopify.pages_fetched == 0


def test_resync_clears_variant_that_disappeared(db, shopify):
    add_item(db, product_id="GONE")  # matched on an earlier pass
    shopify.products = _catalog(2)

    reconcile(db, shopify, SHOP)

    item = _item(db, "GONE")
    assert item.sync_status == SyncStatus.UNMATCHED
    assert item.shopify_variant_id is None
    assert item.shopify_product_id is None
    assert item.variant_price is None
    assert item.variant_cost is None
