import random
from decimal import Decimal

import pytest

from conftest import SHOP, product_node
from shelf_life_pricer.daily_discounts import (
    DAILY_DISCOUNT_TAG,
    RESET_CONFIRMATION,
    DailyDiscountService,
    candidate_from_node,
    fisher_yates,
    generate_discount,
    round_to_99,
    storefront_products,
)
from shelf_life_pricer.errors import ValidationError
from shelf_life_pricer.models import DailyDiscountLog, DailyDiscountReason, PriceChangeStatus
from shelf_life_pricer.repositories import DailyDiscountLogRepository


class StubRng:
    """Keeps list order and always draws the same discount percentage."""

    def __init__(self, pct):
        self.pct = pct

    def randint(self, a, b):
        if (a, b) == (10, 25):
            return self.pct
        return b


def _logs(db):
    with db.session() as s:
        return s.query(DailyDiscountLog).order_by(DailyDiscountLog.id).all()


@pytest.fixture
def catalog(shopify):
    shopify.products = [
        product_node(1, "Tea", [(1, "T", "20.00", "10.00", 5)]),
        product_node(2, "No image", [(2, "N", "20.00", "10.00", 5)], image=False),
        product_node(3, "Sold out", [(3, "S", "20.00", "10.00", 0)]),
        product_node(4, "No cost", [(4, "C", "30.00", None, 2)]),
    ]
    return shopify


# ---- pure helpers ----

@pytest.mark.parametrize("raw,selling,cost,expected", [
    ("17.50", "20.00", "10.00", "17.99"),
    ("18.00", "20.00", "10.00", "18.99"),
    ("19.995", "20.00", "10.00", "19.99"),
    ("19.20", "19.50", "10.00", "18.99"),
    ("10.40", "10.50", "10.00", None),
])
def test_round_to_99(raw, selling, cost, expected):
    got = round_to_99(Decimal(raw), Decimal(selling), Decimal(cost))
    assert got == (Decimal(expected) if expected else None)


def test_generate_discount_takes_percentage_of_profit():
    product = {"sellingPrice": Decimal("20.00"), "cost": Decimal("10.00")}
    d = generate_discount(product, StubRng(20))
    assert d["discountPercentage"] == Decimal(20)
    assert d["discountedPrice"] == Decimal("18.99")
    assert d["savingsAmount"] == Decimal("1.01")
    assert d["savingsPercentage"] == Decimal("5.05")
    assert d["profitMargin"] == Decimal("50.00")


def test_generate_discount_without_profit():
    assert generate_discount({"sellingPrice": Decimal("10"), "cost": Decimal("12")}, StubRng(10)) is None


def test_discount_percentage_stays_in_range():
    rng = random.Random(3)
    product = {"sellingPrice": Decimal("100.00"), "cost": Decimal("40.00")}
    pcts = {generate_discount(product, rng)["discountPercentage"] for _ in range(300)}
    assert min(pcts) >= 10 and max(pcts) <= 25


def test_candidate_filters_and_estimates_cost():
    assert candidate_from_node(product_node(2, "x", [(2, "N", "20", "10", 5)], image=False)) is None
    assert candidate_from_node(product_node(3, "x", [(3, "S", "20", "10", 0)])) is None
    c = candidate_from_node(product_node(4, "x", [(4, "C", "30.00", None, 2)]), default_currency="TWD")
    assert c["cost"] == Decimal("15.00")
    assert c["costEstimated"] is True
    assert c["currencyCode"] == "TWD"


def test_fisher_yates_is_a_seeded_permutation():
    items = list(range(20))
    a = fisher_yates(items, random.Random(42))
    b = fisher_yates(items, random.Random(42))
    assert a == b
    assert sorted(a) == items
    assert items == list(range(20))


# ---- service ----

def test_apply_discounts_eligible_products(db, catalog):
    svc = DailyDiscountService(db, catalog, rng=StubRng(20), default_currency="TWD")

    result = svc.apply(SHOP, count=6, user_id="u1")

    assert result["eligibleCount"] == 2
    assert result["appliedCount"] == 2
    assert [(u["variant_id"], u["price"], u["compare_at_price"]) for u in catalog.price_updates] == [
        ("gid://shopify/ProductVariant/1", Decimal("18.99"), Decimal("20.00")),
        ("gid://shopify/ProductVariant/4", Decimal("27.99"), Decimal("30.00")),
    ]
    assert [t for _, t in catalog.tags_added] == [[DAILY_DISCOUNT_TAG], [DAILY_DISCOUNT_TAG]]
    logs = _logs(db)
    assert len(logs) == 2
    assert all(r.status == PriceChangeStatus.APPLIED for r in logs)
    assert logs[0].applied_by_user_id == "u1"
    assert "cost estimated" in logs[1].notes


def test_apply_respects_count(db, catalog):
    result = DailyDiscountService(db, catalog, rng=StubRng(15)).apply(SHOP, count=1)
    assert result["appliedCount"] == 1
    assert len(catalog.price_updates) == 1


def test_tag_failure_is_a_warning(db, catalog):
    catalog.fail_tags = True
    result = DailyDiscountService(db, catalog, rng=StubRng(15)).apply(SHOP, count=1)
    assert result["appliedCount"] == 1
    assert len(result["warnings"]) == 1


def test_revert_restores_prices_and_logs_reversion(db, catalog):
    svc = DailyDiscountService(db, catalog, rng=StubRng(20))
    svc.apply(SHOP)

    result = svc.revert(SHOP)

    assert result["revertedCount"] == 2
    reverts = catalog.price_updates[2:]
    assert [(u["price"], u["compare_at_price"]) for u in reverts] == [
        (Decimal("20.00"), None),
        (Decimal("30.00"), None),
    ] or [(u["price"], u["compare_at_price"]) for u in reverts] == [
        (Decimal("30.00"), None),
        (Decimal("20.00"), None),
    ]
    assert len(catalog.tags_removed) == 2
    logs = _logs(db)
    applied = [r for r in logs if r.reason == DailyDiscountReason.DAILY_DISCOUNT]
    reversions = [r for r in logs if r.reason == DailyDiscountReason.REVERSION]
    assert all(r.status == PriceChangeStatus.REVERTED for r in applied)
    assert len(reversions) == 2
    assert all(r.savings_amount < 0 for r in reversions)

    assert svc.revert(SHOP)["revertedCount"] == 0


def test_revert_failure_keeps_log_applied(db, catalog):
    svc = DailyDiscountService(db, catalog, rng=StubRng(20))
    svc.apply(SHOP, count=1)
    catalog.fail_variants.add("gid://shopify/ProductVariant/1")

    result = svc.revert(SHOP)

    assert result["revertedCount"] == 0
    assert len(result["errors"]) == 1
    assert _logs(db)[0].status == PriceChangeStatus.APPLIED


def test_run_rotates(db, catalog):
    svc = DailyDiscountService(db, catalog, rng=StubRng(20))
    first = svc.run(SHOP, count=1)
    second = svc.run(SHOP, count=1)

    assert first["revert"]["revertedCount"] == 0
    assert first["apply"]["appliedCount"] == 1
    assert second["revert"]["revertedCount"] == 1
    assert second["apply"]["appliedCount"] == 1
    with db.session() as s:
        active = s.query(DailyDiscountLog).filter_by(
            status=PriceChangeStatus.APPLIED, reason=DailyDiscountReason.DAILY_DISCOUNT
        ).count()
    assert active == 1


def test_logs_and_stats(db, catalog):
    svc = DailyDiscountService(db, catalog, rng=StubRng(20))
    svc.apply(SHOP)
    svc.revert(SHOP)

    out = svc.logs(SHOP, limit=3)

    assert len(out["logs"]) == 3
    assert out["last24h"] == {"total": 4, "applied": 2, "reverted": 2}


def test_reset_requires_confirmation(db, catalog):
    svc = DailyDiscountService(db, catalog, rng=StubRng(20))
    svc.apply(SHOP)
    with pytest.raises(ValidationError):
        svc.reset(SHOP, "yes")
    assert svc.reset(SHOP, RESET_CONFIRMATION) == 2
    assert _logs(db) == []


# ---- storefront ----

def _log(db, title, discounted, savings_pct, status=PriceChangeStatus.APPLIED,
         reason=DailyDiscountReason.DAILY_DISCOUNT, shop=SHOP):
    with db.session() as s:
        DailyDiscountLogRepository(s).append(
            shop=shop,
            product_id=f"gid://shopify/Product/{title}",
            product_title=title,
            variant_id=f"gid://shopify/ProductVariant/{title}",
            original_price=Decimal("20.00"),
            discounted_price=Decimal(discounted),
            cost_price=Decimal("10.00"),
            discount_percentage=Decimal("15"),
            savings_amount=Decimal("20.00") - Decimal(discounted),
            savings_percentage=Decimal(savings_pct),
            status=status,
            reason=reason,
        )


@pytest.fixture
def live_logs(db):
    _log(db, "Cheap", "15.99", "20.05")
    _log(db, "Deep", "16.99", "30.00")
    _log(db, "Fresh", "18.99", "5.05")
    _log(db, "Old", "9.99", "50.00", status=PriceChangeStatus.REVERTED)
    _log(db, "Undo", "20.00", "-20.05", reason=DailyDiscountReason.REVERSION)
    _log(db, "Elsewhere", "1.99", "90.00", shop="other.myshopify.com")


@pytest.mark.parametrize("sort,expected", [
    ("newest", ["Fresh", "Deep", "Cheap"]),
    ("highest_discount", ["Deep", "Cheap", "Fresh"]),
    ("lowest_price", ["Cheap", "Deep", "Fresh"]),
])
def test_storefront_lists_live_discounts(db, live_logs, sort, expected):
    products = storefront_products(db, SHOP, limit=4, sort=sort)
    assert [p["productTitle"] for p in products] == expected
    assert "costPrice" not in products[0]


def test_storefront_limit_and_bad_sort(db, live_logs):
    assert len(storefront_products(db, SHOP, limit=2)) == 2
    with pytest.raises(ValidationError):
        storefront_products(db, SHOP, sort="random")
