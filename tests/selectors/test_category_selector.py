"""Tests for CategorySelector statistics and analytics."""

from datetime import UTC, datetime
from decimal import Decimal

import pytest

from smefin_kernel.selectors.category_selector import CategorySelector


@pytest.fixture
def selector(session):
    return CategorySelector(session)


@pytest.fixture
def ledger(make_category, make_transaction, clock):
    """Fuel (3 tx, one deleted), Food (1 tx), Transport parent of Fuel, 2 uncategorized."""
    transport = make_category("Transport")
    fuel = make_category("Fuel", parent=transport)
    food = make_category("Food")
    make_category("Salary", type="INCOME")

    make_transaction("a", "100.50", category=fuel,
                     transaction_date=datetime(2024, 2, 1, tzinfo=UTC))
    make_transaction("b", "49.50", category=fuel,
                     transaction_date=datetime(2024, 2, 20, tzinfo=UTC))
    make_transaction("c", "999", category=fuel, deleted_at=clock.now())
    make_transaction("d", "20", category=food)
    make_transaction("e", "5")
    make_transaction("f", "7")
    return transport, fuel, food


class TestCategoriesWithStats:

    def test_usage_figures(self, selector, org_id, ledger):
        transport, fuel, food = ledger

        stats = {s.category.name: s for s in selector.categories_with_stats(org_id)}

        assert list(stats) == ["Food", "Fuel", "Salary", "Transport"]
        assert stats["Fuel"].transaction_count == 2
        assert stats["Fuel"].total_amount == Decimal("150")
        assert stats["Fuel"].last_used == datetime(2024, 2, 20, tzinfo=UTC)
        assert stats["Transport"].children_count == 1
        assert stats["Transport"].transaction_count == 0
        assert stats["Transport"].total_amount == Decimal("0")
        assert stats["Transport"].last_used is None


class TestAnalytics:

    def test_totals_and_top_categories(self, selector, org_id, ledger):
        _, fuel, food = ledger

        analytics = selector.analytics(org_id)

        assert analytics.total_categories == 4
        assert analytics.categories_by_type["EXPENSE"] == 3
        assert analytics.categories_by_type["INCOME"] == 1
        assert analytics.categories_by_type["ASSET"] == 0
        assert analytics.categorized_transactions == 3
        assert analytics.uncategorized_transactions == 2
        assert [(t.category_id, t.transaction_count, t.percentage)
                for t in analytics.top_categories] == [
            (fuel.id, 2, 40),
            (food.id, 1, 20),
        ]

    def test_empty_organization(self, selector, org_id):
        analytics = selector.analytics(org_id)
        assert analytics.total_categories == 0
        assert analytics.top_categories == ()
        assert selector.uncategorized_count(org_id) == 0
