"""Dashboard summaries, monthly revenue, best sellers and the customer list."""

from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from analytics import (
    fetch_customers,
    format_trend,
    get_analytics_summary,
    get_campaign_performance,
    get_channel_performance,
    get_conversion_by_source,
    get_monthly_revenue,
    get_top_products,
)
from database import User, session_scope, utcnow
from orders import cancel_order


@pytest.mark.parametrize(
    "current,previous,expected",
    [(150, 100, "+50%"), (50, 100, "-50%"), (100, 100, "0%"), (10, 0, "+100%")],
)
def test_format_trend(current, previous, expected):
    assert format_trend(current, previous) == expected


def _backdate_user(user_id: int, days: int) -> None:
    with session_scope() as session:
        session.get(User, user_id).created_at = utcnow() - timedelta(days=days)


class TestSummary:
    def test_compares_last_thirty_days_with_the_thirty_before(self, make_user, make_product, order_for, set_order_fields):
        recent = make_user("recent@example.com")
        veteran = make_user("veteran@example.com")
        _backdate_user(veteran, 45)
        make_user("admin@example.com", is_admin=True)

        order_for(recent, product_id=make_product(price=3000))
        old = order_for(veteran, product_id=make_product(price=2000))
        set_order_fields(old["id"], created_at=utcnow() - timedelta(days=40))
        order_for(recent, payment_method="ONLINE")

        summary = get_analytics_summary()
        assert summary["total_sales"] == 3000
        assert summary["total_orders"] == 1
        assert summary["new_customers"] == 1
        assert summary["sales_trend"] == "+50%"
        assert summary["orders_trend"] == "0%"
        assert summary["customers_trend"] == "0%"


class TestMonthlyRevenue:
    def test_twelve_months_with_gaps(self, make_user, make_product, order_for, set_order_fields):
        user_id = make_user()
        march = order_for(user_id, product_id=make_product(price=1200))
        october = order_for(user_id, product_id=make_product(price=800))
        cancelled = order_for(user_id, product_id=make_product(price=5000))
        set_order_fields(march["id"], created_at=datetime(2023, 3, 14, 12, 0))
        set_order_fields(october["id"], created_at=datetime(2023, 10, 2, 9, 30))
        set_order_fields(cancelled["id"], created_at=datetime(2023, 10, 5, 9, 30))
        cancel_order(cancelled["id"])

        months = get_monthly_revenue(2023)
        assert len(months) == 12
        assert months[0] == {"month": "Jan", "revenue": 0}
        assert months[2]["revenue"] == 1200
        assert months[9] == {"month": "Oct", "revenue": 800}
        assert get_monthly_revenue(2022)[2]["revenue"] == 0


class TestTopProducts:
    def test_ranked_by_revenue_net_of_discounts(self, make_user, make_product, order_for):
        user_id = make_user()
        saree = make_product(name="Kanjivaram Saree", price=6000, stock=5)
        kurta = make_product(name="Cotton Kurta", price=900, stock=20)
        order_for(user_id, product_id=kurta, quantity=4)
        order_for(user_id, product_id=saree, quantity=1)
        dropped = order_for(user_id, product_id=kurta, quantity=10)
        cancel_order(dropped["id"])

        top = get_top_products(limit=5)
        assert [p["name"] for p in top] == ["Kanjivaram Saree", "Cotton Kurta"]
        assert top[1] == {"product_id": kurta, "name": "Cotton Kurta", "quantity_sold": 4, "revenue": 3600}
        assert len(get_top_products(limit=1)) == 1


INSTAGRAM = {"source": "instagram", "medium": "social"}


class TestAttributionReports:
    @pytest.fixture
    def attributed(self, make_user, make_product, order_for):
        user_id = make_user()
        order_for(user_id, product_id=make_product(price=3000), attribution={**INSTAGRAM, "campaign": "diwali-drop"})
        order_for(user_id, product_id=make_product(price=1000), attribution=INSTAGRAM)
        order_for(
            user_id,
            product_id=make_product(price=1500),
            attribution={"source": "whatsapp", "medium": "broadcast", "campaign": "diwali-drop"},
        )
        order_for(user_id, product_id=make_product(price=500), payment_method="ONLINE", attribution={"source": "google"})
        order_for(user_id, product_id=make_product(price=800))
        dropped = order_for(user_id, product_id=make_product(price=9000), attribution={**INSTAGRAM, "campaign": "sale"})
        cancel_order(dropped["id"])
        return user_id

    def test_channel_performance_counts_paid_orders(self, attributed):
        assert get_channel_performance() == [
            {"source": "instagram", "orders": 2, "revenue": 4000, "average_order_value": 2000},
            {"source": "whatsapp", "orders": 1, "revenue": 1500, "average_order_value": 1500},
            {"source": "DIRECT", "orders": 1, "revenue": 800, "average_order_value": 800},
        ]

    def test_conversion_by_source(self, attributed):
        rates = {row["source"]: row for row in get_conversion_by_source()}
        assert rates["instagram"]["orders"] == 3
        assert rates["instagram"]["conversion_rate"] == 66.7
        assert rates["google"] == {"source": "google", "orders": 1, "paid_orders": 0, "conversion_rate": 0.0}
        assert rates["DIRECT"]["conversion_rate"] == 100.0

    def test_campaigns_keep_their_first_source(self, attributed):
        assert get_campaign_performance() == [
            {
                "campaign": "diwali-drop",
                "source": "instagram",
                "medium": "social",
                "orders": 2,
                "revenue": 4500,
                "discount": 0,
                "average_order_value": 2250,
            }
        ]

    def test_empty_store(self):
        assert get_channel_performance() == []
        assert get_conversion_by_source() == []
        assert get_campaign_performance() == []


class TestCustomers:
    def test_lists_shoppers_with_spend(self, make_user, make_product, order_for):
        buyer = make_user("buyer@example.com", name="Ravi Kumar")
        make_user("browser@example.com", name="Meera Iyer")
        make_user("admin@example.com", is_admin=True)
        order_for(buyer, product_id=make_product(price=1500))
        order_for(buyer, product_id=make_product(price=500))

        result = fetch_customers()
        assert result["total"] == 2
        by_email = {c["email"]: c for c in result["customers"]}
        assert by_email["buyer@example.com"]["order_count"] == 2
        assert by_email["buyer@example.com"]["total_spent"] == 2000
        assert by_email["browser@example.com"]["order_count"] == 0

    def test_search_by_name(self, make_user):
        make_user("buyer@example.com", name="Ravi Kumar")
        make_user("browser@example.com", name="Meera Iyer")
        assert [c["email"] for c in fetch_customers(search="meera")["customers"]] == ["browser@example.com"]
