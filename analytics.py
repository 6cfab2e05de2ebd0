"""Dashboard numbers for the admin console."""

from __future__ import annotations

import calendar
import math
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import case, func, or_, select

from database import Order, OrderItem, User, session_scope, utcnow

COUNTED_STATUSES = ("CONFIRMED", "PROCESSING", "SHIPPED", "DELIVERED")


def format_trend(current: float, previous: float) -> str:
    if previous <= 0:
        return "+100%"
    change = round((current - previous) / previous * 100)
    return f"+{change}%" if change > 0 else f"{change}%"


def get_analytics_summary(now: Optional[datetime] = None) -> dict[str, object]:
    """Last 30 days against the 30 before them."""

    moment = now or utcnow()
    current_start = moment - timedelta(days=30)
    previous_start = moment - timedelta(days=60)

    def _sales(start: datetime, end: datetime) -> tuple[float, int]:
        total, count = session.execute(
            select(func.coalesce(func.sum(Order.total), 0), func.count(Order.id)).where(
                Order.created_at >= start, Order.created_at < end, Order.status.in_(COUNTED_STATUSES)
            )
        ).one()
        return float(total or 0), int(count or 0)

    def _signups(start: datetime, end: datetime) -> int:
        return int(
            session.scalar(
                select(func.count(User.id)).where(
                    User.created_at >= start, User.created_at < end, User.is_admin.is_(False)
                )
            )
            or 0
        )

    with session_scope() as session:
        sales, orders = _sales(current_start, moment)
        previous_sales, previous_orders = _sales(previous_start, current_start)
        customers = _signups(current_start, moment)
        previous_customers = _signups(previous_start, current_start)

    return {
        "total_sales": round(sales, 2),
        "total_orders": orders,
        "new_customers": customers,
        "sales_trend": format_trend(sales, previous_sales),
        "orders_trend": format_trend(orders, previous_orders),
        "customers_trend": format_trend(customers, previous_customers),
    }


def get_monthly_revenue(year: Optional[int] = None) -> list[dict[str, object]]:
    """Twelve rows, January first, with zero for months without sales."""

    year = year or utcnow().year
    revenue = [0.0] * 12
    with session_scope() as session:
        rows = session.execute(
            select(Order.created_at, Order.total).where(
                Order.created_at >= datetime(year, 1, 1),
                Order.created_at < datetime(year + 1, 1, 1),
                Order.status.in_(COUNTED_STATUSES),
            )
        ).all()
    for created_at, total in rows:
        revenue[created_at.month - 1] += float(total or 0)
    return [{"month": calendar.month_abbr[i + 1], "revenue": round(value, 2)} for i, value in enumerate(revenue)]


def get_top_products(limit: int = 5) -> list[dict[str, object]]:
    line_revenue = func.sum(OrderItem.unit_price * OrderItem.quantity - OrderItem.discount)
    stmt = (
        select(
            OrderItem.product_id,
            func.max(OrderItem.product_name).label("name"),
            func.sum(OrderItem.quantity).label("quantity_sold"),
            line_revenue.label("revenue"),
        )
        .join(Order, OrderItem.order)
        .where(Order.status != "CANCELLED", OrderItem.product_id.is_not(None))
        .group_by(OrderItem.product_id)
        .order_by(line_revenue.desc())
        .limit(limit)
    )
    with session_scope() as session:
        return [
            {
                "product_id": row.product_id,
                "name": row.name,
                "quantity_sold": int(row.quantity_sold or 0),
                "revenue": round(float(row.revenue or 0), 2),
            }
            for row in session.execute(stmt).all()
        ]


def _average(revenue: float, orders: int) -> float:
    return round(revenue / orders, 2) if orders else 0.0


def get_channel_performance() -> list[dict[str, object]]:
    """Paid orders and revenue per traffic source, biggest earners first.

    Orders placed without any attribution count as ``DIRECT``.
    """

    source = func.coalesce(Order.source, "DIRECT")
    stmt = (
        select(
            source.label("source"),
            func.count(Order.id).label("orders"),
            func.coalesce(func.sum(Order.total), 0).label("revenue"),
        )
        .where(Order.status.in_(COUNTED_STATUSES))
        .group_by(source)
    )
    with session_scope() as session:
        rows = session.execute(stmt).all()
    channels = [
        {
            "source": row.source,
            "orders": int(row.orders),
            "revenue": round(float(row.revenue), 2),
            "average_order_value": _average(float(row.revenue), int(row.orders)),
        }
        for row in rows
    ]
    channels.sort(key=lambda channel: (-channel["revenue"], channel["source"]))
    return channels


def get_conversion_by_source() -> list[dict[str, object]]:
    """Share of each source's orders that went on to be paid, as a 1 dp percentage."""

    source = func.coalesce(Order.source, "DIRECT")
    paid = func.sum(case((Order.status.in_(COUNTED_STATUSES), 1), else_=0))
    stmt = select(source.label("source"), func.count(Order.id).label("orders"), paid.label("paid_orders")).group_by(
        source
    )
    with session_scope() as session:
        rows = session.execute(stmt).all()
    conversions = [
        {
            "source": row.source,
            "orders": int(row.orders),
            "paid_orders": int(row.paid_orders or 0),
            "conversion_rate": round(int(row.paid_orders or 0) / int(row.orders) * 100, 1),
        }
        for row in rows
    ]
    conversions.sort(key=lambda row: (-row["conversion_rate"], row["source"]))
    return conversions


def get_campaign_performance() -> list[dict[str, object]]:
    """Paid orders grouped by campaign name.

    A campaign is reported under the source and medium of its earliest order.
    """

    with session_scope() as session:
        rows = session.execute(
            select(Order.campaign, Order.source, Order.medium, Order.total, Order.discount_total)
            .where(Order.campaign.is_not(None), Order.status.in_(COUNTED_STATUSES))
            .order_by(Order.created_at.asc(), Order.id.asc())
        ).all()

    campaigns: dict[str, dict[str, object]] = {}
    for campaign, source, medium, total, discount in rows:
        entry = campaigns.setdefault(
            campaign,
            {
                "campaign": campaign,
                "source": source or "UNKNOWN",
                "medium": medium or "UNKNOWN",
                "orders": 0,
                "revenue": 0.0,
                "discount": 0.0,
            },
        )
        entry["orders"] = int(entry["orders"]) + 1
        entry["revenue"] = float(entry["revenue"]) + float(total or 0)
        entry["discount"] = float(entry["discount"]) + float(discount or 0)

    results = []
    for entry in campaigns.values():
        revenue = round(float(entry["revenue"]), 2)
        results.append(
            {
                **entry,
                "revenue": revenue,
                "discount": round(float(entry["discount"]), 2),
                "average_order_value": _average(revenue, int(entry["orders"])),
            }
        )
    results.sort(key=lambda entry: (-entry["revenue"], entry["campaign"]))
    return results


def fetch_customers(*, search: Optional[str] = None, page: int = 1, limit: int = 20) -> dict[str, object]:
    """Non-admin accounts with how often and how much they have ordered."""

    spend = (
        select(
            Order.user_id.label("user_id"),
            func.count(Order.id).label("order_count"),
            func.coalesce(func.sum(Order.total), 0).label("total_spent"),
        )
        .where(Order.status != "CANCELLED")
        .group_by(Order.user_id)
        .subquery()
    )
    stmt = (
        select(
            User.id,
            User.email,
            User.name,
            User.phone,
            User.created_at,
            func.coalesce(spend.c.order_count, 0).label("order_count"),
            func.coalesce(spend.c.total_spent, 0).label("total_spent"),
        )
        .join(spend, spend.c.user_id == User.id, isouter=True)
        .where(User.is_admin.is_(False))
    )
    if search:
        like_term = f"%{search.strip().lower()}%"
        stmt = stmt.where(or_(func.lower(User.email).like(like_term), func.lower(User.name).like(like_term)))

    page = max(1, page)
    with session_scope() as session:
        total = session.scalar(select(func.count()).select_from(stmt.subquery())) or 0
        rows = session.execute(
            stmt.order_by(User.created_at.desc(), User.id.desc()).offset((page - 1) * limit).limit(limit)
        ).mappings()
        customers = [
            {**row, "order_count": int(row["order_count"]), "total_spent": round(float(row["total_spent"]), 2)}
            for row in rows
        ]
    return {"customers": customers, "total": total, "pages": math.ceil(total / limit), "current_page": page}
