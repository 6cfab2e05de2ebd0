"""SQLAlchemy-powered data layer for the Vastra storefront."""

from __future__ import annotations

import json
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterable, Iterator, Mapping, Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    and_,
    cast,
    create_engine,
    delete,
    func,
    or_,
    select,
    update,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, relationship, sessionmaker
from sqlalchemy.sql import Select

from config import ADMIN_EMAIL, ADMIN_PASSWORD, DATABASE_URL, LOW_STOCK_THRESHOLD, RECENT_VIEW_LIMIT
from security import decrypt_json, decrypt_sensitive_value, encrypt_sensitive_value, hash_password

ORDER_STATUSES = ("PENDING", "CONFIRMED", "PROCESSING", "SHIPPED", "DELIVERED", "CANCELLED")
PRODUCT_STATUSES = ("DRAFT", "ACTIVE", "ARCHIVED")
RETURN_STATUSES = ("PENDING", "APPROVED", "REJECTED", "REFUNDED")


class StoreError(ValueError):
    """A request that breaks a store rule; the message is safe to show to customers."""


# --------------------------------------------------------------------------------------
# Small coercion helpers
# --------------------------------------------------------------------------------------


def _as_int(value: object, default: int = 0) -> int:
    """Best-effort conversion to int with a fallback."""

    try:
        return int(str(value))
    except (TypeError, ValueError):
        return default


def _as_float(value: object, default: float = 0.0) -> float:
    """Best-effort conversion to float with a fallback."""

    try:
        return float(str(value))
    except (TypeError, ValueError):
        return default


def _as_bool(value: object) -> bool:
    """Read JSON booleans and form flags; "false", "0", "off", "no" and "" are false."""

    if isinstance(value, str):
        return value.strip().lower() not in {"", "0", "false", "off", "no"}
    return bool(value)


def _load_json(raw: object, default: Any) -> Any:
    if not raw:
        return default
    try:
        return json.loads(raw)
    except (TypeError, json.JSONDecodeError):
        return default


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how rows are stored."""

    return datetime.now(timezone.utc).replace(tzinfo=None)


# --------------------------------------------------------------------------------------
# SQLAlchemy setup
# --------------------------------------------------------------------------------------

_connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}
engine = create_engine(DATABASE_URL, future=True, connect_args=_connect_args)
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


class Base(DeclarativeBase):
    """Declarative base for all ORM models."""


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True)
    email: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String, nullable=False, default="")
    phone: Mapped[Optional[str]] = mapped_column(String)
    password_hash: Mapped[str] = mapped_column(String, nullable=False)
    is_admin: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    cart_items: Mapped[list["CartItem"]] = relationship(back_populates="user", cascade="all, delete-orphan")
    wishlist_items: Mapped[list["WishlistItem"]] = relationship(back_populates="user", cascade="all, delete-orphan")
    reviews: Mapped[list["ProductReview"]] = relationship(back_populates="user", cascade="all, delete-orphan")
    recent_views: Mapped[list["UserRecentProduct"]] = relationship(
        back_populates="user", cascade="all, delete-orphan"
    )
    addresses: Mapped[list["Address"]] = relationship(back_populates="user", cascade="all, delete-orphan")
    orders: Mapped[list["Order"]] = relationship(back_populates="user")


class Category(Base):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    slug: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    parent_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id", ondelete="SET NULL"))
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    products: Mapped[list["Product"]] = relationship(back_populates="category")


class Product(Base):
    __tablename__ = "products"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    slug: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    sku: Mapped[Optional[str]] = mapped_column(String, unique=True)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    price: Mapped[float] = mapped_column(Float, nullable=False)
    compare_at_price: Mapped[Optional[float]] = mapped_column(Float)
    stock: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String, nullable=False, default="DRAFT")
    featured: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    images: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id", ondelete="SET NULL"))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    category: Mapped[Optional[Category]] = relationship(back_populates="products")
    variants: Mapped[list["ProductVariant"]] = relationship(
        back_populates="product", cascade="all, delete-orphan", order_by="ProductVariant.id"
    )
    reviews: Mapped[list["ProductReview"]] = relationship(back_populates="product", cascade="all, delete-orphan")


class ProductVariant(Base):
    __tablename__ = "product_variants"

    id: Mapped[int] = mapped_column(primary_key=True)
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id", ondelete="CASCADE"), nullable=False)
    name: Mapped[str] = mapped_column(String, nullable=False)
    sku_suffix: Mapped[Optional[str]] = mapped_column(String)
    price: Mapped[Optional[float]] = mapped_column(Float)
    stock: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    product: Mapped[Product] = relationship(back_populates="variants")


class ProductReview(Base):
    __tablename__ = "product_reviews"
    __table_args__ = (UniqueConstraint("product_id", "user_id", name="uq_product_user_review"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    rating: Mapped[int] = mapped_column(Integer, nullable=False)
    comment: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    product: Mapped[Product] = relationship(back_populates="reviews")
    user: Mapped[User] = relationship(back_populates="reviews")


class UserRecentProduct(Base):
    __tablename__ = "user_recent_products"

    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id", ondelete="CASCADE"), primary_key=True)
    viewed_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    user: Mapped[User] = relationship(back_populates="recent_views")


class CartItem(Base):
    __tablename__ = "cart_items"
    __table_args__ = (UniqueConstraint("user_id", "product_id", "variant_id", name="uq_cart_line"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id", ondelete="CASCADE"), nullable=False)
    variant_id: Mapped[Optional[int]] = mapped_column(ForeignKey("product_variants.id", ondelete="CASCADE"))
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    user: Mapped[User] = relationship(back_populates="cart_items")


class WishlistItem(Base):
    __tablename__ = "wishlist_items"

    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id", ondelete="CASCADE"), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    user: Mapped[User] = relationship(back_populates="wishlist_items")


class Address(Base):
    __tablename__ = "addresses"

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    name: Mapped[str] = mapped_column(String, nullable=False)
    phone: Mapped[str] = mapped_column(Text, nullable=False)
    house_no: Mapped[str] = mapped_column(Text, nullable=False)
    street: Mapped[str] = mapped_column(Text, nullable=False)
    landmark: Mapped[Optional[str]] = mapped_column(Text)
    city: Mapped[str] = mapped_column(String, nullable=False)
    state: Mapped[str] = mapped_column(String, nullable=False)
    postal_code: Mapped[str] = mapped_column(String, nullable=False)
    country: Mapped[str] = mapped_column(String, nullable=False, default="IN")
    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    user: Mapped[User] = relationship(back_populates="addresses")


class Order(Base):
    __tablename__ = "orders"

    id: Mapped[int] = mapped_column(primary_key=True)
    order_number: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    user_id: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"))
    address_id: Mapped[Optional[int]] = mapped_column(ForeignKey("addresses.id", ondelete="SET NULL"))
    status: Mapped[str] = mapped_column(String, nullable=False, default="PENDING")

    subtotal: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    tax: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    shipping_cost: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    discount_total: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    total: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    coupon_code: Mapped[Optional[str]] = mapped_column(String)
    coupon_id: Mapped[Optional[int]] = mapped_column(ForeignKey("coupons.id", ondelete="SET NULL"))

    payment_method: Mapped[str] = mapped_column(String, nullable=False, default="COD")
    gateway_order_id: Mapped[Optional[str]] = mapped_column(String, index=True)
    payment_id: Mapped[Optional[str]] = mapped_column(String, index=True)
    payment_data: Mapped[Optional[str]] = mapped_column(Text)
    shipping_provider: Mapped[Optional[str]] = mapped_column(String)
    shipment_awb: Mapped[Optional[str]] = mapped_column(String, index=True)
    shipping_data: Mapped[Optional[str]] = mapped_column(Text)

    contact_name: Mapped[str] = mapped_column(Text, nullable=False, default="")
    contact_email: Mapped[str] = mapped_column(Text, nullable=False, default="")
    contact_phone: Mapped[str] = mapped_column(Text, nullable=False, default="")
    shipping_address: Mapped[str] = mapped_column(Text, nullable=False, default="")
    cancel_reason: Mapped[Optional[str]] = mapped_column(Text)

    source: Mapped[Optional[str]] = mapped_column(String)
    medium: Mapped[Optional[str]] = mapped_column(String)
    campaign: Mapped[Optional[str]] = mapped_column(String)
    utm_source: Mapped[Optional[str]] = mapped_column(String)
    utm_medium: Mapped[Optional[str]] = mapped_column(String)
    utm_campaign: Mapped[Optional[str]] = mapped_column(String)
    utm_content: Mapped[Optional[str]] = mapped_column(String)
    utm_term: Mapped[Optional[str]] = mapped_column(String)

    recovery_email_sent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    recovery_email_sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    user: Mapped[Optional[User]] = relationship(back_populates="orders")
    items: Mapped[list["OrderItem"]] = relationship(
        back_populates="order", cascade="all, delete-orphan", order_by="OrderItem.id"
    )
    events: Mapped[list["OrderEvent"]] = relationship(
        back_populates="order", cascade="all, delete-orphan", order_by="OrderEvent.id"
    )


class OrderItem(Base):
    __tablename__ = "order_items"

    id: Mapped[int] = mapped_column(primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id", ondelete="CASCADE"), nullable=False)
    product_id: Mapped[Optional[int]] = mapped_column(ForeignKey("products.id", ondelete="SET NULL"))
    variant_id: Mapped[Optional[int]] = mapped_column(ForeignKey("product_variants.id", ondelete="SET NULL"))
    product_name: Mapped[str] = mapped_column(String, nullable=False)
    product_sku: Mapped[Optional[str]] = mapped_column(String)
    variant_name: Mapped[Optional[str]] = mapped_column(String)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    unit_price: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    discount: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    attributes: Mapped[str] = mapped_column(Text, nullable=False, default="{}")

    order: Mapped[Order] = relationship(back_populates="items")


class OrderEvent(Base):
    __tablename__ = "order_events"

    id: Mapped[int] = mapped_column(primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id", ondelete="CASCADE"), nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False)
    note: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    order: Mapped[Order] = relationship(back_populates="events")


class ReturnRequest(Base):
    __tablename__ = "return_requests"

    id: Mapped[int] = mapped_column(primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, default="PENDING")
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    comment: Mapped[Optional[str]] = mapped_column(Text)
    refund_amount: Mapped[Optional[float]] = mapped_column(Float)
    refund_id: Mapped[Optional[str]] = mapped_column(String, index=True)
    restocked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    order: Mapped[Order] = relationship()
    items: Mapped[list["ReturnItem"]] = relationship(back_populates="request", cascade="all, delete-orphan")


class ReturnItem(Base):
    __tablename__ = "return_items"

    id: Mapped[int] = mapped_column(primary_key=True)
    return_request_id: Mapped[int] = mapped_column(
        ForeignKey("return_requests.id", ondelete="CASCADE"), nullable=False
    )
    order_item_id: Mapped[int] = mapped_column(ForeignKey("order_items.id", ondelete="CASCADE"), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)

    request: Mapped[ReturnRequest] = relationship(back_populates="items")
    order_item: Mapped[OrderItem] = relationship()


class Coupon(Base):
    __tablename__ = "coupons"

    id: Mapped[int] = mapped_column(primary_key=True)
    code: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    type: Mapped[str] = mapped_column(String, nullable=False)
    value: Mapped[float] = mapped_column(Float, nullable=False)
    min_order_value: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    max_discount: Mapped[Optional[float]] = mapped_column(Float)
    usage_limit: Mapped[Optional[int]] = mapped_column(Integer)
    usage_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    valid_from: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    valid_until: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class Offer(Base):
    __tablename__ = "offers"

    id: Mapped[int] = mapped_column(primary_key=True)
    code: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    title: Mapped[Optional[str]] = mapped_column(String)
    description: Mapped[Optional[str]] = mapped_column(Text)
    type: Mapped[str] = mapped_column(String, nullable=False, default="PERCENTAGE")
    value: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    min_amount: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    max_discount: Mapped[Optional[float]] = mapped_column(Float)
    bundle_quantity: Mapped[Optional[int]] = mapped_column(Integer)
    bundle_price: Mapped[Optional[float]] = mapped_column(Float)
    buy_quantity: Mapped[Optional[int]] = mapped_column(Integer)
    get_quantity: Mapped[Optional[int]] = mapped_column(Integer)
    get_discount: Mapped[Optional[float]] = mapped_column(Float, default=100)
    tiers: Mapped[Optional[str]] = mapped_column(Text)
    applicable_type: Mapped[str] = mapped_column(String, nullable=False, default="ALL")
    applicable_ids: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    min_price: Mapped[Optional[float]] = mapped_column(Float)
    max_price: Mapped[Optional[float]] = mapped_column(Float)
    start_date: Mapped[Optional[datetime]] = mapped_column(DateTime)
    end_date: Mapped[Optional[datetime]] = mapped_column(DateTime)
    usage_limit: Mapped[Optional[int]] = mapped_column(Integer)
    used_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    badge_text: Mapped[Optional[str]] = mapped_column(String)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class NewsletterSubscriber(Base):
    __tablename__ = "newsletter_subscribers"

    id: Mapped[int] = mapped_column(primary_key=True)
    email: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)


# --------------------------------------------------------------------------------------
# Session helper
# --------------------------------------------------------------------------------------


@contextmanager
def session_scope() -> Iterator[Session]:
    """Provide a transactional scope around a series of operations."""

    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


# --------------------------------------------------------------------------------------
# Serialization helpers
# --------------------------------------------------------------------------------------


def _serialize_user(user: Optional[User]) -> Optional[dict[str, object]]:
    if not user:
        return None
    return {
        "id": user.id,
        "email": user.email,
        "name": user.name,
        "phone": user.phone,
        "password_hash": user.password_hash,
        "is_admin": user.is_admin,
        "created_at": user.created_at,
    }


def public_user(user: Optional[Mapping[str, object]]) -> Optional[dict[str, object]]:
    """Strip credentials before a user record leaves the server."""

    if not user:
        return None
    return {key: value for key, value in user.items() if key != "password_hash"}


def _serialize_variant(variant: ProductVariant, product: Product) -> dict[str, object]:
    suffix = variant.sku_suffix or str(variant.id)
    return {
        "id": variant.id,
        "product_id": variant.product_id,
        "name": variant.name,
        "sku": f"{product.sku}-{suffix}" if product.sku else suffix,
        "price": float(variant.price if variant.price is not None else product.price),
        "stock": int(variant.stock),
    }


def _serialize_address(address: Optional[Address]) -> Optional[dict[str, object]]:
    if not address:
        return None
    return {
        "id": address.id,
        "user_id": address.user_id,
        "name": address.name,
        "phone": decrypt_sensitive_value(address.phone),
        "house_no": decrypt_sensitive_value(address.house_no),
        "street": decrypt_sensitive_value(address.street),
        "landmark": decrypt_sensitive_value(address.landmark) if address.landmark else "",
        "city": address.city,
        "state": address.state,
        "postal_code": address.postal_code,
        "country": address.country,
        "is_default": address.is_default,
    }


def _serialize_order(order: Order, *, include_items: bool = True) -> dict[str, object]:
    payload: dict[str, object] = {
        "id": order.id,
        "order_number": order.order_number,
        "user_id": order.user_id,
        "status": order.status,
        "subtotal": round(float(order.subtotal), 2),
        "tax": round(float(order.tax), 2),
        "shipping_cost": round(float(order.shipping_cost), 2),
        "discount_total": round(float(order.discount_total), 2),
        "total": round(float(order.total), 2),
        "coupon_code": order.coupon_code,
        "coupon_id": order.coupon_id,
        "payment_method": order.payment_method,
        "gateway_order_id": order.gateway_order_id,
        "payment_id": order.payment_id,
        "payment_data": _load_json(order.payment_data, {}),
        "shipping_provider": order.shipping_provider,
        "shipment_awb": order.shipment_awb,
        "shipping_data": _load_json(order.shipping_data, {}),
        "contact_name": decrypt_sensitive_value(order.contact_name),
        "contact_email": decrypt_sensitive_value(order.contact_email),
        "contact_phone": decrypt_sensitive_value(order.contact_phone),
        "shipping_address": decrypt_json(order.shipping_address),
        "cancel_reason": order.cancel_reason,
        "attribution": {
            "source": order.source,
            "medium": order.medium,
            "campaign": order.campaign,
            "utm_source": order.utm_source,
            "utm_medium": order.utm_medium,
            "utm_campaign": order.utm_campaign,
            "utm_content": order.utm_content,
            "utm_term": order.utm_term,
        },
        "recovery_email_sent": order.recovery_email_sent,
        "recovery_email_sent_at": order.recovery_email_sent_at,
        "created_at": order.created_at,
        "updated_at": order.updated_at,
    }
    if include_items:
        payload["items"] = [
            {
                "id": item.id,
                "product_id": item.product_id,
                "variant_id": item.variant_id,
                "product_name": item.product_name,
                "product_sku": item.product_sku,
                "variant_name": item.variant_name,
                "quantity": int(item.quantity),
                "unit_price": float(item.unit_price),
                "discount": float(item.discount),
                "line_total": round(float(item.unit_price) * int(item.quantity) - float(item.discount), 2),
                "attributes": _load_json(item.attributes, {}),
            }
            for item in order.items
        ]
        payload["item_count"] = sum(item.quantity for item in order.items)
        payload["events"] = [
            {"status": event.status, "note": event.note, "created_at": event.created_at} for event in order.events
        ]
    return payload


# --------------------------------------------------------------------------------------
# Initialization and seeding
# --------------------------------------------------------------------------------------


def init_db() -> None:
    """Create tables and seed starter content."""

    Base.metadata.create_all(bind=engine)
    seed_data()


def seed_data() -> None:
    """Give a fresh database a small catalogue and, when configured, an admin account."""

    with session_scope() as session:
        if ADMIN_EMAIL and ADMIN_PASSWORD:
            admin = session.execute(select(User).where(User.email == ADMIN_EMAIL)).scalar_one_or_none()
            if admin is None:
                session.add(
                    User(
                        email=ADMIN_EMAIL,
                        name="Store Admin",
                        password_hash=hash_password(ADMIN_PASSWORD),
                        is_admin=True,
                    )
                )
            elif not admin.is_admin:
                admin.is_admin = True

        # Only an empty catalogue gets the starter range.
        if session.scalar(select(func.count(Product.id))) or session.scalar(select(func.count(Category.id))):
            return

        categories = {
            "sarees": Category(name="Sarees", slug="sarees", sort_order=1),
            "kurtas": Category(name="Kurtas", slug="kurtas", sort_order=2),
            "dupattas": Category(name="Dupattas", slug="dupattas", sort_order=3),
        }
        session.add_all(categories.values())
        session.flush()

        starter_products = [
            ("Banarasi Silk Saree", "VS-SAR-001", 8499.0, 6, "sarees", True),
            ("Chanderi Cotton Saree", "VS-SAR-002", 3299.0, 12, "sarees", False),
            ("Block Print Kurta", "VS-KUR-001", 1499.0, 0, "kurtas", True),
            ("Phulkari Dupatta", "VS-DUP-001", 1199.0, 20, "dupattas", False),
        ]
        for name, sku, price, stock, category_slug, featured in starter_products:
            product = Product(
                name=name,
                slug=slugify(name),
                sku=sku,
                description=f"{name} woven by partner artisans.",
                price=price,
                stock=stock,
                status="ACTIVE",
                featured=featured,
                category_id=categories[category_slug].id,
            )
            session.add(product)
            if category_slug == "kurtas":
                session.flush()
                for size, qty in (("S", 4), ("M", 6), ("L", 3)):
                    session.add(ProductVariant(product_id=product.id, name=size, sku_suffix=size, stock=qty))
                product.stock = 13


def slugify(value: str) -> str:
    cleaned = "".join(ch.lower() if ch.isalnum() else "-" for ch in value.strip())
    return "-".join(part for part in cleaned.split("-") if part)


# --------------------------------------------------------------------------------------
# Users
# --------------------------------------------------------------------------------------


def create_user(
    email: str,
    password_hash: str,
    *,
    name: str = "",
    phone: Optional[str] = None,
    is_admin: bool = False,
) -> int:
    """Insert a new account and return its id."""

    with session_scope() as session:
        user = User(
            email=email.strip().lower(),
            password_hash=password_hash,
            name=name.strip(),
            phone=(phone or "").strip() or None,
            is_admin=is_admin,
        )
        session.add(user)
        session.flush()
        return int(user.id)


def get_user_by_email(email: str) -> Optional[Mapping[str, object]]:
    with session_scope() as session:
        user = session.execute(
            select(User).where(User.email == (email or "").strip().lower())
        ).scalar_one_or_none()
        return _serialize_user(user)


def get_user_by_id(user_id: int) -> Optional[Mapping[str, object]]:
    with session_scope() as session:
        return _serialize_user(session.get(User, user_id))


# --------------------------------------------------------------------------------------
# Categories
# --------------------------------------------------------------------------------------


def create_category(name: str, *, slug: Optional[str] = None, parent_id: Optional[int] = None, sort_order: int = 0) -> int:
    """Insert a category, rejecting duplicate slugs and unknown parents."""

    final_slug = slug or slugify(name)
    with session_scope() as session:
        if session.execute(select(Category.id).where(Category.slug == final_slug)).first():
            raise StoreError("A category with that slug already exists.")
        if parent_id is not None and session.get(Category, parent_id) is None:
            raise StoreError("Parent category not found.")
        category = Category(name=name.strip(), slug=final_slug, parent_id=parent_id, sort_order=sort_order)
        session.add(category)
        session.flush()
        return int(category.id)


def update_category(
    category_id: int,
    *,
    name: Optional[str] = None,
    parent_id: Optional[int] = None,
    sort_order: Optional[int] = None,
    is_active: Optional[bool] = None,
) -> None:
    with session_scope() as session:
        category = session.get(Category, category_id)
        if not category:
            raise StoreError("Category not found.")
        if parent_id is not None:
            if parent_id == category_id or parent_id in category_descendant_ids(category_id, session=session):
                raise StoreError("A category cannot be nested under itself.")
            category.parent_id = parent_id
        if name is not None:
            category.name = name.strip()
        if sort_order is not None:
            category.sort_order = sort_order
        if is_active is not None:
            category.is_active = is_active


def delete_category(category_id: int) -> None:
    """Delete an empty leaf category."""

    with session_scope() as session:
        category = session.get(Category, category_id)
        if not category:
            raise StoreError("Category not found.")
        if session.scalar(select(func.count(Category.id)).where(Category.parent_id == category_id)):
            raise StoreError("Move or delete the sub-categories first.")
        if session.scalar(select(func.count(Product.id)).where(Product.category_id == category_id)):
            raise StoreError("Move the products in this category first.")
        session.delete(category)


def category_descendant_ids(category_id: int, *, session: Optional[Session] = None) -> list[int]:
    """Return the category id followed by every nested child id."""

    def _walk(active: Session) -> list[int]:
        rows = active.execute(select(Category.id, Category.parent_id)).all()
        children: dict[Optional[int], list[int]] = {}
        for cid, parent in rows:
            children.setdefault(parent, []).append(int(cid))
        found = [category_id]
        queue = [category_id]
        while queue:
            current = queue.pop()
            for child in children.get(current, []):
                if child not in found:
                    found.append(child)
                    queue.append(child)
        return found

    if session is not None:
        return _walk(session)
    with session_scope() as scoped:
        return _walk(scoped)


def fetch_category_tree(*, include_inactive: bool = False) -> list[dict[str, object]]:
    """Return categories nested under their parents, ordered by sort order then name."""

    stmt = select(Category).order_by(Category.sort_order.asc(), Category.name.asc())
    if not include_inactive:
        stmt = stmt.where(Category.is_active.is_(True))
    with session_scope() as session:
        categories = session.execute(stmt).scalars().all()
        nodes = {
            c.id: {"id": c.id, "name": c.name, "slug": c.slug, "parent_id": c.parent_id, "children": []}
            for c in categories
        }
    roots: list[dict[str, object]] = []
    for node in nodes.values():
        parent = nodes.get(node["parent_id"]) if node["parent_id"] else None
        if parent:
            parent["children"].append(node)
        else:
            roots.append(node)
    return roots


# --------------------------------------------------------------------------------------
# Product helpers
# --------------------------------------------------------------------------------------


def _product_select() -> tuple[Select, object, object]:
    """Return the base select for product queries with rating aggregates."""

    rating_summary = (
        select(
            ProductReview.product_id.label("product_id"),
            func.avg(ProductReview.rating).label("avg_rating"),
            func.count(ProductReview.id).label("review_count"),
        )
        .group_by(ProductReview.product_id)
        .subquery()
    )
    avg_rating_expr = func.coalesce(rating_summary.c.avg_rating, 0)
    review_count_expr = func.coalesce(rating_summary.c.review_count, 0)

    stmt = (
        select(
            Product.id,
            Product.name,
            Product.slug,
            Product.sku,
            Product.description,
            Product.price,
            Product.compare_at_price,
            Product.stock,
            Product.status,
            Product.featured,
            Product.images,
            Product.category_id,
            Product.created_at,
            Category.name.label("category_name"),
            Category.slug.label("category_slug"),
            avg_rating_expr.label("avg_rating"),
            review_count_expr.label("review_count"),
        )
        .join(Category, Product.category, isouter=True)
        .join(rating_summary, rating_summary.c.product_id == Product.id, isouter=True)
    )
    return stmt, avg_rating_expr, review_count_expr


def _product_row(row: Mapping[str, object]) -> dict[str, object]:
    product = dict(row)
    product["images"] = _load_json(product.get("images"), [])
    product["price"] = float(product["price"])
    product["avg_rating"] = round(_as_float(product.get("avg_rating")), 1)
    product["review_count"] = _as_int(product.get("review_count"))
    return product


def fetch_products(
    *,
    search: Optional[str] = None,
    category_slug: Optional[str] = None,
    min_price: Optional[float] = None,
    max_price: Optional[float] = None,
    sort: str = "newest",
    featured: Optional[bool] = None,
    include_inactive: bool = False,
    limit: Optional[int] = None,
) -> list[dict[str, object]]:
    """Return products ordered according to the requested sort and filters."""

    stmt, avg_rating_expr, review_count_expr = _product_select()
    filters = []

    if not include_inactive:
        filters.append(Product.status == "ACTIVE")

    if search:
        like_term = f"%{search.lower()}%"
        filters.append(
            or_(
                func.lower(Product.name).like(like_term),
                func.lower(Product.description).like(like_term),
                func.lower(func.coalesce(Product.sku, "")).like(like_term),
            )
        )

    if category_slug and category_slug.lower() != "all":
        with session_scope() as session:
            category_id = session.execute(
                select(Category.id).where(Category.slug == category_slug.lower())
            ).scalar_one_or_none()
            if category_id is None:
                return []
            filters.append(Product.category_id.in_(category_descendant_ids(category_id, session=session)))

    if min_price is not None:
        filters.append(Product.price >= min_price)
    if max_price is not None:
        filters.append(Product.price <= max_price)
    if featured is not None:
        filters.append(Product.featured.is_(featured))

    if filters:
        stmt = stmt.where(and_(*filters))

    if sort == "rating_high":
        stmt = stmt.order_by(
            cast(avg_rating_expr, Float).desc(), cast(review_count_expr, Integer).desc(), Product.id.desc()
        )
    else:
        order_map = {
            "newest": [Product.created_at.desc(), Product.id.desc()],
            "price_low": [Product.price.asc(), Product.id.desc()],
            "price_high": [Product.price.desc(), Product.id.desc()],
            "name_az": [func.lower(Product.name).asc(), Product.id.desc()],
        }
        stmt = stmt.order_by(*order_map.get(sort, order_map["newest"]))

    if limit:
        stmt = stmt.limit(limit)

    with session_scope() as session:
        return [_product_row(row) for row in session.execute(stmt).mappings().all()]


def fetch_products_by_ids(product_ids: Iterable[int]) -> list[dict[str, object]]:
    """Return products for the provided ids preserving the original order."""

    ordered_ids: list[int] = []
    for product_id in product_ids:
        pid = _as_int(product_id)
        if pid > 0 and pid not in ordered_ids:
            ordered_ids.append(pid)
    if not ordered_ids:
        return []

    stmt, _, _ = _product_select()
    stmt = stmt.where(Product.id.in_(ordered_ids))

    with session_scope() as session:
        lookup = {int(row["id"]): _product_row(row) for row in session.execute(stmt).mappings().all()}
    return [lookup[pid] for pid in ordered_ids if pid in lookup]


def get_product(product_id: int | None = None, *, slug: Optional[str] = None) -> Optional[dict[str, object]]:
    """Return a single product with variants, by id or slug."""

    stmt, _, _ = _product_select()
    if slug is not None:
        stmt = stmt.where(Product.slug == slug)
    else:
        stmt = stmt.where(Product.id == product_id)

    with session_scope() as session:
        row = session.execute(stmt).mappings().first()
        if not row:
            return None
        product = _product_row(row)
        entity = session.get(Product, product["id"])
        product["variants"] = [_serialize_variant(v, entity) for v in entity.variants]
        return product


def create_product(
    name: str,
    price: float,
    *,
    description: str = "",
    sku: Optional[str] = None,
    slug: Optional[str] = None,
    stock: int = 0,
    status: str = "DRAFT",
    featured: bool = False,
    images: Optional[list[str]] = None,
    category_id: Optional[int] = None,
    compare_at_price: Optional[float] = None,
) -> int:
    """Persist a new product and return its id."""

    if price < 0:
        raise StoreError("Price cannot be negative.")
    if status not in PRODUCT_STATUSES:
        raise StoreError("Unknown product status.")

    final_slug = slug or slugify(name)
    with session_scope() as session:
        duplicate = session.execute(
            select(Product.id).where(or_(Product.slug == final_slug, and_(Product.sku.is_not(None), Product.sku == sku)))
        ).first()
        if duplicate:
            raise StoreError("A product with that slug or SKU already exists.")
        product = Product(
            name=name.strip(),
            slug=final_slug,
            sku=sku,
            description=description,
            price=price,
            compare_at_price=compare_at_price,
            stock=max(0, stock),
            status=status,
            featured=featured,
            images=json.dumps(images or []),
            category_id=category_id,
        )
        session.add(product)
        session.flush()
        return int(product.id)


def update_product(product_id: int, **fields: object) -> None:
    """Update a product with the provided fields.

    Values may arrive as form strings, so each editable field is converted to
    its column type before it is set. Absent or ``None`` fields are left alone;
    an empty string clears ``compare_at_price``, ``sku`` and ``category_id``.
    """

    changes: dict[str, object] = {}
    for key, value in fields.items():
        if value is None:
            continue
        if key == "name":
            name = str(value).strip()
            if not name:
                raise StoreError("Product name is required.")
            changes["name"] = name
        elif key == "description":
            changes["description"] = str(value)
        elif key == "price":
            price = _as_float(value, -1)
            if price < 0:
                raise StoreError("Price cannot be negative.")
            changes["price"] = price
        elif key == "compare_at_price":
            changes["compare_at_price"] = _as_float(value) if value != "" else None
        elif key == "sku":
            changes["sku"] = str(value).strip() or None
        elif key == "status":
            status = str(value).strip().upper()
            if status not in PRODUCT_STATUSES:
                raise StoreError("Unknown product status.")
            changes["status"] = status
        elif key == "featured":
            changes["featured"] = _as_bool(value)
        elif key == "category_id":
            changes["category_id"] = _as_int(value) if value != "" else None
        elif key == "images":
            if not isinstance(value, list):
                raise StoreError("Images must be a list of URLs.")
            changes["images"] = json.dumps([str(url) for url in value])

    with session_scope() as session:
        product = session.get(Product, product_id)
        if not product:
            raise StoreError("Product not found.")
        category_id = changes.get("category_id")
        if category_id is not None and not session.get(Category, category_id):
            raise StoreError("Unknown category.")
        for key, value in changes.items():
            setattr(product, key, value)


def delete_product(product_id: int) -> None:
    with session_scope() as session:
        session.execute(delete(Product).where(Product.id == product_id))


def add_variant(
    product_id: int, name: str, *, stock: int = 0, price: Optional[float] = None, sku_suffix: Optional[str] = None
) -> int:
    """Attach a variant and recompute the product's total stock."""

    with session_scope() as session:
        product = session.get(Product, product_id)
        if not product:
            raise StoreError("Product not found.")
        variant = ProductVariant(
            product_id=product_id, name=name.strip(), stock=max(0, stock), price=price, sku_suffix=sku_suffix
        )
        session.add(variant)
        session.flush()
        _recompute_product_stock(session, product_id)
        return int(variant.id)


def _recompute_product_stock(session: Session, product_id: int) -> None:
    total = session.scalar(
        select(func.coalesce(func.sum(ProductVariant.stock), 0)).where(ProductVariant.product_id == product_id)
    )
    session.execute(update(Product).where(Product.id == product_id).values(stock=int(total or 0)))


def resolve_cart_line(product_id: int, variant_id: Optional[int] = None) -> Optional[dict[str, object]]:
    """Price and stock for one purchasable cart line, or None when it cannot be bought."""

    with session_scope() as session:
        product = session.get(Product, product_id)
        if not product or product.status != "ACTIVE":
            return None
        variant = None
        if variant_id is not None:
            variant = session.get(ProductVariant, variant_id)
            if not variant or variant.product_id != product.id:
                return None
        elif product.variants:
            # Products sold in sizes must be bought through a variant.
            return None
        images = _load_json(product.images, [])
        return {
            "product_id": product.id,
            "variant_id": variant.id if variant else None,
            "name": product.name,
            "slug": product.slug,
            "sku": product.sku,
            "variant_name": variant.name if variant else None,
            "price": float(variant.price if variant and variant.price is not None else product.price),
            "stock": int(variant.stock if variant else product.stock),
            "category_id": product.category_id,
            "image": images[0] if images else None,
        }


def recommended_products(cart_product_ids: Iterable[int], limit: int = 4) -> list[dict[str, object]]:
    """Same-category picks for the cart, topped up with the newest arrivals."""

    exclude = {_as_int(pid) for pid in cart_product_ids if _as_int(pid) > 0}
    if not exclude:
        return fetch_products(limit=limit)

    with session_scope() as session:
        category_ids = [
            cid
            for cid in session.execute(
                select(Product.category_id).where(Product.id.in_(exclude)).distinct()
            ).scalars()
            if cid is not None
        ]

    picks: list[dict[str, object]] = []
    stmt, _, _ = _product_select()
    if category_ids:
        same_category = (
            stmt.where(Product.status == "ACTIVE", Product.category_id.in_(category_ids), Product.id.not_in(exclude))
            .order_by(Product.created_at.desc(), Product.id.desc())
            .limit(limit)
        )
        with session_scope() as session:
            picks = [_product_row(row) for row in session.execute(same_category).mappings().all()]

    if len(picks) < limit:
        taken = exclude | {int(p["id"]) for p in picks}
        newest = (
            stmt.where(Product.status == "ACTIVE", Product.id.not_in(taken))
            .order_by(Product.created_at.desc(), Product.id.desc())
            .limit(limit - len(picks))
        )
        with session_scope() as session:
            picks.extend(_product_row(row) for row in session.execute(newest).mappings().all())
    return picks


# --------------------------------------------------------------------------------------
# Inventory
# --------------------------------------------------------------------------------------


def fetch_inventory(*, search: Optional[str] = None, low_stock_only: bool = False) -> list[dict[str, object]]:
    """Flatten products and their variants into stock rows."""

    stmt = select(Product).order_by(Product.name.asc())
    if search:
        like_term = f"%{search.lower()}%"
        stmt = stmt.where(
            or_(func.lower(Product.name).like(like_term), func.lower(func.coalesce(Product.sku, "")).like(like_term))
        )

    rows: list[dict[str, object]] = []
    with session_scope() as session:
        for product in session.execute(stmt).scalars().all():
            if product.variants:
                for variant in product.variants:
                    serialized = _serialize_variant(variant, product)
                    rows.append(
                        {
                            "product_id": product.id,
                            "variant_id": variant.id,
                            "name": f"{product.name} ({variant.name})",
                            "sku": serialized["sku"],
                            "price": serialized["price"],
                            "stock": int(variant.stock),
                            "status": product.status,
                        }
                    )
            else:
                rows.append(
                    {
                        "product_id": product.id,
                        "variant_id": None,
                        "name": product.name,
                        "sku": product.sku,
                        "price": float(product.price),
                        "stock": int(product.stock),
                        "status": product.status,
                    }
                )
    for row in rows:
        row["low_stock"] = int(row["stock"]) <= LOW_STOCK_THRESHOLD
    if low_stock_only:
        rows = [row for row in rows if row["low_stock"]]
    return rows


def update_stock(product_id: int, quantity: int, variant_id: Optional[int] = None) -> int:
    """Set stock for a product or one of its variants; returns the product's new total."""

    if quantity < 0:
        raise StoreError("Stock cannot be negative.")
    with session_scope() as session:
        product = session.get(Product, product_id)
        if not product:
            raise StoreError("Product not found.")
        if variant_id is not None:
            variant = session.get(ProductVariant, variant_id)
            if not variant or variant.product_id != product_id:
                raise StoreError("Variant not found.")
            variant.stock = quantity
            session.flush()
            _recompute_product_stock(session, product_id)
        elif product.variants:
            raise StoreError("Set stock on the product's variants.")
        else:
            product.stock = quantity
        session.flush()
        session.refresh(product)
        return int(product.stock)


def restock_items(session: Session, lines: Iterable[tuple[Optional[int], Optional[int], int]]) -> None:
    """Return (product_id, variant_id, quantity) lines to stock inside an open transaction."""

    for product_id, variant_id, quantity in lines:
        if not product_id or quantity <= 0:
            continue
        if variant_id:
            session.execute(
                update(ProductVariant)
                .where(ProductVariant.id == variant_id)
                .values(stock=ProductVariant.stock + quantity)
            )
            session.flush()
            _recompute_product_stock(session, product_id)
        else:
            session.execute(
                update(Product).where(Product.id == product_id).values(stock=Product.stock + quantity)
            )


def reserve_stock(session: Session, product_id: int, variant_id: Optional[int], quantity: int, name: str) -> None:
    """Decrement stock with a guarded update so concurrent checkouts cannot oversell."""

    if variant_id:
        result = session.execute(
            update(ProductVariant)
            .where(ProductVariant.id == variant_id, ProductVariant.stock >= quantity)
            .values(stock=ProductVariant.stock - quantity)
        )
        if result.rowcount == 0:
            raise StoreError(f"Sold out: {name}")
        session.flush()
        _recompute_product_stock(session, product_id)
        return

    result = session.execute(
        update(Product)
        .where(Product.id == product_id, Product.stock >= quantity)
        .values(stock=Product.stock - quantity)
    )
    if result.rowcount == 0:
        raise StoreError(f"Sold out: {name}")


# --------------------------------------------------------------------------------------
# Reviews and view history
# --------------------------------------------------------------------------------------


def can_review(user_id: int, product_id: int) -> bool:
    """A customer may review a product once, after an order containing it was delivered."""

    with session_scope() as session:
        already = session.execute(
            select(ProductReview.id).where(ProductReview.product_id == product_id, ProductReview.user_id == user_id)
        ).first()
        if already:
            return False
        delivered = session.execute(
            select(OrderItem.id)
            .join(Order, OrderItem.order)
            .where(Order.user_id == user_id, Order.status == "DELIVERED", OrderItem.product_id == product_id)
            .limit(1)
        ).first()
        return delivered is not None


def create_product_review(product_id: int, user_id: int, rating: int, comment: Optional[str] = None) -> int:
    """Record a verified-purchase review."""

    if rating < 1 or rating > 5:
        raise StoreError("Rating must be between 1 and 5.")
    if not can_review(user_id, product_id):
        raise StoreError("You can review products from delivered orders, once per product.")
    with session_scope() as session:
        review = ProductReview(
            product_id=product_id, user_id=user_id, rating=rating, comment=(comment or "").strip() or None
        )
        session.add(review)
        session.flush()
        return int(review.id)


def fetch_product_reviews(product_id: int) -> list[dict[str, object]]:
    """Return reviews for the given product ordered by newest first."""

    stmt = (
        select(
            ProductReview.id,
            ProductReview.rating,
            ProductReview.comment,
            ProductReview.created_at,
            ProductReview.user_id,
            User.name.label("reviewer_name"),
        )
        .join(User, ProductReview.user)
        .where(ProductReview.product_id == product_id)
        .order_by(ProductReview.created_at.desc(), ProductReview.id.desc())
    )
    with session_scope() as session:
        return [dict(row) for row in session.execute(stmt).mappings().all()]


def get_product_rating_summary(product_id: int) -> dict[str, float]:
    """Return the average rating (one decimal) and total review count for a product."""

    stmt = select(
        func.coalesce(func.avg(ProductReview.rating), 0).label("avg_rating"),
        func.count(ProductReview.id).label("review_count"),
    ).where(ProductReview.product_id == product_id)

    with session_scope() as session:
        row = session.execute(stmt).mappings().first()
    if not row:
        return {"avg_rating": 0.0, "review_count": 0}
    return {"avg_rating": round(float(row["avg_rating"]), 1), "review_count": int(row["review_count"])}


def upsert_recent_product_view(user_id: int, product_id: int, max_items: int = RECENT_VIEW_LIMIT) -> None:
    """Record that a user viewed a product, keeping only the latest entries."""

    with session_scope() as session:
        entry = session.get(UserRecentProduct, (user_id, product_id))
        if entry:
            entry.viewed_at = utcnow()
        else:
            session.add(UserRecentProduct(user_id=user_id, product_id=product_id))
        session.flush()

        recent_entries = (
            session.execute(
                select(UserRecentProduct)
                .where(UserRecentProduct.user_id == user_id)
                .order_by(UserRecentProduct.viewed_at.desc())
            )
            .scalars()
            .all()
        )
        for stale in recent_entries[max_items:]:
            session.delete(stale)


def fetch_recent_products_for_user(user_id: int, limit: int = RECENT_VIEW_LIMIT) -> list[dict[str, object]]:
    """Return the user's most recently viewed products."""

    stmt, _, _ = _product_select()
    stmt = (
        stmt.join(UserRecentProduct, UserRecentProduct.product_id == Product.id)
        .add_columns(UserRecentProduct.viewed_at.label("viewed_at"))
        .where(UserRecentProduct.user_id == user_id, Product.status == "ACTIVE")
        .order_by(UserRecentProduct.viewed_at.desc())
        .limit(limit)
    )
    with session_scope() as session:
        return [_product_row(row) for row in session.execute(stmt).mappings().all()]


# --------------------------------------------------------------------------------------
# Server-side cart
# --------------------------------------------------------------------------------------


def fetch_user_cart(user_id: int) -> list[dict[str, object]]:
    """Return the user's persisted cart lines in insertion order."""

    with session_scope() as session:
        rows = session.execute(
            select(CartItem.product_id, CartItem.variant_id, CartItem.quantity)
            .where(CartItem.user_id == user_id)
            .order_by(CartItem.id.asc())
        ).all()
        return [
            {"product_id": int(pid), "variant_id": int(vid) if vid else None, "quantity": int(qty)}
            for pid, vid, qty in rows
        ]


def replace_user_cart(user_id: int, lines: Iterable[Mapping[str, object]]) -> None:
    """Replace all items in a user's cart with the provided lines."""

    with session_scope() as session:
        session.execute(delete(CartItem).where(CartItem.user_id == user_id))
        session.flush()
        for line in lines:
            pid = _as_int(line.get("product_id"))
            qty = _as_int(line.get("quantity"))
            if pid <= 0 or qty <= 0:
                continue
            vid = _as_int(line.get("variant_id")) or None
            session.add(CartItem(user_id=user_id, product_id=pid, variant_id=vid, quantity=qty))


def clear_user_cart(user_id: int) -> None:
    with session_scope() as session:
        session.execute(delete(CartItem).where(CartItem.user_id == user_id))


# --------------------------------------------------------------------------------------
# Wishlist
# --------------------------------------------------------------------------------------


def toggle_wishlist(user_id: int, product_id: int) -> dict[str, bool]:
    """Add the product if absent, otherwise remove it."""

    with session_scope() as session:
        entry = session.get(WishlistItem, (user_id, product_id))
        if entry:
            session.delete(entry)
            return {"added": False}
        if session.get(Product, product_id) is None:
            raise StoreError("Product not found.")
        session.add(WishlistItem(user_id=user_id, product_id=product_id))
        return {"added": True}


def fetch_wishlist_ids(user_id: int) -> list[int]:
    with session_scope() as session:
        return [
            int(pid)
            for pid in session.execute(
                select(WishlistItem.product_id)
                .where(WishlistItem.user_id == user_id)
                .order_by(WishlistItem.created_at.desc(), WishlistItem.product_id.desc())
            ).scalars()
        ]


def fetch_wishlist(user_id: int) -> list[dict[str, object]]:
    return fetch_products_by_ids(fetch_wishlist_ids(user_id))


def sync_wishlist(user_id: int, product_ids: Iterable[object]) -> list[int]:
    """Push locally saved ids to the server, then return the server's list."""

    wanted = {_as_int(pid) for pid in product_ids} - {0}
    with session_scope() as session:
        if wanted:
            existing_products = set(
                session.execute(select(Product.id).where(Product.id.in_(wanted))).scalars()
            )
            already_saved = set(
                session.execute(
                    select(WishlistItem.product_id).where(
                        WishlistItem.user_id == user_id, WishlistItem.product_id.in_(wanted)
                    )
                ).scalars()
            )
            for pid in sorted(existing_products - already_saved):
                session.add(WishlistItem(user_id=user_id, product_id=pid))
    return fetch_wishlist_ids(user_id)


# --------------------------------------------------------------------------------------
# Addresses
# --------------------------------------------------------------------------------------

ADDRESS_REQUIRED_FIELDS = ("name", "street", "house_no", "city", "state", "postal_code", "phone")


def _clean_address(data: Mapping[str, object]) -> dict[str, str]:
    cleaned = {key: str(data.get(key) or "").strip() for key in (*ADDRESS_REQUIRED_FIELDS, "landmark", "country")}
    missing = [field for field in ADDRESS_REQUIRED_FIELDS if not cleaned[field]]
    if missing:
        raise StoreError(f"Missing required address fields: {', '.join(missing)}.")
    if not (cleaned["postal_code"].isdigit() and len(cleaned["postal_code"]) == 6):
        raise StoreError("Postal code must be 6 digits.")
    cleaned["country"] = cleaned["country"] or "IN"
    return cleaned


def create_address(user_id: int, data: Mapping[str, object], *, is_default: bool = False) -> int:
    """Save an address; the first one a customer saves becomes the default."""

    cleaned = _clean_address(data)
    with session_scope() as session:
        has_any = session.execute(select(Address.id).where(Address.user_id == user_id).limit(1)).first()
        make_default = is_default or not has_any
        if make_default:
            session.execute(update(Address).where(Address.user_id == user_id).values(is_default=False))
        address = Address(
            user_id=user_id,
            name=cleaned["name"],
            phone=encrypt_sensitive_value(cleaned["phone"]),
            house_no=encrypt_sensitive_value(cleaned["house_no"]),
            street=encrypt_sensitive_value(cleaned["street"]),
            landmark=encrypt_sensitive_value(cleaned["landmark"]) if cleaned["landmark"] else None,
            city=cleaned["city"],
            state=cleaned["state"],
            postal_code=cleaned["postal_code"],
            country=cleaned["country"],
            is_default=make_default,
        )
        session.add(address)
        session.flush()
        return int(address.id)


def _owned_address(session: Session, user_id: int, address_id: int) -> Address:
    address = session.get(Address, address_id)
    if not address or address.user_id != user_id:
        raise StoreError("Address not found.")
    return address


def update_address(user_id: int, address_id: int, data: Mapping[str, object]) -> None:
    cleaned = _clean_address(data)
    with session_scope() as session:
        address = _owned_address(session, user_id, address_id)
        address.name = cleaned["name"]
        address.phone = encrypt_sensitive_value(cleaned["phone"])
        address.house_no = encrypt_sensitive_value(cleaned["house_no"])
        address.street = encrypt_sensitive_value(cleaned["street"])
        address.landmark = encrypt_sensitive_value(cleaned["landmark"]) if cleaned["landmark"] else None
        address.city = cleaned["city"]
        address.state = cleaned["state"]
        address.postal_code = cleaned["postal_code"]
        address.country = cleaned["country"]


def set_default_address(user_id: int, address_id: int) -> None:
    with session_scope() as session:
        address = _owned_address(session, user_id, address_id)
        session.execute(update(Address).where(Address.user_id == user_id).values(is_default=False))
        address.is_default = True


def delete_address(user_id: int, address_id: int) -> None:
    with session_scope() as session:
        session.delete(_owned_address(session, user_id, address_id))


def get_address(user_id: int, address_id: int) -> Optional[dict[str, object]]:
    with session_scope() as session:
        address = session.get(Address, address_id)
        if not address or address.user_id != user_id:
            return None
        return _serialize_address(address)


def fetch_addresses(user_id: int) -> list[dict[str, object]]:
    with session_scope() as session:
        addresses = session.execute(
            select(Address).where(Address.user_id == user_id).order_by(Address.is_default.desc(), Address.id.asc())
        ).scalars()
        return [_serialize_address(address) for address in addresses]


# --------------------------------------------------------------------------------------
# Orders (read side)
# --------------------------------------------------------------------------------------


def add_order_event(session: Session, order: Order, status: str, note: Optional[str] = None) -> None:
    session.add(OrderEvent(order_id=order.id, status=status, note=note))


def get_order(order_id: int) -> Optional[dict[str, object]]:
    """Fetch a single order with decrypted contact details, items and events."""

    with session_scope() as session:
        order = session.get(Order, order_id)
        return _serialize_order(order) if order else None


def get_order_for_user(user_id: int, order_id: int) -> Optional[dict[str, object]]:
    order = get_order(order_id)
    if not order or order.get("user_id") != user_id:
        return None
    return order


def fetch_orders_for_user(user_id: int) -> list[dict[str, object]]:
    """Return all orders tied to a specific user, newest first."""

    with session_scope() as session:
        orders = session.execute(
            select(Order).where(Order.user_id == user_id).order_by(Order.created_at.desc(), Order.id.desc())
        ).scalars()
        return [_serialize_order(order) for order in orders]
