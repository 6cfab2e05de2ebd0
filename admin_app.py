"""Admin-only Flask application for running the store: orders, catalogue, marketing and reports."""

from __future__ import annotations

from functools import wraps
from typing import Any, Optional, cast

from flask import Flask, jsonify, request, session

from analytics import (
    fetch_customers,
    get_analytics_summary,
    get_campaign_performance,
    get_channel_performance,
    get_conversion_by_source,
    get_monthly_revenue,
    get_top_products,
)
from config import ADMIN_SECRET_KEY
from database import (
    StoreError,
    _as_bool,
    _as_float,
    _as_int,
    add_variant,
    create_category,
    create_product,
    delete_category,
    delete_product,
    fetch_category_tree,
    fetch_inventory,
    fetch_products,
    get_order,
    get_product,
    get_user_by_email,
    get_user_by_id,
    init_db,
    public_user,
    update_category,
    update_product,
    update_stock,
)
from marketing import (
    create_coupon,
    create_offer,
    delete_coupon,
    delete_offer,
    delete_subscriber,
    fetch_coupons,
    fetch_offers,
    fetch_subscribers,
    get_coupon_stats,
    toggle_coupon,
    toggle_offer,
    toggle_subscriber,
    update_coupon,
    update_offer,
)
from orders import (
    cancel_order,
    get_abandoned_cart_stats,
    get_abandoned_checkouts,
    get_order_stats,
    get_orders,
    process_abandoned_carts,
    send_recovery_email,
    update_order_status,
)
from returns import fetch_returns, update_return_status
from security import verify_password
from shipping import deliver_order, ship_order

# Ensure tables exist before the admin panel starts serving requests.
init_db()

admin_app = Flask(__name__)
admin_app.config["SECRET_KEY"] = ADMIN_SECRET_KEY
admin_app.config["SESSION_COOKIE_NAME"] = "vastra-admin-session"


def _current_admin() -> Optional[dict[str, object]]:
    user_id = session.get("admin_user_id")
    if user_id is None:
        return None
    try:
        user_id_int = int(user_id)
    except (TypeError, ValueError):
        session.pop("admin_user_id", None)
        return None
    user = get_user_by_id(user_id_int)
    if not user or not user.get("is_admin"):
        session.pop("admin_user_id", None)
        return None
    return dict(user)


def admin_required(view):
    @wraps(view)
    def wrapped(*args, **kwargs):
        if not _current_admin():
            return jsonify({"success": False, "error": "Sign in as an admin to access the console."}), 401
        return view(*args, **kwargs)

    return wrapped


def _payload() -> dict[str, Any]:
    data = request.get_json(silent=True)
    if isinstance(data, dict):
        return data
    return request.form.to_dict()


def _error(message: str, status: int = 400):
    return jsonify({"success": False, "error": message}), status


def _not_found_or_bad_request(exc: StoreError):
    """Lookups that miss answer 404; every other rule violation is a 400."""
    message = str(exc)
    return _error(message, 404 if "not found" in message.lower() else 400)


def _page() -> int:
    return max(1, _as_int(request.args.get("page"), 1))


# --------------------------------------------------------------------------------------
# Session
# --------------------------------------------------------------------------------------


@admin_app.post("/login")
def login():
    """Admin-only login tied to the shared user table."""
    data = _payload()
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""

    user = get_user_by_email(email) if email else None
    if not user or not user.get("is_admin"):
        return _error("Invalid admin credentials.", 401)
    if not verify_password(password, cast(str, user["password_hash"])):
        return _error("Invalid admin credentials.", 401)

    session["admin_user_id"] = int(cast(int, user["id"]))
    admin_app.logger.info("Admin %s signed in", user["email"])
    return jsonify({"success": True, "user": public_user(user)})


@admin_app.post("/logout")
def logout():
    session.pop("admin_user_id", None)
    return jsonify({"success": True})


@admin_app.route("/")
@admin_required
def dashboard():
    """Headline numbers for the console landing page."""
    return jsonify(
        {
            "admin": public_user(_current_admin()),
            "summary": get_analytics_summary(),
            "order_stats": get_order_stats(),
            "low_stock": fetch_inventory(low_stock_only=True),
        }
    )


# --------------------------------------------------------------------------------------
# Orders
# --------------------------------------------------------------------------------------


@admin_app.route("/orders")
@admin_required
def orders():
    try:
        result = get_orders(
            status=request.args.get("status"),
            search=request.args.get("search"),
            date_from=request.args.get("date_from"),
            date_to=request.args.get("date_to"),
            page=_page(),
            limit=max(1, _as_int(request.args.get("limit"), 20)),
        )
    except StoreError as exc:
        return _error(str(exc))
    return jsonify(result)


@admin_app.route("/orders/stats")
@admin_required
def order_stats():
    return jsonify(get_order_stats())


@admin_app.route("/orders/<int:order_id>")
@admin_required
def order_detail(order_id: int):
    order = get_order(order_id)
    if not order:
        return _error("Order not found", 404)
    return jsonify({"order": order})


@admin_app.post("/orders/<int:order_id>/status")
@admin_required
def order_status(order_id: int):
    data = _payload()
    try:
        order = update_order_status(order_id, data.get("status") or "", data.get("note"))
    except StoreError as exc:
        return _not_found_or_bad_request(exc)
    return jsonify({"success": True, "order": order})


@admin_app.post("/orders/<int:order_id>/cancel")
@admin_required
def order_cancel(order_id: int):
    try:
        order = cancel_order(order_id, (_payload().get("reason") or "").strip() or None)
    except StoreError as exc:
        return _not_found_or_bad_request(exc)
    return jsonify({"success": True, "order": order})


@admin_app.post("/orders/<int:order_id>/ship")
@admin_required
def order_ship(order_id: int):
    """Book the shipment with the carrier, or simulate one when it is not configured."""
    try:
        order = ship_order(order_id)
    except StoreError as exc:
        return _not_found_or_bad_request(exc)
    return jsonify({"success": True, "order": order})


@admin_app.post("/orders/<int:order_id>/deliver")
@admin_required
def order_deliver(order_id: int):
    try:
        order = deliver_order(order_id)
    except StoreError as exc:
        return _not_found_or_bad_request(exc)
    return jsonify({"success": True, "order": order})


# --------------------------------------------------------------------------------------
# Abandoned checkouts
# --------------------------------------------------------------------------------------


@admin_app.route("/abandoned-carts")
@admin_required
def abandoned_carts():
    return jsonify({"orders": get_abandoned_checkouts(), "stats": get_abandoned_cart_stats()})


@admin_app.route("/abandoned-carts/stats")
@admin_required
def abandoned_cart_stats():
    return jsonify(get_abandoned_cart_stats())


@admin_app.post("/abandoned-carts/<int:order_id>/send")
@admin_required
def abandoned_cart_send(order_id: int):
    try:
        result = send_recovery_email(order_id)
    except StoreError as exc:
        return _not_found_or_bad_request(exc)
    if not result["sent"]:
        return _error(f"Recovery email failed: {result['error']}", 502)
    return jsonify({"success": True})


@admin_app.post("/abandoned-carts/process")
@admin_required
def abandoned_cart_process():
    result = process_abandoned_carts(limit=max(1, _as_int(_payload().get("limit"), 50)))
    return jsonify({"success": True, **result})


# --------------------------------------------------------------------------------------
# Returns
# --------------------------------------------------------------------------------------


@admin_app.route("/returns")
@admin_required
def returns():
    return jsonify({"returns": fetch_returns(status=request.args.get("status"))})


@admin_app.post("/returns/<int:request_id>/status")
@admin_required
def return_status(request_id: int):
    data = _payload()
    refund_amount = data.get("refund_amount")
    try:
        updated = update_return_status(
            request_id,
            data.get("status") or "",
            (data.get("comment") or "").strip() or None,
            _as_float(refund_amount) if refund_amount not in (None, "") else None,
        )
    except StoreError as exc:
        return _not_found_or_bad_request(exc)
    return jsonify({"success": True, "return": updated})


# --------------------------------------------------------------------------------------
# Coupons and offers
# --------------------------------------------------------------------------------------


@admin_app.route("/coupons")
@admin_required
def coupons():
    return jsonify({"coupons": fetch_coupons()})


@admin_app.post("/coupons")
@admin_required
def coupon_create():
    try:
        coupon_id = create_coupon(_payload())
    except StoreError as exc:
        return _error(str(exc))
    return jsonify({"success": True, "id": coupon_id}), 201


@admin_app.put("/coupons/<int:coupon_id>")
@admin_required
def coupon_update(coupon_id: int):
    try:
        update_coupon(coupon_id, _payload())
    except StoreError as exc:
        return _not_found_or_bad_request(exc)
    return jsonify({"success": True})


@admin_app.delete("/coupons/<int:coupon_id>")
@admin_required
def coupon_delete(coupon_id: int):
    try:
        delete_coupon(coupon_id)
    except StoreError as exc:
        return _not_found_or_bad_request(exc)
    return jsonify({"success": True})


@admin_app.post("/coupons/<int:coupon_id>/toggle")
@admin_required
def coupon_toggle(coupon_id: int):
    try:
        is_active = toggle_coupon(coupon_id)
    except StoreError as exc:
        return _not_found_or_bad_request(exc)
    return jsonify({"success": True, "is_active": is_active})


@admin_app.route("/coupons/<code>/stats")
@admin_required
def coupon_stats(code: str):
    return jsonify(get_coupon_stats(code))


@admin_app.route("/offers")
@admin_required
def offers():
    return jsonify({"offers": fetch_offers()})


@admin_app.post("/offers")
@admin_required
def offer_create():
    try:
        offer_id = create_offer(_payload())
    except StoreError as exc:
        return _error(str(exc))
    return jsonify({"success": True, "id": offer_id}), 201


@admin_app.put("/offers/<int:offer_id>")
@admin_required
def offer_update(offer_id: int):
    try:
        update_offer(offer_id, _payload())
    except StoreError as exc:
        return _not_found_or_bad_request(exc)
    return jsonify({"success": True})


@admin_app.delete("/offers/<int:offer_id>")
@admin_required
def offer_delete(offer_id: int):
    try:
        delete_offer(offer_id)
    except StoreError as exc:
        return _not_found_or_bad_request(exc)
    return jsonify({"success": True})


@admin_app.post("/offers/<int:offer_id>/toggle")
@admin_required
def offer_toggle(offer_id: int):
    try:
        is_active = toggle_offer(offer_id)
    except StoreError as exc:
        return _not_found_or_bad_request(exc)
    return jsonify({"success": True, "is_active": is_active})


# --------------------------------------------------------------------------------------
# Catalogue and inventory
# --------------------------------------------------------------------------------------


@admin_app.route("/products")
@admin_required
def products():
    return jsonify(
        {
            "products": fetch_products(
                search=request.args.get("search") or None,
                category_slug=request.args.get("category") or None,
                include_inactive=True,
            )
        }
    )


@admin_app.post("/products")
@admin_required
def product_create():
    data = _payload()
    name = (data.get("name") or "").strip()
    if not name:
        return _error("Product name is required.")
    category_id = data.get("category_id")
    compare_at = data.get("compare_at_price")
    try:
        product_id = create_product(
            name,
            _as_float(data.get("price"), -1),
            description=data.get("description") or "",
            sku=(data.get("sku") or "").strip() or None,
            slug=(data.get("slug") or "").strip() or None,
            stock=_as_int(data.get("stock")),
            status=(data.get("status") or "DRAFT").upper(),
            featured=_as_bool(data.get("featured")),
            images=data.get("images") if isinstance(data.get("images"), list) else None,
            category_id=_as_int(category_id) if category_id not in (None, "") else None,
            compare_at_price=_as_float(compare_at) if compare_at not in (None, "") else None,
        )
    except StoreError as exc:
        return _error(str(exc))
    admin_app.logger.info("Product %s created", product_id)
    return jsonify({"success": True, "product": get_product(product_id)}), 201


@admin_app.route("/products/<int:product_id>")
@admin_required
def product_detail(product_id: int):
    product = get_product(product_id)
    if not product:
        return _error("Product not found.", 404)
    return jsonify({"product": product})


@admin_app.put("/products/<int:product_id>")
@admin_required
def product_update(product_id: int):
    data = _payload()
    if "status" in data and data["status"]:
        data = {**data, "status": str(data["status"]).upper()}
    try:
        update_product(product_id, **data)
    except StoreError as exc:
        return _not_found_or_bad_request(exc)
    return jsonify({"success": True, "product": get_product(product_id)})


@admin_app.delete("/products/<int:product_id>")
@admin_required
def product_delete(product_id: int):
    if not get_product(product_id):
        return _error("Product not found.", 404)
    delete_product(product_id)
    return jsonify({"success": True})


@admin_app.post("/products/<int:product_id>/variants")
@admin_required
def variant_create(product_id: int):
    data = _payload()
    name = (data.get("name") or "").strip()
    if not name:
        return _error("Variant name is required.")
    price = data.get("price")
    try:
        variant_id = add_variant(
            product_id,
            name,
            stock=_as_int(data.get("stock")),
            price=_as_float(price) if price not in (None, "") else None,
            sku_suffix=(data.get("sku_suffix") or "").strip() or None,
        )
    except StoreError as exc:
        return _not_found_or_bad_request(exc)
    return jsonify({"success": True, "variant_id": variant_id, "product": get_product(product_id)}), 201


@admin_app.route("/inventory")
@admin_required
def inventory():
    return jsonify(
        {
            "items": fetch_inventory(
                search=request.args.get("search") or None,
                low_stock_only=request.args.get("low_stock") in ("1", "true", "yes"),
            )
        }
    )


@admin_app.post("/inventory/stock")
@admin_required
def inventory_update():
    data = _payload()
    if data.get("quantity") in (None, ""):
        return _error("Quantity is required.")
    variant_id = data.get("variant_id")
    try:
        stock = update_stock(
            _as_int(data.get("product_id")),
            _as_int(data.get("quantity")),
            _as_int(variant_id) if variant_id not in (None, "") else None,
        )
    except StoreError as exc:
        return _not_found_or_bad_request(exc)
    return jsonify({"success": True, "stock": stock})


@admin_app.route("/categories")
@admin_required
def categories():
    return jsonify({"categories": fetch_category_tree(include_inactive=True)})


@admin_app.post("/categories")
@admin_required
def category_create():
    data = _payload()
    name = (data.get("name") or "").strip()
    if not name:
        return _error("Category name is required.")
    parent_id = data.get("parent_id")
    try:
        category_id = create_category(
            name,
            slug=(data.get("slug") or "").strip() or None,
            parent_id=_as_int(parent_id) if parent_id not in (None, "") else None,
            sort_order=_as_int(data.get("sort_order")),
        )
    except StoreError as exc:
        return _error(str(exc))
    return jsonify({"success": True, "id": category_id}), 201


@admin_app.put("/categories/<int:category_id>")
@admin_required
def category_update(category_id: int):
    data = _payload()
    parent_id = data.get("parent_id")
    try:
        update_category(
            category_id,
            name=data.get("name"),
            parent_id=_as_int(parent_id) if parent_id not in (None, "") else None,
            sort_order=_as_int(data["sort_order"]) if "sort_order" in data else None,
            is_active=bool(data["is_active"]) if "is_active" in data else None,
        )
    except StoreError as exc:
        return _not_found_or_bad_request(exc)
    return jsonify({"success": True})


@admin_app.delete("/categories/<int:category_id>")
@admin_required
def category_delete(category_id: int):
    try:
        delete_category(category_id)
    except StoreError as exc:
        return _not_found_or_bad_request(exc)
    return jsonify({"success": True})


# --------------------------------------------------------------------------------------
# Reports, customers and newsletter
# --------------------------------------------------------------------------------------


@admin_app.route("/analytics/summary")
@admin_required
def analytics_summary():
    return jsonify(get_analytics_summary())


@admin_app.route("/analytics/monthly")
@admin_required
def analytics_monthly():
    year = request.args.get("year")
    return jsonify({"months": get_monthly_revenue(_as_int(year) if year else None)})


@admin_app.route("/analytics/top-products")
@admin_required
def analytics_top_products():
    return jsonify({"products": get_top_products(max(1, _as_int(request.args.get("limit"), 5)))})


@admin_app.route("/analytics/channels")
@admin_required
def analytics_channels():
    return jsonify({"channels": get_channel_performance(), "conversion": get_conversion_by_source()})


@admin_app.route("/analytics/campaigns")
@admin_required
def analytics_campaigns():
    return jsonify({"campaigns": get_campaign_performance()})


@admin_app.route("/customers")
@admin_required
def customers():
    return jsonify(fetch_customers(search=request.args.get("search"), page=_page()))


@admin_app.route("/newsletter")
@admin_required
def newsletter():
    return jsonify(
        fetch_subscribers(search=request.args.get("search"), status=request.args.get("status") or "all", page=_page())
    )


@admin_app.post("/newsletter/<int:subscriber_id>/toggle")
@admin_required
def newsletter_toggle(subscriber_id: int):
    try:
        is_active = toggle_subscriber(subscriber_id)
    except StoreError as exc:
        return _not_found_or_bad_request(exc)
    return jsonify({"success": True, "is_active": is_active})


@admin_app.delete("/newsletter/<int:subscriber_id>")
@admin_required
def newsletter_delete(subscriber_id: int):
    try:
        delete_subscriber(subscriber_id)
    except StoreError as exc:
        return _not_found_or_bad_request(exc)
    return jsonify({"success": True})


if __name__ == "__main__":
    admin_app.run(debug=True, port=5001)
