"""Public-facing Flask application for the Vastra storefront.

Every route answers with JSON. Guests keep their cart and wishlist in the
Flask session; signed-in customers keep them in the database, and the two are
merged when a guest signs in.
"""

from __future__ import annotations

import json
import re
from functools import wraps
from typing import Any, Callable, Mapping, Optional, cast
from urllib.parse import urlparse

from flask import Flask, jsonify, request, session
from werkzeug.wrappers import Response

from cart import add_line, hydrate_lines, merge_lines, normalize_lines, remove_line, set_quantity
from checkout import (
    ATTRIBUTION_COOKIE,
    ATTRIBUTION_MAX_AGE,
    attribution_from_request,
    has_utm_params,
    parse_attribution,
    place_order,
)
from config import CRON_SECRET, SHIPROCKET_WEBHOOK_TOKEN, STORE_SECRET_KEY
from database import (
    StoreError,
    _as_float,
    _as_int,
    can_review,
    create_address,
    create_product_review,
    create_user,
    delete_address,
    fetch_addresses,
    fetch_category_tree,
    fetch_orders_for_user,
    fetch_product_reviews,
    fetch_products,
    fetch_products_by_ids,
    fetch_recent_products_for_user,
    fetch_user_cart,
    fetch_wishlist,
    fetch_wishlist_ids,
    get_address,
    get_order,
    get_product,
    get_product_rating_summary,
    get_user_by_email,
    get_user_by_id,
    init_db,
    public_user,
    recommended_products,
    replace_user_cart,
    set_default_address,
    sync_wishlist,
    toggle_wishlist,
    update_address,
    upsert_recent_product_view,
)
from marketing import cart_offer_preview, get_public_coupons, subscribe, unsubscribe, validate_coupon
from orders import cancel_order as cancel_customer_order
from orders import process_abandoned_carts
from payments import capture_payment, create_payment_order, fail_payment, verify_payment, verify_webhook_signature
from returns import create_return_request, fetch_returns_for_user, mark_refund_processed
from security import hash_password, secrets_match, validate_password, verify_password
from shipping import check_pincode, handle_carrier_update

# Ensure the database and seed data exist before serving.
init_db()

app = Flask(__name__)
app.config["SECRET_KEY"] = STORE_SECRET_KEY
EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
CART_COUPON_KEY = "cart_coupon"


# --------------------------------------------------------------------------------------
# Request helpers
# --------------------------------------------------------------------------------------


def _payload() -> dict[str, Any]:
    """JSON body when present, otherwise submitted form fields."""
    data = request.get_json(silent=True)
    if isinstance(data, dict):
        return data
    return request.form.to_dict()


def _error(message: str, status: int = 400) -> tuple[Response, int]:
    return jsonify({"success": False, "error": message}), status


def _is_valid_email(value: str) -> bool:
    """Basic validation to ensure the string resembles an email address."""
    if not value:
        return False
    return bool(EMAIL_PATTERN.match(value))


def _current_user() -> Mapping[str, object] | None:
    """Return the authenticated user dict, clearing stale sessions if needed."""
    user_id = session.get("user_id")
    if user_id is None:
        return None
    try:
        user_id_int = int(user_id)
    except (TypeError, ValueError):
        session.pop("user_id", None)
        return None

    user = get_user_by_id(user_id_int)
    if not user:
        session.pop("user_id", None)
        return None
    return user


def _current_user_id() -> int | None:
    """Return the authenticated user id if present."""
    user = _current_user()
    if not user:
        return None
    return int(cast(int, user["id"]))


def login_required(view: Callable[..., Any]) -> Callable[..., Any]:
    """Answer 401 unless a customer is signed in."""

    @wraps(view)
    def wrapped(*args: Any, **kwargs: Any):
        if not _current_user_id():
            return _error("Please sign in to continue.", 401)
        return view(*args, **kwargs)

    return wrapped


def _owned_order(order_id: int) -> tuple[Optional[dict[str, object]], Optional[tuple[Response, int]]]:
    """The order when it belongs to the signed-in customer, else an error response."""
    order = get_order(order_id)
    if not order:
        return None, _error("Order not found", 404)
    if int(cast(int, order["user_id"])) != _current_user_id():
        return None, _error("You do not have access to this order.", 403)
    return order, None


# --------------------------------------------------------------------------------------
# Cart and wishlist state
# --------------------------------------------------------------------------------------


def _get_cart() -> list[dict[str, object]]:
    """Return the active cart lines."""
    user_id = _current_user_id()
    if user_id:
        return fetch_user_cart(user_id)
    return normalize_lines(session.get("cart"))


def _store_cart(lines: list[dict[str, object]]) -> None:
    """Persist the provided cart lines."""
    user_id = _current_user_id()
    if user_id:
        replace_user_cart(user_id, lines)
        session["cart"] = []
    else:
        session["cart"] = lines
    session.modified = True


def _cart_snapshot(lines: Optional[list[dict[str, object]]] = None) -> dict[str, object]:
    """Return hydrated cart items with pricing, offers and the applied coupon."""
    if lines is None:
        lines = _get_cart()
    items = hydrate_lines(lines)

    coupon_code = session.get(CART_COUPON_KEY)
    coupon_error = None
    pricing: dict[str, object] = {}
    if coupon_code and items:
        result = validate_coupon(coupon_code, items)
        if result["valid"]:
            pricing = result
        else:
            coupon_error = result["error"]
            session.pop(CART_COUPON_KEY, None)
            coupon_code = None

    subtotal = round(sum(float(item["line_total"]) for item in items), 2)
    offers = cart_offer_preview(items)
    return {
        "items": items,
        "item_count": sum(int(item["quantity"]) for item in items),
        "subtotal": subtotal,
        "coupon": coupon_code if pricing else None,
        "coupon_error": coupon_error,
        "discount_total": pricing.get("discount_total", 0.0),
        "free_shipping": pricing.get("free_shipping", False),
        "total": pricing.get("final_total", subtotal),
        "best_offer": offers["best_offer"],
        "applicable_offers": offers["applicable_offers"],
        "recommendations": recommended_products([int(item["product_id"]) for item in items]),
    }


def _session_wishlist() -> list[int]:
    return [pid for pid in (_as_int(value) for value in session.get("wishlist") or []) if pid > 0]


def _wishlist_ids() -> list[int]:
    """Saved product ids: the account list when signed in, else the guest list."""
    user_id = _current_user_id()
    return fetch_wishlist_ids(user_id) if user_id else _session_wishlist()


def _sync_after_login(user_id: int) -> dict[str, object]:
    """Fold the guest cart and wishlist into the account, then drop the session copies."""
    merged = merge_lines(fetch_user_cart(user_id), normalize_lines(session.get("cart")))
    replace_user_cart(user_id, merged)
    wishlist = sync_wishlist(user_id, _session_wishlist())
    session["cart"] = []
    session["wishlist"] = wishlist
    session.modified = True
    return {"cart": merged, "wishlist": wishlist}


def _line_from_payload(data: Mapping[str, Any]) -> tuple[int, Optional[int], int]:
    product_id = _as_int(data.get("product_id"))
    variant_id = _as_int(data.get("variant_id")) or None
    quantity = _as_int(data.get("quantity"), 1)
    return product_id, variant_id, quantity


# --------------------------------------------------------------------------------------
# Attribution
# --------------------------------------------------------------------------------------


def _external_referrer() -> Optional[str]:
    referrer = request.referrer
    if not referrer:
        return None
    if (urlparse(referrer).hostname or "").lower() == (request.host.split(":")[0] or "").lower():
        return None
    return referrer


@app.after_request
def remember_attribution(response: Response) -> Response:
    """Record where a visitor came from; UTM tags replace an existing record."""
    if request.method != "GET" or request.path.startswith("/api/"):
        return response
    if not has_utm_params(request.args) and request.cookies.get(ATTRIBUTION_COOKIE):
        return response
    attribution = attribution_from_request(request.args, _external_referrer())
    response.set_cookie(
        ATTRIBUTION_COOKIE,
        json.dumps(attribution),
        max_age=ATTRIBUTION_MAX_AGE,
        samesite="Lax",
        httponly=True,
    )
    return response


# --------------------------------------------------------------------------------------
# Catalogue
# --------------------------------------------------------------------------------------


@app.route("/")
def index():
    """Featured products and the category tree for the home page."""
    return jsonify(
        {
            "featured": fetch_products(featured=True, limit=8),
            "new_arrivals": fetch_products(sort="newest", limit=8),
            "categories": fetch_category_tree(),
        }
    )


@app.route("/categories")
def categories():
    return jsonify({"categories": fetch_category_tree()})


@app.route("/products")
def products():
    """List active products with search, category, price and sort filters."""
    min_price = request.args.get("min_price")
    max_price = request.args.get("max_price")
    items = fetch_products(
        search=(request.args.get("q") or "").strip() or None,
        category_slug=request.args.get("category") or None,
        min_price=_as_float(min_price) if min_price else None,
        max_price=_as_float(max_price) if max_price else None,
        sort=request.args.get("sort") or None,
    )
    return jsonify({"products": items, "count": len(items)})


def _product_payload(product: dict[str, object]) -> dict[str, object]:
    product_id = int(cast(int, product["id"]))
    user_id = _current_user_id()
    if user_id:
        upsert_recent_product_view(user_id, product_id)
    return {
        "product": product,
        "reviews": fetch_product_reviews(product_id),
        "rating": get_product_rating_summary(product_id),
        "can_review": bool(user_id and can_review(user_id, product_id)),
        "related": recommended_products([product_id]),
    }


@app.route("/products/<int:product_id>")
def product_detail(product_id: int):
    product = get_product(product_id)
    if not product or product.get("status") != "ACTIVE":
        return _error("Product not found", 404)
    return jsonify(_product_payload(product))


@app.route("/products/by-slug/<slug>")
def product_by_slug(slug: str):
    product = get_product(slug=slug)
    if not product or product.get("status") != "ACTIVE":
        return _error("Product not found", 404)
    return jsonify(_product_payload(product))


@app.post("/products/<int:product_id>/reviews")
@login_required
def add_review(product_id: int):
    """Verified-purchase review: the customer must have received the product."""
    data = _payload()
    try:
        review_id = create_product_review(
            product_id,
            cast(int, _current_user_id()),
            _as_int(data.get("rating")),
            (data.get("comment") or "").strip() or None,
        )
    except StoreError as exc:
        return _error(str(exc))
    return jsonify({"success": True, "review_id": review_id, "rating": get_product_rating_summary(product_id)}), 201


@app.route("/history")
@login_required
def recently_viewed():
    return jsonify({"products": fetch_recent_products_for_user(cast(int, _current_user_id()))})


@app.route("/pincode/<pincode>")
def pincode_lookup(pincode: str):
    try:
        return jsonify(check_pincode(pincode))
    except StoreError as exc:
        return _error(str(exc))


# --------------------------------------------------------------------------------------
# Accounts
# --------------------------------------------------------------------------------------


@app.post("/signup")
def signup():
    """Register a new customer account and sign it in."""
    if _current_user_id():
        return _error("You're already signed in.")

    data = _payload()
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""
    password_confirm = data.get("password_confirm") or password
    name = (data.get("name") or "").strip()
    phone = (data.get("phone") or "").strip() or None

    if not email or not password:
        return _error("Email and password are required.")
    if not _is_valid_email(email):
        return _error("Please enter a valid email address.")
    if password != password_confirm:
        return _error("Passwords do not match.")
    if get_user_by_email(email):
        return _error("An account with that email already exists.")

    password_error = validate_password(email, password)
    if password_error:
        return _error(password_error)

    new_user_id = create_user(email, hash_password(password), name=name, phone=phone)
    session["user_id"] = new_user_id
    synced = _sync_after_login(new_user_id)
    app.logger.info("New customer account %s", new_user_id)
    return jsonify({"success": True, "user": public_user(get_user_by_id(new_user_id)), **synced}), 201


@app.post("/login")
def login():
    """Authenticate an existing customer and merge the guest cart into theirs."""
    data = _payload()
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""

    user = get_user_by_email(email) if email else None
    if not user or not verify_password(password, cast(str, user["password_hash"])):
        return _error("Invalid email or password.", 401)

    user_id = int(cast(int, user["id"]))
    session["user_id"] = user_id
    synced = _sync_after_login(user_id)
    return jsonify({"success": True, "user": public_user(user), **synced})


@app.post("/logout")
def logout():
    """Sign the customer out; the saved cart stays on the account."""
    for key in ("user_id", "cart", "wishlist", CART_COUPON_KEY):
        session.pop(key, None)
    session.modified = True
    return jsonify({"success": True})


@app.route("/me")
def me():
    user = _current_user()
    return jsonify(
        {
            "user": public_user(user),
            "cart_count": sum(int(line["quantity"]) for line in _get_cart()),
            "wishlist": _wishlist_ids(),
        }
    )


# --------------------------------------------------------------------------------------
# Cart
# --------------------------------------------------------------------------------------


@app.route("/cart")
def cart():
    return jsonify(_cart_snapshot())


@app.post("/cart/add")
def add_to_cart():
    product_id, variant_id, quantity = _line_from_payload(_payload())
    try:
        lines, warning = add_line(_get_cart(), product_id, variant_id, quantity)
    except StoreError as exc:
        return _error(str(exc))
    _store_cart(lines)
    return jsonify({"success": True, "warning": warning, "cart": _cart_snapshot(lines)})


@app.post("/cart/update")
def update_cart():
    """Adjust the quantity for a line already in the cart."""
    product_id, variant_id, quantity = _line_from_payload(_payload())
    try:
        lines, warning = set_quantity(_get_cart(), product_id, variant_id, quantity)
    except StoreError as exc:
        return _error(str(exc))
    _store_cart(lines)
    return jsonify({"success": True, "warning": warning, "cart": _cart_snapshot(lines)})


@app.post("/cart/remove")
def remove_from_cart():
    product_id, variant_id, _ = _line_from_payload(_payload())
    lines = remove_line(_get_cart(), product_id, variant_id)
    _store_cart(lines)
    return jsonify({"success": True, "cart": _cart_snapshot(lines)})


@app.post("/cart/clear")
def clear_cart():
    """Empty the cart entirely."""
    _store_cart([])
    session.pop(CART_COUPON_KEY, None)
    return jsonify({"success": True, "cart": _cart_snapshot([])})


@app.post("/cart/sync")
@login_required
def sync_cart():
    """Merge cart lines kept on the device into the saved cart."""
    user_id = cast(int, _current_user_id())
    local_lines = normalize_lines(_payload().get("items"))
    merged = merge_lines(fetch_user_cart(user_id), local_lines)
    replace_user_cart(user_id, merged)
    return jsonify({"success": True, "cart": _cart_snapshot(merged)})


@app.post("/cart/coupon")
def apply_coupon():
    code = (_payload().get("code") or "").strip().upper()
    items = hydrate_lines(_get_cart())
    if not items:
        return _error("Your cart is empty.")
    result = validate_coupon(code, items)
    if not result["valid"]:
        return _error(str(result["error"]))
    session[CART_COUPON_KEY] = result["code"]
    return jsonify({"success": True, "cart": _cart_snapshot()})


@app.delete("/cart/coupon")
def remove_coupon():
    session.pop(CART_COUPON_KEY, None)
    return jsonify({"success": True, "cart": _cart_snapshot()})


@app.post("/cart/restore/<int:order_id>")
@login_required
def restore_cart(order_id: int):
    """Load an abandoned checkout back into the cart, as linked from the recovery email."""
    order, failure = _owned_order(order_id)
    if failure:
        return failure
    order = cast(dict, order)
    if order["status"] != "PENDING":
        return _error("This order can no longer be restored.")

    lines = merge_lines(
        [],
        [
            {"product_id": item["product_id"], "variant_id": item["variant_id"], "quantity": item["quantity"]}
            for item in order["items"]
            if item["product_id"]
        ],
    )
    _store_cart(lines)
    if order.get("coupon_code"):
        session[CART_COUPON_KEY] = order["coupon_code"]
    return jsonify({"success": True, "cart": _cart_snapshot(lines)})


@app.route("/offers/cart")
def offers_for_cart():
    return jsonify(cart_offer_preview(hydrate_lines(_get_cart())))


@app.route("/coupons")
def public_coupons():
    return jsonify({"coupons": get_public_coupons()})


# --------------------------------------------------------------------------------------
# Wishlist
# --------------------------------------------------------------------------------------


@app.route("/wishlist")
def wishlist():
    user_id = _current_user_id()
    if user_id:
        return jsonify({"products": fetch_wishlist(user_id)})
    return jsonify({"products": fetch_products_by_ids(_session_wishlist())})


@app.post("/wishlist/toggle/<int:product_id>")
def wishlist_toggle(product_id: int):
    user_id = _current_user_id()
    if user_id:
        try:
            result = toggle_wishlist(user_id, product_id)
        except StoreError as exc:
            return _error(str(exc), 404)
        return jsonify({"success": True, **result})

    if not get_product(product_id):
        return _error("Product not found.", 404)
    saved = _session_wishlist()
    if product_id in saved:
        saved.remove(product_id)
        added = False
    else:
        saved.insert(0, product_id)
        added = True
    session["wishlist"] = saved
    session.modified = True
    return jsonify({"success": True, "added": added})


@app.post("/wishlist/sync")
@login_required
def wishlist_sync():
    product_ids = _payload().get("product_ids") or []
    if not isinstance(product_ids, list):
        return _error("product_ids must be a list.")
    wishlist_ids = sync_wishlist(cast(int, _current_user_id()), product_ids)
    session["wishlist"] = wishlist_ids
    return jsonify({"success": True, "wishlist": wishlist_ids})


# --------------------------------------------------------------------------------------
# Addresses
# --------------------------------------------------------------------------------------


@app.route("/addresses")
@login_required
def addresses():
    return jsonify({"addresses": fetch_addresses(cast(int, _current_user_id()))})


@app.post("/addresses")
@login_required
def add_address():
    data = _payload()
    user_id = cast(int, _current_user_id())
    try:
        address_id = create_address(user_id, data, is_default=bool(data.get("is_default")))
    except StoreError as exc:
        return _error(str(exc))
    return jsonify({"success": True, "address": get_address(user_id, address_id)}), 201


@app.put("/addresses/<int:address_id>")
@login_required
def edit_address(address_id: int):
    user_id = cast(int, _current_user_id())
    if not get_address(user_id, address_id):
        return _error("Address not found.", 404)
    try:
        update_address(user_id, address_id, _payload())
    except StoreError as exc:
        return _error(str(exc))
    return jsonify({"success": True, "address": get_address(user_id, address_id)})


@app.delete("/addresses/<int:address_id>")
@login_required
def remove_address(address_id: int):
    user_id = cast(int, _current_user_id())
    if not get_address(user_id, address_id):
        return _error("Address not found.", 404)
    delete_address(user_id, address_id)
    return jsonify({"success": True})


@app.post("/addresses/<int:address_id>/default")
@login_required
def make_default_address(address_id: int):
    user_id = cast(int, _current_user_id())
    if not get_address(user_id, address_id):
        return _error("Address not found.", 404)
    set_default_address(user_id, address_id)
    return jsonify({"success": True, "addresses": fetch_addresses(user_id)})


# --------------------------------------------------------------------------------------
# Checkout and orders
# --------------------------------------------------------------------------------------


@app.post("/checkout")
@login_required
def checkout():
    """Turn the saved cart into an order."""
    data = _payload()
    user_id = cast(int, _current_user_id())
    lines = _get_cart()
    if not lines:
        return _error("Your cart is empty.")

    try:
        order = place_order(
            user_id,
            lines,
            _as_int(data.get("address_id")),
            payment_method=data.get("payment_method") or "COD",
            coupon_code=session.get(CART_COUPON_KEY),
            attribution=parse_attribution(request.cookies.get(ATTRIBUTION_COOKIE)),
        )
    except StoreError as exc:
        return _error(str(exc))
    except Exception:
        app.logger.exception("Checkout failed for user %s", user_id)
        return _error("We couldn't place your order. Please try again.", 500)

    session.pop(CART_COUPON_KEY, None)
    session["cart"] = []
    session.modified = True
    return jsonify({"success": True, "order": order}), 201


@app.route("/orders")
@login_required
def orders_history():
    return jsonify({"orders": fetch_orders_for_user(cast(int, _current_user_id()))})


@app.route("/orders/<int:order_id>")
@login_required
def order_detail(order_id: int):
    order, failure = _owned_order(order_id)
    if failure:
        return failure
    return jsonify({"order": order})


@app.post("/orders/<int:order_id>/cancel")
@login_required
def cancel_order(order_id: int):
    """Allow a customer to cancel an order that has not shipped yet."""
    _, failure = _owned_order(order_id)
    if failure:
        return failure
    reason = (_payload().get("reason") or "").strip() or None
    try:
        order = cancel_customer_order(order_id, reason, customer_id=_current_user_id())
    except StoreError as exc:
        return _error(str(exc))
    return jsonify({"success": True, "order": order})


@app.post("/orders/<int:order_id>/returns")
@login_required
def request_return(order_id: int):
    _, failure = _owned_order(order_id)
    if failure:
        return failure
    data = _payload()
    items = data.get("items") or []
    if not isinstance(items, list):
        return _error("items must be a list.")
    try:
        return_request = create_return_request(
            cast(int, _current_user_id()),
            order_id,
            items,
            data.get("reason") or "",
            (data.get("comment") or "").strip() or None,
        )
    except StoreError as exc:
        return _error(str(exc))
    return jsonify({"success": True, "return": return_request}), 201


@app.route("/returns")
@login_required
def my_returns():
    return jsonify({"returns": fetch_returns_for_user(cast(int, _current_user_id()))})


# --------------------------------------------------------------------------------------
# Online payments
# --------------------------------------------------------------------------------------


@app.post("/payments/razorpay/order")
@login_required
def razorpay_order():
    order_id = _as_int(_payload().get("order_id"))
    _, failure = _owned_order(order_id)
    if failure:
        return failure
    checkout_payload, error = create_payment_order(cast(int, _current_user_id()), order_id)
    if error:
        return _error(error)
    return jsonify({"success": True, **cast(dict, checkout_payload)})


@app.post("/payments/razorpay/verify")
@login_required
def razorpay_verify():
    data = _payload()
    try:
        order = verify_payment(
            cast(int, _current_user_id()),
            _as_int(data.get("order_id")),
            data.get("razorpay_order_id") or "",
            data.get("razorpay_payment_id") or "",
            data.get("razorpay_signature") or "",
        )
    except StoreError as exc:
        return _error(str(exc))
    return jsonify({"success": True, "order": order})


# --------------------------------------------------------------------------------------
# Newsletter
# --------------------------------------------------------------------------------------


@app.post("/newsletter/subscribe")
def newsletter_subscribe():
    try:
        result = subscribe(_payload().get("email") or "")
    except StoreError as exc:
        return _error(str(exc))
    return jsonify({"success": True, "message": result["message"]}), 201 if result["created"] else 200


@app.route("/newsletter/unsubscribe", methods=["GET", "POST"])
def newsletter_unsubscribe():
    email = request.args.get("email") or _payload().get("email") or ""
    if not unsubscribe(email):
        return _error("Subscriber not found", 404)
    return jsonify({"success": True, "message": "You have been unsubscribed."})


# --------------------------------------------------------------------------------------
# Webhooks and scheduled jobs
# --------------------------------------------------------------------------------------


def _handle_razorpay_event(event: Mapping[str, Any]) -> None:
    name = event.get("event")
    payload = event.get("payload") or {}
    if name in ("payment.captured", "payment.failed"):
        payment = (payload.get("payment") or {}).get("entity") or {}
        if name == "payment.captured":
            capture_payment(payment.get("order_id") or "", payment.get("id") or "")
        else:
            fail_payment(payment.get("order_id") or "", payment.get("error_description"))
    elif name in ("refund.processed", "refund.failed"):
        refund = (payload.get("refund") or {}).get("entity") or {}
        if name == "refund.processed":
            mark_refund_processed(refund.get("payment_id") or "", refund.get("id"), refund.get("amount"))
        else:
            app.logger.error("Refund %s failed for payment %s", refund.get("id"), refund.get("payment_id"))
    else:
        app.logger.info("Ignoring Razorpay event %s", name)


@app.post("/api/webhooks/razorpay")
def razorpay_webhook():
    body = request.get_data(as_text=True)
    if not verify_webhook_signature(body, request.headers.get("X-Razorpay-Signature")):
        app.logger.warning("Rejected Razorpay webhook with a bad signature")
        return _error("Invalid signature", 401)
    try:
        event = json.loads(body)
    except json.JSONDecodeError:
        return _error("Invalid payload")
    try:
        _handle_razorpay_event(event)
    except Exception:
        app.logger.exception("Razorpay webhook %s failed", event.get("event"))
        return _error("Webhook processing failed", 500)
    return jsonify({"received": True})


@app.post("/api/webhooks/shiprocket")
def shiprocket_webhook():
    """Carrier tracking updates, matched to orders by AWB."""
    if SHIPROCKET_WEBHOOK_TOKEN and not secrets_match(SHIPROCKET_WEBHOOK_TOKEN, request.headers.get("x-api-key")):
        return _error("Unauthorized", 401)
    data = request.get_json(silent=True) or {}
    awb = str(data.get("awb") or "").strip()
    if not awb:
        return _error("Missing AWB")
    try:
        result = handle_carrier_update(awb, data.get("current_status"))
    except Exception:
        app.logger.exception("Shiprocket webhook for AWB %s failed", awb)
        return _error("Webhook processing failed", 500)
    if result is None:
        return jsonify({"success": True, "message": "Order not found"})
    return jsonify({"success": True, **result})


@app.route("/api/cron/abandoned-cart", methods=["GET", "POST"])
def abandoned_cart_job():
    if CRON_SECRET:
        header = request.headers.get("Authorization") or ""
        if not secrets_match(f"Bearer {CRON_SECRET}", header):
            return _error("Unauthorized", 401)
    result = process_abandoned_carts()
    app.logger.info("Abandoned cart run: %s", result)
    return jsonify({"success": True, **result})


if __name__ == "__main__":
    app.run(debug=True)
