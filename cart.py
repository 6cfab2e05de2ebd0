"""Cart line bookkeeping shared by the session (guest) cart and the saved cart.

Lines are plain dicts ``{"product_id", "variant_id", "quantity"}`` so they can
live in the Flask session as easily as in the ``cart_items`` table.
"""

from __future__ import annotations

from typing import Iterable, Mapping, Optional

from database import StoreError, _as_int, resolve_cart_line

LineKey = tuple[int, Optional[int]]


def line_key(line: Mapping[str, object]) -> LineKey:
    return _as_int(line.get("product_id")), (_as_int(line.get("variant_id")) or None)


def normalize_lines(raw_lines: object) -> list[dict[str, object]]:
    """Drop malformed entries and fold duplicate lines together, keeping first-seen order."""

    if not isinstance(raw_lines, list):
        return []
    merged: dict[LineKey, dict[str, object]] = {}
    for raw in raw_lines:
        if not isinstance(raw, Mapping):
            continue
        key = line_key(raw)
        quantity = _as_int(raw.get("quantity"), 1)
        if key[0] <= 0 or quantity <= 0:
            continue
        if key in merged:
            merged[key]["quantity"] = int(merged[key]["quantity"]) + quantity
        else:
            merged[key] = {"product_id": key[0], "variant_id": key[1], "quantity": quantity}
    return list(merged.values())


def add_line(
    lines: list[dict[str, object]], product_id: int, variant_id: Optional[int], quantity: int = 1
) -> tuple[list[dict[str, object]], Optional[str]]:
    """Add units of a product, capped at what is in stock.

    Returns the new lines and a warning when the request had to be trimmed.
    """

    if quantity < 1:
        raise StoreError("Quantity must be at least 1.")
    info = resolve_cart_line(product_id, variant_id)
    if info is None:
        raise StoreError("This product is not available.")
    stock = int(info["stock"])
    if stock <= 0:
        raise StoreError(f"{info['name']} is out of stock.")

    updated = [dict(line) for line in lines]
    key = (product_id, variant_id)
    existing = next((line for line in updated if line_key(line) == key), None)
    current = int(existing["quantity"]) if existing else 0
    if current >= stock:
        return updated, f"You already have all {stock} available units of {info['name']} in your cart."

    wanted = current + quantity
    warning = None
    if wanted > stock:
        wanted = stock
        warning = f"Only {stock} unit{'s' if stock != 1 else ''} of {info['name']} are in stock."

    if existing:
        existing["quantity"] = wanted
    else:
        updated.append({"product_id": product_id, "variant_id": variant_id, "quantity": wanted})
    return updated, warning


def set_quantity(
    lines: list[dict[str, object]], product_id: int, variant_id: Optional[int], quantity: int
) -> tuple[list[dict[str, object]], Optional[str]]:
    """Set a line's quantity; anything below one removes the line."""

    key = (product_id, variant_id)
    if not any(line_key(line) == key for line in lines):
        raise StoreError("That product is not in your cart.")
    if quantity < 1:
        return remove_line(lines, product_id, variant_id), None

    info = resolve_cart_line(product_id, variant_id)
    if info is None or int(info["stock"]) <= 0:
        return remove_line(lines, product_id, variant_id), "That item is no longer available and was removed."

    stock = int(info["stock"])
    warning = None
    if quantity > stock:
        quantity = stock
        warning = f"Only {stock} unit{'s' if stock != 1 else ''} of {info['name']} are available."
    updated = [dict(line) for line in lines]
    for line in updated:
        if line_key(line) == key:
            line["quantity"] = quantity
    return updated, warning


def remove_line(lines: Iterable[Mapping[str, object]], product_id: int, variant_id: Optional[int]) -> list[dict[str, object]]:
    return [dict(line) for line in lines if line_key(line) != (product_id, variant_id)]


def merge_lines(
    saved: Iterable[Mapping[str, object]], local: Iterable[Mapping[str, object]]
) -> list[dict[str, object]]:
    """Additive merge of a guest cart into a saved cart, clamped to stock.

    Lines for products that can no longer be bought are dropped.
    """

    combined = normalize_lines([*map(dict, saved), *map(dict, local)])
    merged: list[dict[str, object]] = []
    for line in combined:
        product_id, variant_id = line_key(line)
        info = resolve_cart_line(product_id, variant_id)
        if info is None or int(info["stock"]) <= 0:
            continue
        merged.append({**line, "quantity": min(int(line["quantity"]), int(info["stock"]))})
    return merged


def hydrate_lines(lines: Iterable[Mapping[str, object]]) -> list[dict[str, object]]:
    """Attach name, price and stock to each line for pricing and display."""

    hydrated: list[dict[str, object]] = []
    for line in lines:
        product_id, variant_id = line_key(line)
        info = resolve_cart_line(product_id, variant_id)
        if info is None:
            continue
        quantity = int(line["quantity"])
        hydrated.append(
            {
                **info,
                "quantity": quantity,
                "line_total": round(float(info["price"]) * quantity, 2),
                "in_stock": int(info["stock"]) >= quantity,
            }
        )
    return hydrated
