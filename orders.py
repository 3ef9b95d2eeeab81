"""Order placement and the admin status lifecycle.

Placing an order is one unit of work: stock for every line is reserved with a
conditional decrement, then the order rows are inserted. If anything in
between fails, the reservations are handed back and inserted rows removed,
so a failed checkout leaves stock and orders exactly as they were.

Emails go out only after that unit of work has finished, through whatever
``schedule`` callable the caller provides (FastAPI's BackgroundTasks in the
HTTP layer).
"""
import logging
import os
import re
import secrets
import string
import time
from functools import wraps
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from bson import ObjectId
from pymongo import DESCENDING
from pymongo.errors import ConnectionFailure, ExecutionTimeout

from database import find_by_id, utcnow
from errors import NotFound, ValidationFailed
from pricing import resolve_unit_price, shipping_fee, split_shipping
from schemas import BatchPlacementRequest, CustomerInfo, Order, OrderLine, OrderUpdate, PlacementRequest
from stock import StockLedger, StockReservation

logger = logging.getLogger(__name__)

ORDER_PLACEMENT_RETRIES = int(os.getenv("ORDER_PLACEMENT_RETRIES", "3"))
ORDERS_PER_PAGE = 15

# Dropped connections, failovers and client-side timeouts.
TRANSIENT_ERRORS = (ConnectionFailure, ExecutionTimeout)

STATUS_FLOW = ["pending", "confirmed", "processing", "shipped", "delivered"]
TERMINAL_STATUSES = {"delivered", "cancelled"}
STATUS_TIMESTAMPS = {
    "confirmed": "confirmed_at",
    "shipped": "shipped_at",
    "delivered": "delivered_at",
}

_ID_ALPHABET = string.ascii_uppercase + string.digits


def new_unique_id() -> str:
    return "ORD-" + "".join(secrets.choice(_ID_ALPHABET) for _ in range(8))


def new_batch_id(now) -> str:
    millis = int(now.timestamp() * 1000)
    return f"BATCH-{millis}-" + "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))


def retry_on_transient(max_attempts: int = ORDER_PLACEMENT_RETRIES, backoff: float = 0.05):
    """Re-run a unit of work after a transient persistence error.

    Only for work that cleans up after itself on failure; see _commit.
    """
    def deco(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            attempt = 0
            while True:
                attempt += 1
                try:
                    return fn(*args, **kwargs)
                except TRANSIENT_ERRORS as e:
                    if attempt >= max_attempts:
                        logger.error("Giving up on %s after %d attempts: %s",
                                     fn.__name__, attempt, e)
                        raise
                    logger.warning("Transient database error in %s (attempt %d/%d): %s",
                                   fn.__name__, attempt, max_attempts, e)
                    time.sleep(backoff * attempt)
        return wrapper
    return deco


def _deliver(fn: Callable, *args) -> None:
    try:
        fn(*args)
    except Exception:
        logger.exception("Notification %s failed", getattr(fn, "__name__", fn))


def _run_now(fn: Callable, *args) -> None:
    fn(*args)


# ------------------------- Lifecycle -------------------------

def can_transition(current: str, new: str) -> bool:
    """Forward moves (skips included) and cancellation of open orders."""
    if current == new:
        return True
    if current in TERMINAL_STATUSES:
        return False
    if new == "cancelled":
        return True
    return STATUS_FLOW.index(new) > STATUS_FLOW.index(current)


def transition(order: dict, new: str, now) -> dict:
    """Field changes for moving ``order`` to ``new``; raises ValidationFailed."""
    current = order.get("status", "pending")
    if not can_transition(current, new):
        raise ValidationFailed(
            {"status": [f"Cannot change order status from {current} to {new}."]}
        )
    changes = {"status": new}
    stamp = STATUS_TIMESTAMPS.get(new)
    # Set once: re-entering a state keeps the first timestamp.
    if stamp and order.get(stamp) is None:
        changes[stamp] = now
    return changes


# ------------------------- Service -------------------------

class OrderService:
    def __init__(self, db, notifier=None, schedule: Optional[Callable] = None,
                 clock: Callable = utcnow):
        self.db = db
        self.orders = db["order"]
        self.ledger = StockLedger(db)
        self.notifier = notifier
        self.schedule = schedule or _run_now
        self.clock = clock

    def _notify(self, method: str, *args) -> None:
        if self.notifier is None:
            return
        self.schedule(_deliver, getattr(self.notifier, method), *args)

    # ---- placement ----

    def _check_lines(self, lines: Sequence[OrderLine], prefix: Callable[[int], str]) -> List[Tuple[dict, bool]]:
        errors: Dict[str, List[str]] = {}
        resolved = []
        for i, line in enumerate(lines):
            key = prefix(i)
            product = find_by_id(self.db, "product", line.product_id)
            if product is None:
                errors.setdefault(key + "product_id", []).append("The selected product id is invalid.")
                resolved.append((None, False))
                continue
            tracked = self.ledger.tracks(line.product_id)
            if tracked and not line.product_size:
                errors.setdefault(key + "product_size", []).append(
                    "Product size is required for this product")
            if line.custom_logo and not product.get("allows_custom_logo"):
                errors.setdefault(key + "custom_logo", []).append(
                    "This product does not accept a custom logo.")
            resolved.append((product, tracked))
        if errors:
            raise ValidationFailed(errors)
        return resolved

    def _build(self, customer: CustomerInfo, line: OrderLine, product: dict, unit_price: float,
               fee: float, batch_id: Optional[str], now) -> dict:
        order = Order(
            unique_id=new_unique_id(),
            batch_id=batch_id,
            **customer.model_dump(include=set(CustomerInfo.model_fields)),
            product_id=line.product_id,
            product_name=product["name"],
            product_price=unit_price,
            product_size=line.product_size,
            product_color=line.product_color,
            custom_logo=line.custom_logo,
            quantity=line.quantity,
            shipping_fee=fee,
            total_amount=round(unit_price * line.quantity + fee, 2),
        )
        doc = order.model_dump()
        doc["_id"] = ObjectId()
        doc["created_at"] = now
        doc["updated_at"] = now
        return doc

    @retry_on_transient()
    def _commit(self, docs: List[dict], tracked: List[bool]) -> None:
        with StockReservation(self.ledger) as held:
            for doc, is_tracked in zip(docs, tracked):
                # Unsized products draw from the product-level stock_quantity.
                size = doc["product_size"] if is_tracked else None
                held.reserve(doc["product_id"], size, doc["quantity"], hold=str(doc["_id"]))
            try:
                self.orders.insert_many(docs)
            except Exception:
                self.orders.delete_many({"_id": {"$in": [d["_id"] for d in docs]}})
                raise

    def place_order(self, request: PlacementRequest) -> dict:
        """Place a single line item. Client price and totals are ignored."""
        product, tracked = self._check_lines([request], prefix=lambda i: "")[0]
        now = self.clock()
        unit_price = resolve_unit_price(self.db, product, now)
        fee = shipping_fee(request.customer_country)
        doc = self._build(request, request, product, unit_price, fee, None, now)

        if request.product_price is not None and round(request.product_price, 2) != unit_price:
            logger.warning("Client price %.2f overridden with %.2f for product %s",
                           request.product_price, unit_price, request.product_id)

        self._commit([doc], [tracked])
        logger.info("Order %s placed product=%s size=%s qty=%d total=%.2f",
                    doc["unique_id"], doc["product_id"], doc["product_size"],
                    doc["quantity"], doc["total_amount"])
        self._notify("order_placed", doc)
        return doc

    def place_batch(self, request: BatchPlacementRequest) -> Tuple[List[dict], float]:
        """Place every cart line under one batch id, or none of them."""
        resolved = self._check_lines(request.items, prefix=lambda i: f"items.{i}.")
        now = self.clock()
        prices = [resolve_unit_price(self.db, product, now) for product, _ in resolved]
        subtotals = [round(price * line.quantity, 2) for price, line in zip(prices, request.items)]
        shares = split_shipping(shipping_fee(request.customer_country), subtotals)
        batch_id = new_batch_id(now)

        docs = [
            self._build(request, line, product, price, share, batch_id, now)
            for line, (product, _), price, share in zip(request.items, resolved, prices, shares)
        ]
        self._commit(docs, [is_tracked for _, is_tracked in resolved])
        total = round(sum(d["total_amount"] for d in docs), 2)
        logger.info("Batch %s placed with %d orders total=%.2f", batch_id, len(docs), total)
        self._notify("batch_placed", docs, total)
        return docs, total

    # ---- admin ----

    def get_order(self, order_id: str) -> dict:
        order = find_by_id(self.db, "order", order_id)
        if order is None:
            raise NotFound("Order")
        return order

    def update_order(self, order_id: str, update: OrderUpdate) -> dict:
        order = self.get_order(order_id)
        previous = order.get("status", "pending")
        now = self.clock()
        changes = transition(order, update.status, now)
        if "notes" in update.model_fields_set:
            changes["notes"] = update.notes
        changes["updated_at"] = now

        result = self.orders.update_one({"_id": order["_id"], "status": previous}, {"$set": changes})
        if result.matched_count == 0:
            raise ValidationFailed({"status": ["Order status was changed by someone else, reload and retry."]})
        order.update(changes)

        if previous != update.status:
            logger.info("Order %s status %s -> %s", order.get("unique_id"), previous, update.status)
            self._notify("status_changed", order, previous, update.status)
        return order

    def delete_order(self, order_id: str) -> None:
        order = self.get_order(order_id)
        # Stock taken by this order is not put back.
        self.orders.delete_one({"_id": order["_id"]})
        logger.info("Order %s deleted", order.get("unique_id"))

    def list_orders(self, status: Optional[str] = None, country: Optional[str] = None,
                    search: Optional[str] = None, page: int = 1,
                    per_page: int = ORDERS_PER_PAGE) -> dict:
        """Admin listing; orders sharing a batch id collapse into one entry."""
        query: dict = {}
        if status:
            query["status"] = status
        if country:
            query["customer_country"] = country
        if search:
            pattern = {"$regex": re.escape(search), "$options": "i"}
            query["$or"] = [{field: pattern} for field in (
                "unique_id", "batch_id", "customer_full_name", "customer_email", "product_name")]

        rows = list(self.orders.find(query).sort([("created_at", DESCENDING), ("_id", DESCENDING)]))
        grouped: List[dict] = []
        batches: Dict[str, dict] = {}
        for row in rows:
            batch_id = row.get("batch_id")
            if not batch_id:
                grouped.append({"is_batch": False, **row})
                continue
            entry = batches.get(batch_id)
            if entry is None:
                entry = {
                    "is_batch": True,
                    "_id": row["_id"],
                    "batch_id": batch_id,
                    "unique_id": batch_id,
                    **{k: row.get(k) for k in (
                        "customer_full_name", "customer_email", "customer_phone",
                        "customer_address", "customer_city", "customer_country",
                        "status", "payment_method", "created_at")},
                    "total_amount": 0.0,
                    "orders": [],
                }
                batches[batch_id] = entry
                grouped.append(entry)
            entry["orders"].append(row)
            entry["total_amount"] = round(entry["total_amount"] + row["total_amount"], 2)

        page = max(page, 1)
        start = (page - 1) * per_page
        total = len(grouped)
        return {
            "orders": grouped[start:start + per_page],
            "pagination": {
                "current_page": page,
                "last_page": max((total + per_page - 1) // per_page, 1),
                "per_page": per_page,
                "total": total,
            },
        }
