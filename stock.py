"""Per-size stock ledger.

One document per (product_id, size) in the ``size_stock`` collection. Products
without size rows sell from ``stock_quantity`` on the product document. The
only write on the hot path is a conditional ``$inc`` so two checkouts racing
for the last unit can never both win.

Every reservation made for an order carries a hold id (the order's ``_id``)
pushed onto the stock document together with the decrement. Replaying the
same reservation after a lost reply is then a no-op, and a release only
gives back units that were actually taken.
"""
import logging
from typing import Dict, List, Optional, Tuple

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

from database import to_object_id
from errors import InsufficientStock
from schemas import SizeStock

logger = logging.getLogger(__name__)

LOW_STOCK_THRESHOLD = 10


def stock_status(quantity: int) -> str:
    if quantity <= 0:
        return "out of stock"
    if quantity <= LOW_STOCK_THRESHOLD:
        return "low stock"
    return "in stock"


class StockLedger:
    def __init__(self, db):
        self.collection = db["size_stock"]
        self.products = db["product"]

    def tracks(self, product_id: str) -> bool:
        """True when the product sells by size.

        Sold-out sizes keep their row, so a product stays size-tracked until
        an admin removes every size.
        """
        return self.collection.find_one({"product_id": product_id}, {"_id": 1}) is not None

    def _target(self, product_id: str, size: Optional[str]):
        # (collection, filter, counter field) for one stock figure.
        if size is None:
            return self.products, {"_id": to_object_id(product_id)}, "stock_quantity"
        return self.collection, {"product_id": product_id, "size": size}, "quantity"

    def available(self, product_id: str, size: Optional[str]) -> int:
        collection, where, field = self._target(product_id, size)
        row = collection.find_one(where, {field: 1})
        return int(row.get(field) or 0) if row else 0

    def reserve(self, product_id: str, size: Optional[str], quantity: int,
                hold: Optional[str] = None) -> int:
        """Take ``quantity`` units of ``size`` or raise InsufficientStock.

        ``size=None`` draws from the product-level ``stock_quantity``. With a
        ``hold`` id the call is idempotent: if that hold already took its
        units, nothing is decremented again. Returns the quantity left.
        """
        if quantity < 1:
            raise ValueError("quantity must be positive")
        collection, where, field = self._target(product_id, size)
        guard = {**where, field: {"$gte": quantity}}
        change = {"$inc": {field: -quantity}}
        if hold is not None:
            guard["holds"] = {"$ne": hold}
            change["$push"] = {"holds": hold}

        row = collection.find_one_and_update(guard, change, return_document=ReturnDocument.AFTER)
        if row is None and hold is not None:
            row = collection.find_one({**where, "holds": hold}, {field: 1})
            if row is not None:
                logger.info("Hold %s already applied product=%s size=%s", hold, product_id, size)
        if row is None:
            # Reported figure only; nothing is written on this path.
            available = self.available(product_id, size)
            logger.info(
                "Stock reservation rejected product=%s size=%s requested=%d available=%d",
                product_id, size, quantity, available,
            )
            raise InsufficientStock(size, available)
        logger.debug("Reserved product=%s size=%s qty=%d left=%d",
                     product_id, size, quantity, row[field])
        return int(row[field])

    def release(self, product_id: str, size: Optional[str], quantity: int,
                hold: Optional[str] = None) -> None:
        """Undo a reserve() made by a placement that did not commit."""
        collection, where, field = self._target(product_id, size)
        change = {"$inc": {field: quantity}}
        if hold is not None:
            # Only give back what this hold actually took.
            where = {**where, "holds": hold}
            change["$pull"] = {"holds": hold}
        collection.update_one(where, change)

    def settle(self, holds: List[str]) -> None:
        """Forget hold ids once their orders are stored."""
        if not holds:
            return
        for collection in (self.collection, self.products):
            collection.update_many({"holds": {"$in": holds}}, {"$pullAll": {"holds": holds}})

    def levels(self, product_id: str) -> Dict[str, dict]:
        rows = self.collection.find({"product_id": product_id}).sort("size", 1)
        return {
            row["size"]: {
                "quantity": row["quantity"],
                "stock_status": stock_status(row["quantity"]),
                "available": row["quantity"] > 0,
            }
            for row in rows
        }

    def set_levels(self, product_id: str, size_stocks: Dict[str, int]) -> Dict[str, dict]:
        """Admin edit: absolute quantity per size.

        Sizes set to 0 stay listed as sold out; sizes left out of the map are
        removed. Rows are upserted in place so the product never looks
        unsized halfway through an edit.
        """
        for size, qty in size_stocks.items():
            row = SizeStock(product_id=product_id, size=str(size), quantity=max(int(qty), 0))
            self.collection.update_one(
                {"product_id": row.product_id, "size": row.size},
                {"$set": {"quantity": row.quantity}},
                upsert=True,
            )
        self.collection.delete_many({
            "product_id": product_id,
            "size": {"$nin": [str(size) for size in size_stocks]},
        })
        logger.info("Stock levels set product=%s sizes=%s", product_id, sorted(size_stocks))
        return self.levels(product_id)

    def drop(self, product_id: str) -> None:
        self.collection.delete_many({"product_id": product_id})


class StockReservation:
    """Holds reservations for one placement and gives them back on failure.

    Usage::

        with StockReservation(ledger) as held:
            held.reserve(product_id, "42", 2, hold=str(order_id))
            insert_order(...)

    Any exception leaving the block releases every reservation attempted
    inside it, newest first, then propagates. A hold is recorded before the
    write is sent, so a reservation whose reply was lost is still released.
    On a clean exit the hold ids are cleared from the stock documents.
    """

    def __init__(self, ledger: StockLedger):
        self.ledger = ledger
        self._held: List[Tuple[str, Optional[str], int, str]] = []

    def reserve(self, product_id: str, size: Optional[str], quantity: int,
                hold: Optional[str] = None) -> int:
        hold = hold or str(ObjectId())
        self._held.append((product_id, size, quantity, hold))
        return self.ledger.reserve(product_id, size, quantity, hold=hold)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc_type is not None:
            while self._held:
                product_id, size, quantity, hold = self._held.pop()
                try:
                    self.ledger.release(product_id, size, quantity, hold=hold)
                except Exception:
                    # Keep going so the other sizes still come back.
                    logger.exception(
                        "Failed to release stock product=%s size=%s qty=%d",
                        product_id, size, quantity,
                    )
        else:
            try:
                self.ledger.settle([hold for *_, hold in self._held])
            except PyMongoError:
                # Leftover hold ids are inert: they are unique per order.
                logger.exception("Failed to clear stock holds")
        self._held = []
        return False
