"""Unit price and shipping fee resolution.

Everything here is computed server side; prices or fees posted by the
storefront are never trusted.
"""
import logging
import math
from datetime import datetime
from typing import List, Optional

from pymongo import DESCENDING

logger = logging.getLogger(__name__)

KOSOVO_POSTMAN_FEE = 2.40
REGIONAL_SHIPPING_FEE = 4.00

SHIPPING_FEES = {
    "kosovo": KOSOVO_POSTMAN_FEE,
    "albania": REGIONAL_SHIPPING_FEE,
    "macedonia": REGIONAL_SHIPPING_FEE,
}


def active_campaign(db, product_id: str, at_time: datetime) -> Optional[dict]:
    """Campaign currently overriding the product price, if any.

    Overlapping campaigns are not prevented at write time, so the most
    recently created one wins.
    """
    cursor = (
        db["campaign"]
        .find({
            "product_id": product_id,
            "is_active": True,
            "start_date": {"$lte": at_time},
            "end_date": {"$gte": at_time},
        })
        .sort([("created_at", DESCENDING), ("_id", DESCENDING)])
        .limit(1)
    )
    for campaign in cursor:
        return campaign
    return None


def resolve_unit_price(db, product: dict, at_time: datetime) -> float:
    product_id = str(product["_id"])
    campaign = active_campaign(db, product_id, at_time)
    if campaign is not None:
        logger.debug("Campaign %s prices product %s at %.2f",
                     campaign["_id"], product_id, campaign["price"])
        return round(float(campaign["price"]), 2)
    return round(float(product["price"]), 2)


def shipping_fee(country: str) -> float:
    try:
        return SHIPPING_FEES[country]
    except KeyError:
        raise ValueError(f"No shipping fee for country: {country!r}") from None


def split_shipping(fee: float, subtotals: List[float]) -> List[float]:
    """Spread one shipping fee over order lines by their share of the subtotal.

    Works in whole cents: every share is floored, then the leftover cents go
    to the lines with the largest remainders. Shares are never negative and
    always add back up to ``fee``.
    """
    if not subtotals:
        return []
    cents = int(round(fee * 100))
    total = sum(subtotals)
    if total > 0:
        exact = [cents * s / total for s in subtotals]
    else:
        exact = [cents / len(subtotals)] * len(subtotals)
    shares = [math.floor(x) for x in exact]
    leftover = cents - sum(shares)
    by_remainder = sorted(range(len(exact)), key=lambda i: exact[i] - shares[i], reverse=True)
    for i in by_remainder[:leftover]:
        shares[i] += 1
    return [s / 100 for s in shares]
