"""
Bid ledger: raddiwala proposals against open pickup requests.

A raddiwala may hold at most one bid per request (unique index on
pickup_request_id + raddiwala_id). Bids are only placed on open requests in
the raddiwala's own city and only while their monthly quota allows it.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

import notifications
import pickups
import quota
import registry
from database import create_document, get_by_id, get_documents, oid, to_str_id, utcnow
from errors import (
    AccessDeniedError,
    DuplicateBidError,
    GeoMismatchError,
    InvalidStateError,
    ValidationError,
    validated,
)
from schemas import WEIGHT_MIDPOINTS, Bid, BidUpdate

logger = logging.getLogger(__name__)


def estimate_amount(weight_category: str, item_rates: List[Dict[str, Any]]) -> float:
    """Rough payout: weight band midpoint times the first quoted rate."""
    weight = WEIGHT_MIDPOINTS.get(weight_category, 1)
    rate = item_rates[0]["price_per_kg"] if item_rates else 0
    return weight * rate


def get_bid(db: Database, bid_id: str) -> Dict[str, Any]:
    return get_by_id("bid", bid_id, database=db, label="Bid")


def _owned_bid(db: Database, raddiwala_id: str, bid_id: str) -> Dict[str, Any]:
    bid = get_bid(db, bid_id)
    if bid["raddiwala_id"] != raddiwala_id:
        raise AccessDeniedError("Access denied")
    return bid


def bid_view(db: Database, bid: Dict[str, Any]) -> Dict[str, Any]:
    view = to_str_id(bid)
    view["raddiwala"] = registry.public_view(db, "raddiwala", bid["raddiwala_id"])
    return view


def place(db: Database, raddiwala_id: str, data: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
    if not data.get("pickup_request_id") or not data.get("item_rates") or not data.get("proposed_pickup_time"):
        raise ValidationError("Pickup request ID, item rates, and proposed pickup time are required")

    raddiwala = quota.check_quota(db, raddiwala_id, now)

    request = pickups.get_request(db, data["pickup_request_id"])
    if request["status"] != "open":
        raise InvalidStateError("Pickup request is no longer open")

    shop = registry.get_address(db, raddiwala["shop_address_id"])
    request_address = registry.get_address(db, request["address_id"])
    if shop["city"] != request_address["city"]:
        raise GeoMismatchError(
            "Can only bid on requests in your city",
            {"your_city": shop["city"], "request_city": request_address["city"]},
        )

    request_id = str(request["_id"])
    if db["bid"].find_one({"pickup_request_id": request_id, "raddiwala_id": raddiwala_id}):
        raise DuplicateBidError("You have already placed a bid for this request")

    bid = validated(Bid, {
        "pickup_request_id": request_id,
        "raddiwala_id": raddiwala_id,
        "item_rates": data["item_rates"],
        "proposed_pickup_time": str(data["proposed_pickup_time"]).strip(),
        "notes": (data.get("notes") or "").strip() or None,
    })
    bid.total_estimated_amount = estimate_amount(request["weight_category"], [r.model_dump() for r in bid.item_rates])
    try:
        bid_id = create_document("bid", bid, database=db)
    except DuplicateKeyError:
        raise DuplicateBidError("You have already placed a bid for this request")
    logger.info("Bid placed", extra={"bid_id": bid_id, "request_id": request_id, "raddiwala_id": raddiwala_id})

    customer = db["customer"].find_one({"_id": oid(request["customer_id"])})
    if customer:
        notifications.send(
            db,
            customer["email"],
            "New Bid Received - RaddiWala",
            "You have received a new bid for your pickup request. "
            "Please check your dashboard to review and accept bids.",
        )
    return bid_view(db, get_bid(db, bid_id))


def update(db: Database, raddiwala_id: str, bid_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
    bid = _owned_bid(db, raddiwala_id, bid_id)
    if bid["is_accepted"]:
        raise InvalidStateError("Cannot update accepted bid")
    request = pickups.get_request(db, bid["pickup_request_id"])
    if request["status"] != "open":
        raise InvalidStateError("Pickup request is no longer open")

    patch = validated(BidUpdate, changes)
    merged = {
        "pickup_request_id": bid["pickup_request_id"],
        "raddiwala_id": raddiwala_id,
        "item_rates": [r.model_dump() for r in patch.item_rates] if patch.item_rates else bid["item_rates"],
        "proposed_pickup_time": patch.proposed_pickup_time or bid["proposed_pickup_time"],
        "notes": patch.notes if patch.notes is not None else bid.get("notes"),
    }
    checked = validated(Bid, merged)
    item_rates = [r.model_dump() for r in checked.item_rates]
    updated = db["bid"].find_one_and_update(
        {"_id": bid["_id"], "is_accepted": False},
        {"$set": {
            "item_rates": item_rates,
            "proposed_pickup_time": checked.proposed_pickup_time,
            "notes": checked.notes,
            "total_estimated_amount": estimate_amount(request["weight_category"], item_rates),
            "updated_at": utcnow(),
        }},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise InvalidStateError("Cannot update accepted bid")
    return bid_view(db, updated)


def delete(db: Database, raddiwala_id: str, bid_id: str) -> None:
    bid = _owned_bid(db, raddiwala_id, bid_id)
    if bid["is_accepted"]:
        raise InvalidStateError("Cannot delete accepted bid")
    res = db["bid"].delete_one({"_id": bid["_id"], "is_accepted": False})
    if res.deleted_count == 0:
        raise InvalidStateError("Cannot delete accepted bid")
    logger.info("Bid withdrawn", extra={"bid_id": bid_id})


# ---------- Reads ----------

def get_view(db: Database, raddiwala_id: str, bid_id: str) -> Dict[str, Any]:
    bid = _owned_bid(db, raddiwala_id, bid_id)
    view = bid_view(db, bid)
    request = db["pickuprequest"].find_one({"_id": oid(bid["pickup_request_id"])})
    view["pickup_request"] = pickups.request_view(db, request, with_customer=True, with_phone=True) if request else None
    return view


def list_for_request(db: Database, customer_id: str, request_id: str) -> List[Dict[str, Any]]:
    """All bids on a request, for the customer who owns it."""
    request = pickups.get_request(db, request_id)
    if request["customer_id"] != customer_id:
        raise AccessDeniedError("Access denied")
    docs = get_documents("bid", {"pickup_request_id": request_id}, database=db, sort=[("created_at", DESCENDING)])
    return [bid_view(db, d) for d in docs]


def list_for_raddiwala(db: Database, raddiwala_id: str, status: Optional[str] = None) -> List[Dict[str, Any]]:
    flt: Dict[str, Any] = {"raddiwala_id": raddiwala_id}
    if status == "accepted":
        flt["is_accepted"] = True
    elif status == "pending":
        flt["is_accepted"] = False
    docs = get_documents("bid", flt, database=db, sort=[("created_at", DESCENDING)])
    result = []
    for d in docs:
        view = to_str_id(d)
        request = db["pickuprequest"].find_one({"_id": oid(d["pickup_request_id"])})
        view["pickup_request"] = pickups.request_view(db, request, with_customer=True) if request else None
        result.append(view)
    return result


def list_pending_pickups(db: Database, raddiwala_id: str) -> List[Dict[str, Any]]:
    """Accepted bids whose pickup has not been completed yet."""
    docs = get_documents(
        "bid", {"raddiwala_id": raddiwala_id, "is_accepted": True},
        database=db, sort=[("created_at", DESCENDING)],
    )
    result = []
    for d in docs:
        request = db["pickuprequest"].find_one({"_id": oid(d["pickup_request_id"]), "status": "accepted"})
        if not request:
            continue
        view = to_str_id(d)
        view["pickup_request"] = pickups.request_view(db, request, with_customer=True, with_phone=True)
        result.append(view)
    return result
