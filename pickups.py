"""
Pickup request lifecycle.

    open -> accepted -> completed
    open -> cancelled

Every transition is a conditional update on the current status, so two
concurrent callers can never both move the same request. `accepted_bid_id`
is set exactly when the status is accepted or completed, and each
`*_at` timestamp is written once by the transition that owns it.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database

import notifications
import quota
import registry
import storage
from database import create_document, get_by_id, get_documents, oid, to_str_id, utcnow
from errors import AccessDeniedError, InvalidStateError, NotFoundError, ValidationError, validated
from schemas import PickupRequest, PickupRequestUpdate

logger = logging.getLogger(__name__)


def get_request(db: Database, request_id: str) -> Dict[str, Any]:
    return get_by_id("pickuprequest", request_id, database=db, label="Pickup request")


def _owned_request(db: Database, customer_id: str, request_id: str) -> Dict[str, Any]:
    request = get_request(db, request_id)
    if request["customer_id"] != customer_id:
        raise AccessDeniedError("Access denied")
    return request


def _parse_waste_types(waste_types: Any) -> List[str]:
    if isinstance(waste_types, str):
        waste_types = [waste_types]
    return [w for w in (waste_types or []) if w]


def create(
    db: Database,
    customer_id: str,
    data: Dict[str, Any],
    photos: List[str],
) -> Dict[str, Any]:
    """Open a new request. Stored photos are deleted again if anything is rejected."""
    try:
        customer = registry.get_party(db, "customer", customer_id)
        waste_types = _parse_waste_types(data.get("waste_types"))
        if not waste_types or not data.get("weight_category") or not data.get("address_id"):
            raise ValidationError("Waste type, weight category, and address are required")
        if not photos:
            raise ValidationError("At least one photo is required")
        if not registry.customer_owns_address(customer, data["address_id"]):
            raise ValidationError("Invalid address", {"address_id": data["address_id"]})

        request = validated(PickupRequest, {
            "customer_id": customer_id,
            "photos": photos,
            "waste_types": waste_types,
            "weight_category": data["weight_category"],
            "description": data.get("description") or None,
            "address_id": data["address_id"],
            "time_window": data.get("time_window") or None,
        })
        request_id = create_document("pickuprequest", request, database=db)
    except Exception:
        storage.delete_all(photos)
        raise

    logger.info("Pickup request created", extra={"request_id": request_id, "customer_id": customer_id})
    return request_view(db, get_request(db, request_id))


def update(db: Database, customer_id: str, request_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
    _owned_request(db, customer_id, request_id)
    update_doc = validated(PickupRequestUpdate, changes).model_dump(exclude_none=True)
    update_doc = {k: v for k, v in update_doc.items() if v != ""}
    update_doc["updated_at"] = utcnow()
    updated = db["pickuprequest"].find_one_and_update(
        {"_id": oid(request_id), "status": "open"},
        {"$set": update_doc},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise InvalidStateError("Cannot update request that is not open")
    return request_view(db, updated)


def cancel(db: Database, customer_id: str, request_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    request = _owned_request(db, customer_id, request_id)
    now = now or utcnow()
    updated = db["pickuprequest"].find_one_and_update(
        {"_id": request["_id"], "status": "open"},
        {"$set": {"status": "cancelled", "cancelled_at": now, "is_active": False, "updated_at": now}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        if request["status"] == "accepted":
            raise InvalidStateError("Cannot cancel request with accepted bid")
        raise InvalidStateError(f"Cannot cancel a {request['status']} request")
    logger.info("Pickup request cancelled", extra={"request_id": request_id})
    return request_view(db, updated)


def accept_bid(db: Database, customer_id: str, request_id: str, bid_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Award the request to one bid. Other bids stay as they are."""
    request = _owned_request(db, customer_id, request_id)
    if request["status"] != "open":
        raise InvalidStateError("Pickup request is no longer open")

    bid = db["bid"].find_one({"_id": oid(bid_id)})
    if not bid or bid["pickup_request_id"] != request_id:
        raise NotFoundError("Bid not found", {"bid_id": bid_id})

    now = now or utcnow()
    updated = db["pickuprequest"].find_one_and_update(
        {"_id": request["_id"], "status": "open"},
        {"$set": {"status": "accepted", "accepted_bid_id": bid_id, "accepted_at": now, "updated_at": now}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise InvalidStateError("Pickup request is no longer open")
    db["bid"].update_one({"_id": bid["_id"]}, {"$set": {"is_accepted": True, "updated_at": now}})
    logger.info("Bid accepted", extra={"request_id": request_id, "bid_id": bid_id})

    raddiwala = db["raddiwala"].find_one({"_id": oid(bid["raddiwala_id"])})
    if raddiwala:
        notifications.send(
            db,
            raddiwala["email"],
            "Bid Accepted - RaddiWala",
            "Congratulations! Your bid for pickup request has been accepted. "
            "Please contact the customer for pickup details.",
        )
    return request_view(db, updated)


def mark_completed(db: Database, request_id: str, now: datetime) -> Dict[str, Any]:
    updated = db["pickuprequest"].find_one_and_update(
        {"_id": oid(request_id), "status": "accepted"},
        {"$set": {"status": "completed", "completed_at": now, "updated_at": now}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise InvalidStateError("Pickup request is not in accepted status")
    return updated


# ---------- Views ----------

def request_view(db: Database, request: Dict[str, Any], with_customer: bool = False, with_phone: bool = False) -> Dict[str, Any]:
    view = to_str_id(request)
    address = db["address"].find_one({"_id": oid(request["address_id"])})
    view["address"] = to_str_id(address)
    if with_customer:
        view["customer"] = registry.public_view(db, "customer", request["customer_id"], with_phone=with_phone)
    accepted = request.get("accepted_bid_id")
    view["accepted_bid"] = None
    if accepted:
        bid = db["bid"].find_one({"_id": oid(accepted)})
        if bid:
            bid_view = to_str_id(bid)
            bid_view["raddiwala"] = registry.public_view(db, "raddiwala", bid["raddiwala_id"])
            view["accepted_bid"] = bid_view
    return view


def get_view(db: Database, request_id: str, role: str, party_id: str) -> Dict[str, Any]:
    """Request detail for its owner or for any raddiwala."""
    request = get_request(db, request_id)
    if role == "customer" and request["customer_id"] != party_id:
        raise AccessDeniedError("Access denied")
    if role not in ("customer", "raddiwala"):
        raise AccessDeniedError("Access denied")
    return request_view(db, request, with_customer=True)


def list_for_customer(db: Database, customer_id: str, status: Optional[str] = None) -> List[Dict[str, Any]]:
    flt: Dict[str, Any] = {"customer_id": customer_id}
    if status:
        flt["status"] = status
    docs = get_documents("pickuprequest", flt, database=db, sort=[("created_at", DESCENDING)])
    return [request_view(db, d) for d in docs]


def list_pending_with_bids(db: Database, customer_id: str) -> List[Dict[str, Any]]:
    docs = get_documents(
        "pickuprequest", {"customer_id": customer_id, "status": "open"},
        database=db, sort=[("created_at", DESCENDING)],
    )
    result = []
    for d in docs:
        view = request_view(db, d)
        bids = get_documents("bid", {"pickup_request_id": view["id"]}, database=db, sort=[("created_at", DESCENDING)])
        view["bids"] = []
        for b in bids:
            bid_view = to_str_id(b)
            bid_view["raddiwala"] = registry.public_view(db, "raddiwala", b["raddiwala_id"])
            view["bids"].append(bid_view)
        result.append(view)
    return result


def list_open_in_city(db: Database, raddiwala_id: str, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """Open requests in the raddiwala's shop city, flagged with whether they already bid."""
    raddiwala = quota.check_quota(db, raddiwala_id, now)
    shop = registry.get_address(db, raddiwala["shop_address_id"])
    address_ids = [str(a["_id"]) for a in db["address"].find({"city": shop["city"]})]
    docs = get_documents(
        "pickuprequest",
        {"address_id": {"$in": address_ids}, "status": "open", "is_active": True},
        database=db, sort=[("created_at", DESCENDING)],
    )
    my_bids = {b["pickup_request_id"] for b in db["bid"].find({"raddiwala_id": raddiwala_id})}
    result = []
    for d in docs:
        view = request_view(db, d, with_customer=True)
        view["has_my_bid"] = view["id"] in my_bids
        result.append(view)
    return result
