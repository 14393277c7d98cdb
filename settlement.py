"""
Acceptance & settlement: turning an accepted bid into a completed, rateable
transaction.

One CompletedTransaction exists per pickup request (unique index), created
only by the call that moves the request from accepted to completed. Each side
may rate the other once per transaction.
"""
import logging
import math
from datetime import datetime
from typing import Any, Dict, List, Optional

from pymongo import DESCENDING
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

import bids
import notifications
import pickups
import quota
import registry
from database import create_document, get_by_id, get_documents, oid, to_str_id, utcnow
from errors import (
    AccessDeniedError,
    AlreadyRatedError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
    validated,
)
from schemas import CompletedTransaction, RatingEntry

logger = logging.getLogger(__name__)

PAYMENT_STATUSES = ("pending", "completed", "disputed")

# rater role -> (sub-record written, rater id field, rated role, rated id field)
RATING_SIDES = {
    "customer": ("customer_rating", "customer_id", "raddiwala", "raddiwala_id"),
    "raddiwala": ("raddiwala_rating", "raddiwala_id", "customer", "customer_id"),
}


def complete(
    db: Database,
    raddiwala_id: str,
    bid_id: str,
    actual_weight: Optional[float] = None,
    total_amount: Optional[float] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Mark the pickup behind an accepted bid as done and record the settlement."""
    bid = bids.get_bid(db, bid_id)
    if bid["raddiwala_id"] != raddiwala_id:
        raise AccessDeniedError("Access denied")
    if not bid["is_accepted"]:
        raise InvalidStateError("Bid is not accepted")
    request = pickups.get_request(db, bid["pickup_request_id"])
    if request["status"] != "accepted" or request.get("accepted_bid_id") != bid_id:
        raise InvalidStateError("Pickup request is not in accepted status")

    now = now or utcnow()
    transaction = validated(CompletedTransaction, {
        "pickup_request_id": bid["pickup_request_id"],
        "customer_id": request["customer_id"],
        "raddiwala_id": raddiwala_id,
        "total_amount": total_amount if total_amount is not None else bid["total_estimated_amount"],
        "actual_weight": actual_weight,
        "completed_at": now,
    })
    try:
        transaction_id = create_document("completedtransaction", transaction, database=db)
    except DuplicateKeyError:
        raise InvalidStateError("Pickup request has already been settled")
    try:
        pickups.mark_completed(db, bid["pickup_request_id"], now)
    except Exception:
        db["completedtransaction"].delete_one({"_id": oid(transaction_id)})
        raise

    count = quota.increment_pickups(db, raddiwala_id, now)
    logger.info(
        "Pickup completed",
        extra={"request_id": bid["pickup_request_id"], "transaction_id": transaction_id, "monthly_pickups": count},
    )

    customer = db["customer"].find_one({"_id": oid(request["customer_id"])})
    if customer:
        notifications.send(
            db,
            customer["email"],
            "Pickup Completed - RaddiWala",
            "Your pickup has been completed successfully. Please rate your experience with the raddiwala.",
        )
    return to_str_id(get_by_id("completedtransaction", transaction_id, database=db))


def _check_rating(rating: Any, review: Optional[str]) -> None:
    if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
        raise ValidationError("Rating must be between 1 and 5")
    if review is not None and len(review.strip()) > 300:
        raise ValidationError("Review must be at most 300 characters")


def rate(
    db: Database,
    transaction_id: str,
    rater_role: str,
    rater_id: str,
    rating: Any,
    review: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Record one side's rating and fold it into the other side's aggregate."""
    if rater_role not in RATING_SIDES:
        raise ValidationError("Invalid role", {"role": rater_role})
    _check_rating(rating, review)
    field, rater_field, rated_role, rated_field = RATING_SIDES[rater_role]

    transaction = db["completedtransaction"].find_one({"_id": oid(transaction_id), rater_field: rater_id})
    if not transaction:
        raise NotFoundError("Transaction not found", {"id": transaction_id})
    if transaction.get(field):
        raise AlreadyRatedError("You have already rated this transaction")

    entry = RatingEntry(rating=rating, review=(review or "").strip() or None, rated_at=now or utcnow())
    res = db["completedtransaction"].update_one(
        {"_id": transaction["_id"], field: None},
        {"$set": {field: entry.model_dump(), "updated_at": now or utcnow()}},
    )
    if res.matched_count == 0:
        raise AlreadyRatedError("You have already rated this transaction")

    ratings = registry.apply_rating(db, rated_role, transaction[rated_field], rating)
    logger.info("Rating recorded", extra={"transaction_id": transaction_id, "rater_role": rater_role})
    view = transaction_view(db, db["completedtransaction"].find_one({"_id": transaction["_id"]}))
    view["rated_party_ratings"] = ratings
    return view


# ---------- Reads ----------

def _party_field(role: str) -> str:
    if role not in RATING_SIDES:
        raise AccessDeniedError("Access denied")
    return RATING_SIDES[role][1]


def transaction_view(db: Database, transaction: Dict[str, Any]) -> Dict[str, Any]:
    view = to_str_id(transaction)
    request = db["pickuprequest"].find_one({"_id": oid(transaction["pickup_request_id"])})
    view["pickup_request"] = to_str_id(request)
    view["customer"] = registry.public_view(db, "customer", transaction["customer_id"])
    view["raddiwala"] = registry.public_view(db, "raddiwala", transaction["raddiwala_id"])
    return view


def _party_transaction(db: Database, transaction_id: str, role: str, party_id: str) -> Dict[str, Any]:
    transaction = get_by_id("completedtransaction", transaction_id, database=db, label="Transaction")
    if transaction.get(_party_field(role)) != party_id:
        raise AccessDeniedError("Access denied")
    return transaction


def get_transaction(db: Database, transaction_id: str, role: str, party_id: str) -> Dict[str, Any]:
    return transaction_view(db, _party_transaction(db, transaction_id, role, party_id))


def list_transactions(
    db: Database,
    role: str,
    party_id: str,
    page: int = 1,
    limit: int = 10,
    payment_status: Optional[str] = None,
) -> Dict[str, Any]:
    page = max(int(page), 1)
    limit = max(int(limit), 1)
    flt: Dict[str, Any] = {_party_field(role): party_id}
    if payment_status:
        flt["payment_status"] = payment_status
    docs = get_documents(
        "completedtransaction", flt, limit=limit, database=db,
        sort=[("completed_at", DESCENDING)], skip=(page - 1) * limit,
    )
    total = db["completedtransaction"].count_documents(flt)
    return {
        "transactions": [transaction_view(db, d) for d in docs],
        "pagination": {"page": page, "limit": limit, "total": total, "pages": math.ceil(total / limit)},
    }


def list_completed(db: Database, role: str, party_id: str) -> List[Dict[str, Any]]:
    docs = get_documents(
        "completedtransaction", {_party_field(role): party_id},
        database=db, sort=[("completed_at", DESCENDING)],
    )
    return [transaction_view(db, d) for d in docs]


def update_payment_status(db: Database, transaction_id: str, role: str, party_id: str, payment_status: str) -> Dict[str, Any]:
    if payment_status not in PAYMENT_STATUSES:
        raise ValidationError("Invalid payment status", {"allowed": list(PAYMENT_STATUSES)})
    transaction = _party_transaction(db, transaction_id, role, party_id)
    db["completedtransaction"].update_one(
        {"_id": transaction["_id"]}, {"$set": {"payment_status": payment_status, "updated_at": utcnow()}}
    )
    return transaction_view(db, db["completedtransaction"].find_one({"_id": transaction["_id"]}))


def _mean(values: List[float]) -> float:
    return sum(values) / len(values) if values else 0


def stats(db: Database, role: str, party_id: str) -> Dict[str, Any]:
    docs = get_documents("completedtransaction", {_party_field(role): party_id}, database=db)
    amounts = [d.get("total_amount", 0) for d in docs]
    return {
        "total_transactions": len(docs),
        "total_amount": sum(amounts),
        "average_amount": _mean(amounts),
        "average_customer_rating": _mean([d["customer_rating"]["rating"] for d in docs if d.get("customer_rating")]),
        "average_raddiwala_rating": _mean([d["raddiwala_rating"]["rating"] for d in docs if d.get("raddiwala_rating")]),
    }
