"""
Monthly bid quota and premium subscriptions for raddiwalas.

A non-premium raddiwala may work while their monthly pickup count is below
MONTHLY_BID_LIMIT. The count restarts on the first access in a new calendar
month (`ensure_current_period`), which every quota-sensitive operation calls
before reading or bumping it. Subscription expiry is also applied lazily:
`enforce_expiry` must run before `is_premium_user` is trusted.
"""
import logging
import os
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database

import notifications
import registry
from database import create_document, get_by_id, get_documents, to_str_id, utcnow
from errors import NotFoundError, QuotaExceededError
from schemas import Subscription

logger = logging.getLogger(__name__)

MONTHLY_BID_LIMIT = int(os.getenv("MONTHLY_BID_LIMIT", 50))
SUBSCRIPTION_DAYS = int(os.getenv("SUBSCRIPTION_DAYS", 30))
SUBSCRIPTION_PRICE = float(os.getenv("SUBSCRIPTION_PRICE", 30))


def _same_month(a: datetime, b: datetime) -> bool:
    return a.year == b.year and a.month == b.month


def ensure_current_period(db: Database, raddiwala: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
    """Zero the monthly count when `now` falls in a later calendar month than the last reset."""
    now = now or utcnow()
    last_reset = raddiwala.get("last_reset_date")
    if last_reset is not None and _same_month(last_reset, now):
        return raddiwala

    updated = db["raddiwala"].find_one_and_update(
        {"_id": raddiwala["_id"], "last_reset_date": last_reset},
        {"$set": {"monthly_pickups_count": 0, "last_reset_date": now, "updated_at": now}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        # another request already rolled the period over
        return db["raddiwala"].find_one({"_id": raddiwala["_id"]})
    logger.info("Monthly pickup count reset", extra={"raddiwala_id": str(raddiwala["_id"])})
    return updated


def can_place_bid(raddiwala: Dict[str, Any]) -> bool:
    return bool(raddiwala.get("is_premium_user")) or raddiwala.get("monthly_pickups_count", 0) < MONTHLY_BID_LIMIT


def check_quota(db: Database, raddiwala_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Return the up-to-date raddiwala document, or raise QuotaExceededError."""
    raddiwala = registry.get_party(db, "raddiwala", raddiwala_id)
    raddiwala = ensure_current_period(db, raddiwala, now)
    raddiwala, _ = enforce_expiry(db, raddiwala, now)
    if not can_place_bid(raddiwala):
        raise QuotaExceededError(
            "Monthly pickup limit exceeded. Please upgrade to premium.",
            {"monthly_pickups": raddiwala.get("monthly_pickups_count", 0), "is_premium": False},
        )
    return raddiwala


def increment_pickups(db: Database, raddiwala_id: str, now: Optional[datetime] = None) -> int:
    raddiwala = registry.get_party(db, "raddiwala", raddiwala_id)
    raddiwala = ensure_current_period(db, raddiwala, now)
    updated = db["raddiwala"].find_one_and_update(
        {"_id": raddiwala["_id"]},
        {"$inc": {"monthly_pickups_count": 1}, "$set": {"updated_at": now or utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    return updated["monthly_pickups_count"]


# ---------- Subscriptions ----------

def is_valid(subscription: Optional[Dict[str, Any]], now: Optional[datetime] = None) -> bool:
    if not subscription:
        return False
    return bool(subscription.get("is_active")) and (now or utcnow()) <= subscription["expiry_date"]


def active_subscription(db: Database, raddiwala_id: str) -> Optional[Dict[str, Any]]:
    docs = get_documents(
        "subscription", {"raddiwala_id": raddiwala_id, "is_active": True},
        limit=1, database=db, sort=[("created_at", DESCENDING)],
    )
    return docs[0] if docs else None


def _set_premium(db: Database, raddiwala_id: Any, flag: bool, now: datetime) -> None:
    db["raddiwala"].update_one({"_id": raddiwala_id}, {"$set": {"is_premium_user": flag, "updated_at": now}})


def enforce_expiry(
    db: Database, raddiwala: Dict[str, Any], now: Optional[datetime] = None
) -> Tuple[Dict[str, Any], Optional[Dict[str, Any]]]:
    """Retire a lapsed subscription and drop the premium flag with it."""
    now = now or utcnow()
    raddiwala_id = str(raddiwala["_id"])
    subscription = active_subscription(db, raddiwala_id)
    if subscription is None or now <= subscription["expiry_date"]:
        return raddiwala, subscription

    db["subscription"].update_one(
        {"_id": subscription["_id"]}, {"$set": {"is_active": False, "updated_at": now}}
    )
    subscription["is_active"] = False
    if raddiwala.get("is_premium_user"):
        _set_premium(db, raddiwala["_id"], False, now)
        raddiwala = dict(raddiwala, is_premium_user=False)
    logger.info("Subscription expired", extra={"raddiwala_id": raddiwala_id, "subscription_id": str(subscription["_id"])})
    return raddiwala, subscription


def purchase(
    db: Database,
    raddiwala_id: str,
    payment_method: str = "online",
    transaction_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Extend a live subscription from its current expiry, otherwise start a new one from now."""
    now = now or utcnow()
    raddiwala = registry.get_party(db, "raddiwala", raddiwala_id)
    raddiwala, subscription = enforce_expiry(db, raddiwala, now)
    period = timedelta(days=SUBSCRIPTION_DAYS)

    if is_valid(subscription, now):
        new_expiry = subscription["expiry_date"] + period
        db["subscription"].update_one(
            {"_id": subscription["_id"]},
            {"$set": {"expiry_date": new_expiry, "is_active": True, "updated_at": now}},
        )
        subscription_id = str(subscription["_id"])
    else:
        new_expiry = now + period
        subscription_id = create_document("subscription", Subscription(
            raddiwala_id=raddiwala_id,
            start_date=now,
            expiry_date=new_expiry,
            price_paid=SUBSCRIPTION_PRICE,
            payment_method=payment_method,
            transaction_id=transaction_id,
        ), database=db)

    _set_premium(db, raddiwala["_id"], True, now)
    logger.info("Subscription purchased", extra={"raddiwala_id": raddiwala_id, "subscription_id": subscription_id})

    notifications.send(
        db,
        raddiwala["email"],
        "Premium Subscription Activated - RaddiWala",
        "Your premium subscription has been activated successfully. You can now place unlimited bids "
        f"for the next {SUBSCRIPTION_DAYS} days. Subscription expires on {new_expiry:%a %b %d %Y}.",
    )
    return to_str_id(get_by_id("subscription", subscription_id, database=db))


def cancel(db: Database, raddiwala_id: str, now: Optional[datetime] = None) -> None:
    now = now or utcnow()
    raddiwala = registry.get_party(db, "raddiwala", raddiwala_id)
    subscription = active_subscription(db, raddiwala_id)
    if subscription is None:
        raise NotFoundError("No active subscription found")
    db["subscription"].update_one({"_id": subscription["_id"]}, {"$set": {"is_active": False, "updated_at": now}})
    _set_premium(db, raddiwala["_id"], False, now)
    logger.info("Subscription cancelled", extra={"raddiwala_id": raddiwala_id})


def status(db: Database, raddiwala_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    raddiwala = registry.get_party(db, "raddiwala", raddiwala_id)
    raddiwala = ensure_current_period(db, raddiwala, now)
    raddiwala, subscription = enforce_expiry(db, raddiwala, now)
    count = raddiwala.get("monthly_pickups_count", 0)
    premium = bool(raddiwala.get("is_premium_user"))
    return {
        "is_premium": premium,
        "has_active_subscription": is_valid(subscription, now),
        "monthly_pickups": count,
        "monthly_limit": MONTHLY_BID_LIMIT,
        "can_place_bids": can_place_bid(raddiwala),
        "needs_premium": count >= MONTHLY_BID_LIMIT and not premium,
        "subscription": to_str_id(subscription) if is_valid(subscription, now) else None,
    }


def history(db: Database, raddiwala_id: str) -> List[Dict[str, Any]]:
    registry.get_party(db, "raddiwala", raddiwala_id)
    docs = get_documents("subscription", {"raddiwala_id": raddiwala_id}, database=db, sort=[("created_at", DESCENDING)])
    return [to_str_id(d) for d in docs]
