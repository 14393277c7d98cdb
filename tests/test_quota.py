from datetime import datetime, timedelta

import pytest

import quota
import registry
from database import oid
from errors import NotFoundError, QuotaExceededError

T0 = datetime(2026, 3, 2, 9, 0, 0)


def set_raddiwala(db, raddiwala, **fields):
    db["raddiwala"].update_one({"_id": oid(raddiwala["id"])}, {"$set": fields})


def test_count_resets_in_new_month(db, raddiwala):
    set_raddiwala(db, raddiwala, monthly_pickups_count=50, last_reset_date=datetime(2026, 2, 27))

    doc = quota.check_quota(db, raddiwala["id"], now=T0)

    assert doc["monthly_pickups_count"] == 0
    assert doc["last_reset_date"] == T0


def test_count_is_kept_within_the_month(db, raddiwala):
    set_raddiwala(db, raddiwala, monthly_pickups_count=50, last_reset_date=datetime(2026, 3, 1))
    with pytest.raises(QuotaExceededError):
        quota.check_quota(db, raddiwala["id"], now=T0)


def test_increment_after_month_rollover_starts_from_zero(db, raddiwala):
    set_raddiwala(db, raddiwala, monthly_pickups_count=17, last_reset_date=datetime(2026, 2, 10))
    assert quota.increment_pickups(db, raddiwala["id"], now=T0) == 1


def test_purchase_grants_premium_for_thirty_days(db, raddiwala):
    subscription = quota.purchase(db, raddiwala["id"], now=T0)

    assert subscription["expiry_date"] == T0 + timedelta(days=30)
    assert subscription["price_paid"] == 30
    assert registry.get_party(db, "raddiwala", raddiwala["id"])["is_premium_user"] is True


def test_purchase_while_active_extends_from_current_expiry(db, raddiwala):
    first = quota.purchase(db, raddiwala["id"], now=T0)
    second = quota.purchase(db, raddiwala["id"], now=T0 + timedelta(days=10))

    assert second["id"] == first["id"]
    assert second["expiry_date"] == T0 + timedelta(days=60)
    assert db["subscription"].count_documents({}) == 1


def test_purchase_after_lapse_starts_a_new_period(db, raddiwala):
    quota.purchase(db, raddiwala["id"], now=T0)
    later = T0 + timedelta(days=45)
    renewed = quota.purchase(db, raddiwala["id"], now=later)

    assert renewed["expiry_date"] == later + timedelta(days=30)
    assert db["subscription"].count_documents({"is_active": True}) == 1


def test_expired_subscription_drops_premium(db, raddiwala):
    quota.purchase(db, raddiwala["id"], now=T0)
    after = T0 + timedelta(days=31)
    set_raddiwala(db, raddiwala, monthly_pickups_count=50, last_reset_date=after)

    with pytest.raises(QuotaExceededError):
        quota.check_quota(db, raddiwala["id"], now=after)

    assert registry.get_party(db, "raddiwala", raddiwala["id"])["is_premium_user"] is False
    assert db["subscription"].find_one()["is_active"] is False


def test_active_premium_bypasses_limit(db, raddiwala):
    quota.purchase(db, raddiwala["id"], now=T0)
    set_raddiwala(db, raddiwala, monthly_pickups_count=80, last_reset_date=T0)

    assert quota.check_quota(db, raddiwala["id"], now=T0 + timedelta(days=5))["is_premium_user"] is True


def test_status_reports_limit(db, raddiwala):
    set_raddiwala(db, raddiwala, monthly_pickups_count=50, last_reset_date=T0)
    status = quota.status(db, raddiwala["id"], now=T0)

    assert status["monthly_limit"] == 50
    assert status["can_place_bids"] is False
    assert status["needs_premium"] is True
    assert status["subscription"] is None


def test_cancel_without_subscription(db, raddiwala):
    with pytest.raises(NotFoundError):
        quota.cancel(db, raddiwala["id"])


def test_cancel_clears_premium(db, raddiwala):
    quota.purchase(db, raddiwala["id"], now=T0)
    quota.cancel(db, raddiwala["id"], now=T0 + timedelta(days=1))

    assert registry.get_party(db, "raddiwala", raddiwala["id"])["is_premium_user"] is False
    assert quota.history(db, raddiwala["id"])[0]["is_active"] is False
