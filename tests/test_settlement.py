import smtplib

import pytest
from pymongo.errors import PyMongoError

import bids
import notifications
import pickups
import registry
import settlement
from conftest import bid_payload, open_request
from errors import AccessDeniedError, AlreadyRatedError, InvalidStateError, ValidationError


@pytest.fixture
def accepted(db, customer, raddiwala):
    request = open_request(db, customer)
    bid = bids.place(db, raddiwala["id"], bid_payload(request["id"]))
    pickups.accept_bid(db, customer["id"], request["id"], bid["id"])
    return {"request": request, "bid": bid}


def test_complete_records_one_transaction(db, customer, raddiwala, accepted):
    transaction = settlement.complete(db, raddiwala["id"], accepted["bid"]["id"], total_amount=40)

    assert transaction["total_amount"] == 40
    assert transaction["payment_status"] == "completed"
    assert transaction["customer_id"] == customer["id"]
    request = pickups.get_request(db, accepted["request"]["id"])
    assert request["status"] == "completed"
    assert request["completed_at"] is not None
    assert registry.get_party(db, "raddiwala", raddiwala["id"])["monthly_pickups_count"] == 1
    assert db["completedtransaction"].count_documents({}) == 1


def test_complete_defaults_amount_to_bid_estimate(db, raddiwala, accepted):
    transaction = settlement.complete(db, raddiwala["id"], accepted["bid"]["id"])
    assert transaction["total_amount"] == 35


def test_complete_twice_is_rejected(db, raddiwala, accepted):
    settlement.complete(db, raddiwala["id"], accepted["bid"]["id"])
    with pytest.raises(InvalidStateError):
        settlement.complete(db, raddiwala["id"], accepted["bid"]["id"])
    assert db["completedtransaction"].count_documents({}) == 1
    assert registry.get_party(db, "raddiwala", raddiwala["id"])["monthly_pickups_count"] == 1


def test_complete_requires_accepted_bid(db, customer, raddiwala):
    request = open_request(db, customer)
    bid = bids.place(db, raddiwala["id"], bid_payload(request["id"]))
    with pytest.raises(InvalidStateError):
        settlement.complete(db, raddiwala["id"], bid["id"])


def test_only_bid_owner_may_complete(db, far_raddiwala, accepted):
    with pytest.raises(AccessDeniedError):
        settlement.complete(db, far_raddiwala["id"], accepted["bid"]["id"])


def test_each_side_rates_once(db, customer, raddiwala, accepted):
    transaction = settlement.complete(db, raddiwala["id"], accepted["bid"]["id"])

    view = settlement.rate(db, transaction["id"], "customer", customer["id"], 4, "Quick and fair")
    assert view["customer_rating"]["rating"] == 4
    assert view["rated_party_ratings"] == {"avg_rating": 4, "total_stars": 4, "total_ratings": 1}

    with pytest.raises(AlreadyRatedError):
        settlement.rate(db, transaction["id"], "customer", customer["id"], 5)
    assert registry.get_party(db, "raddiwala", raddiwala["id"])["ratings"]["total_ratings"] == 1

    settlement.rate(db, transaction["id"], "raddiwala", raddiwala["id"], 5)
    assert registry.get_party(db, "customer", customer["id"])["ratings"]["avg_rating"] == 5


def test_rating_must_be_between_one_and_five(db, customer, raddiwala, accepted):
    transaction = settlement.complete(db, raddiwala["id"], accepted["bid"]["id"])
    for bad in (0, 6, True):
        with pytest.raises(ValidationError):
            settlement.rate(db, transaction["id"], "customer", customer["id"], bad)


def test_payment_status_and_stats(db, customer, raddiwala, accepted):
    transaction = settlement.complete(db, raddiwala["id"], accepted["bid"]["id"], total_amount=40)

    updated = settlement.update_payment_status(db, transaction["id"], "customer", customer["id"], "disputed")
    assert updated["payment_status"] == "disputed"
    with pytest.raises(ValidationError):
        settlement.update_payment_status(db, transaction["id"], "customer", customer["id"], "refunded")

    summary = settlement.stats(db, "raddiwala", raddiwala["id"])
    assert summary["total_transactions"] == 1
    assert summary["total_amount"] == 40

    page = settlement.list_transactions(db, "customer", customer["id"], page=1, limit=10)
    assert page["pagination"] == {"page": 1, "limit": 10, "total": 1, "pages": 1}
    assert page["transactions"][0]["raddiwala"]["name"] == "Ravi Kumar"


def test_failed_transaction_insert_leaves_request_accepted(db, raddiwala, accepted, monkeypatch):
    def broken_insert(*args, **kwargs):
        raise PyMongoError("write failed")

    monkeypatch.setattr(settlement, "create_document", broken_insert)
    with pytest.raises(PyMongoError):
        settlement.complete(db, raddiwala["id"], accepted["bid"]["id"])
    monkeypatch.undo()

    assert pickups.get_request(db, accepted["request"]["id"])["status"] == "accepted"
    assert db["completedtransaction"].count_documents({}) == 0

    transaction = settlement.complete(db, raddiwala["id"], accepted["bid"]["id"])
    assert transaction["total_amount"] == 35
    assert db["completedtransaction"].count_documents({}) == 1


def test_lost_status_race_removes_inserted_transaction(db, raddiwala, accepted, monkeypatch):
    def already_moved(*args, **kwargs):
        raise InvalidStateError("Pickup request is not in accepted status")

    monkeypatch.setattr(pickups, "mark_completed", already_moved)
    with pytest.raises(InvalidStateError):
        settlement.complete(db, raddiwala["id"], accepted["bid"]["id"])

    assert db["completedtransaction"].count_documents({}) == 0
    assert registry.get_party(db, "raddiwala", raddiwala["id"])["monthly_pickups_count"] == 0


def test_failed_notification_does_not_undo_completion(db, customer, raddiwala, accepted, monkeypatch):
    def refuse(*args, **kwargs):
        raise smtplib.SMTPException("relay refused")

    monkeypatch.setattr(notifications, "EMAIL_HOST", "smtp.mail.com")
    monkeypatch.setattr(notifications, "DEVELOPMENT_MODE", False)
    monkeypatch.setattr(notifications, "_deliver_email", refuse)

    transaction = settlement.complete(db, raddiwala["id"], accepted["bid"]["id"], total_amount=40)

    assert transaction["total_amount"] == 40
    assert pickups.get_request(db, accepted["request"]["id"])["status"] == "completed"
    assert registry.get_party(db, "raddiwala", raddiwala["id"])["monthly_pickups_count"] == 1
    assert db["notification"].count_documents({"email": customer["email"], "title": "Pickup Completed - RaddiWala"}) == 1
