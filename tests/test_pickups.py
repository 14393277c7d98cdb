import pytest

import bids
import pickups
from conftest import PHOTO, bid_payload, make_customer, make_raddiwala, open_request
from errors import AccessDeniedError, InvalidStateError, NotFoundError, ValidationError


def test_create_opens_request_with_address(db, customer):
    request = open_request(db, customer)
    assert request["status"] == "open"
    assert request["is_active"] is True
    assert request["accepted_bid_id"] is None
    assert request["address"]["city"] == "Pune"
    assert request["photos"] == [PHOTO]


def test_create_rejects_unknown_waste_type(db, customer):
    with pytest.raises(ValidationError):
        pickups.create(db, customer["id"], {
            "waste_types": ["Uranium"],
            "weight_category": "2–5 kg",
            "address_id": customer["address_id"],
        }, [PHOTO])


def test_create_rejects_address_of_another_customer(db, customer):
    other = make_customer(db, email="neha@mail.com")
    with pytest.raises(ValidationError):
        pickups.create(db, customer["id"], {
            "waste_types": ["Paper"],
            "weight_category": "2–5 kg",
            "address_id": other["address_id"],
        }, [PHOTO])


def test_create_removes_stored_photos_when_rejected(db, customer, upload_dir):
    stored = upload_dir / "pickup-photos" / "pickup-1.jpg"
    stored.parent.mkdir(parents=True)
    stored.write_bytes(b"jpeg")

    with pytest.raises(ValidationError):
        pickups.create(db, customer["id"], {
            "waste_types": ["Paper"],
            "weight_category": "not a band",
            "address_id": customer["address_id"],
        }, ["/uploads/pickup-photos/pickup-1.jpg"])

    assert not stored.exists()
    assert db["pickuprequest"].count_documents({}) == 0


def test_accept_bid_moves_request_to_accepted(db, customer, raddiwala):
    request = open_request(db, customer)
    bid = bids.place(db, raddiwala["id"], bid_payload(request["id"]))

    accepted = pickups.accept_bid(db, customer["id"], request["id"], bid["id"])

    assert accepted["status"] == "accepted"
    assert accepted["accepted_bid_id"] == bid["id"]
    assert accepted["accepted_at"] is not None
    assert accepted["accepted_bid"]["raddiwala"]["name"] == "Ravi Kumar"
    assert db["bid"].find_one()["is_accepted"] is True


def test_second_accept_fails_and_keeps_first_bid(db, customer, raddiwala):
    other = make_raddiwala(db, email="sita@mail.com")
    request = open_request(db, customer)
    first = bids.place(db, raddiwala["id"], bid_payload(request["id"]))
    second = bids.place(db, other["id"], bid_payload(request["id"], price=12))
    pickups.accept_bid(db, customer["id"], request["id"], first["id"])

    with pytest.raises(InvalidStateError):
        pickups.accept_bid(db, customer["id"], request["id"], second["id"])

    stored = pickups.get_request(db, request["id"])
    assert stored["accepted_bid_id"] == first["id"]
    assert bids.get_bid(db, second["id"])["is_accepted"] is False


def test_accept_bid_from_another_request_is_not_found(db, customer, raddiwala):
    request = open_request(db, customer)
    other_request = open_request(db, customer)
    bid = bids.place(db, raddiwala["id"], bid_payload(other_request["id"]))

    with pytest.raises(NotFoundError):
        pickups.accept_bid(db, customer["id"], request["id"], bid["id"])


def test_only_owner_may_accept(db, customer, raddiwala):
    request = open_request(db, customer)
    bid = bids.place(db, raddiwala["id"], bid_payload(request["id"]))
    stranger = make_customer(db, email="neha@mail.com")

    with pytest.raises(AccessDeniedError):
        pickups.accept_bid(db, stranger["id"], request["id"], bid["id"])


def test_cancel_open_request(db, customer):
    request = open_request(db, customer)
    cancelled = pickups.cancel(db, customer["id"], request["id"])
    assert cancelled["status"] == "cancelled"
    assert cancelled["is_active"] is False
    assert cancelled["cancelled_at"] is not None


def test_cancel_after_accept_is_rejected(db, customer, raddiwala):
    request = open_request(db, customer)
    bid = bids.place(db, raddiwala["id"], bid_payload(request["id"]))
    pickups.accept_bid(db, customer["id"], request["id"], bid["id"])

    with pytest.raises(InvalidStateError):
        pickups.cancel(db, customer["id"], request["id"])
    assert pickups.get_request(db, request["id"])["status"] == "accepted"


def test_cancelled_request_cannot_be_accepted(db, customer, raddiwala):
    request = open_request(db, customer)
    bid = bids.place(db, raddiwala["id"], bid_payload(request["id"]))
    pickups.cancel(db, customer["id"], request["id"])

    with pytest.raises(InvalidStateError):
        pickups.accept_bid(db, customer["id"], request["id"], bid["id"])


def test_update_only_while_open(db, customer):
    request = open_request(db, customer)
    updated = pickups.update(db, customer["id"], request["id"], {"description": "Boxes too"})
    assert updated["description"] == "Boxes too"

    pickups.cancel(db, customer["id"], request["id"])
    with pytest.raises(InvalidStateError):
        pickups.update(db, customer["id"], request["id"], {"description": "again"})


def test_open_requests_are_scoped_to_collector_city(db, customer, raddiwala, far_raddiwala):
    request = open_request(db, customer)
    bids.place(db, raddiwala["id"], bid_payload(request["id"]))

    nearby = pickups.list_open_in_city(db, raddiwala["id"])
    assert [r["id"] for r in nearby] == [request["id"]]
    assert nearby[0]["has_my_bid"] is True
    assert pickups.list_open_in_city(db, far_raddiwala["id"]) == []


def test_pending_requests_carry_their_bids(db, customer, raddiwala):
    request = open_request(db, customer)
    bids.place(db, raddiwala["id"], bid_payload(request["id"]))

    pending = pickups.list_pending_with_bids(db, customer["id"])
    assert len(pending) == 1
    assert pending[0]["bids"][0]["raddiwala"]["id"] == raddiwala["id"]
