import pytest

import registry
from conftest import make_customer, make_raddiwala
from database import oid
from errors import AccessDeniedError, DuplicateAccountError, NotFoundError, ValidationError

ADDRESS = {"line": "7 Lake View", "area": "Aundh", "city": "Pune", "pincode": "411007"}


def test_customer_holds_at_most_three_addresses(db, customer):
    registry.add_address(db, customer["id"], ADDRESS)
    addresses = registry.add_address(db, customer["id"], ADDRESS)
    assert len(addresses) == 3

    with pytest.raises(ValidationError):
        registry.add_address(db, customer["id"], ADDRESS)


def test_address_pincode_is_validated(db, customer):
    with pytest.raises(ValidationError):
        registry.add_address(db, customer["id"], dict(ADDRESS, pincode="011007"))


def test_email_belongs_to_one_role(db):
    make_customer(db)
    with pytest.raises(DuplicateAccountError):
        make_raddiwala(db, email="asha@mail.com")
    assert db["address"].count_documents({}) == 1


def test_cannot_edit_someone_elses_address(db, customer):
    other = make_customer(db, email="neha@mail.com")
    with pytest.raises(AccessDeniedError):
        registry.update_address(db, customer["id"], other["address_id"], {"city": "Nashik"})
    with pytest.raises(AccessDeniedError):
        registry.delete_address(db, customer["id"], other["address_id"])


def test_delete_address_removes_reference(db, customer):
    registry.delete_address(db, customer["id"], customer["address_id"])
    assert registry.profile(db, "customer", customer["id"])["addresses"] == []


def test_raddiwala_profile_joins_shop_address(db, raddiwala):
    registry.update_shop_address(db, raddiwala["id"], {"landmark": "Near bus depot"})
    profile = registry.profile(db, "raddiwala", raddiwala["id"])
    assert profile["shop_address"]["landmark"] == "Near bus depot"
    assert profile["monthly_pickups_count"] == 0


def test_rating_aggregate(db, raddiwala):
    registry.apply_rating(db, "raddiwala", raddiwala["id"], 5)
    ratings = registry.apply_rating(db, "raddiwala", raddiwala["id"], 2)
    assert ratings == {"avg_rating": 3.5, "total_stars": 7, "total_ratings": 2}


def test_deactivated_party_is_hidden(db, customer):
    registry.deactivate(db, "customer", customer["id"])
    with pytest.raises(NotFoundError):
        registry.get_party(db, "customer", customer["id"])


def test_address_limit_holds_against_stale_read(db, customer, monkeypatch):
    registry.add_address(db, customer["id"], ADDRESS)
    stale = registry.get_party(db, "customer", customer["id"])
    registry.add_address(db, customer["id"], ADDRESS)
    monkeypatch.setattr(registry, "get_party", lambda *args: stale)

    with pytest.raises(ValidationError):
        registry.add_address(db, customer["id"], ADDRESS)

    assert db["address"].count_documents({}) == 3
    assert len(db["customer"].find_one()["address_ids"]) == 3


def test_rating_average_follows_current_totals(db, raddiwala):
    registry.apply_rating(db, "raddiwala", raddiwala["id"], 4)
    # a concurrent writer bumped the totals without storing an average
    db["raddiwala"].update_one(
        {"_id": oid(raddiwala["id"])},
        {"$inc": {"ratings.total_stars": 1, "ratings.total_ratings": 1}},
    )
    registry.apply_rating(db, "raddiwala", raddiwala["id"], 4)

    ratings = registry.get_party(db, "raddiwala", raddiwala["id"])["ratings"]
    assert ratings["total_stars"] == 9
    assert ratings["total_ratings"] == 3
    assert ratings["avg_rating"] == 3
