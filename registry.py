"""
Party registry: customer and raddiwala accounts, their addresses and ratings.

Customers and raddiwalas live in separate collections with the same shape;
an email can belong to only one of them. Inactive (soft-deleted) parties are
invisible to every lookup here.
"""
import logging
from typing import Any, Dict, List, Optional

from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import create_document, get_by_id, oid, to_str_id, utcnow
from errors import AccessDeniedError, DuplicateAccountError, NotFoundError, ValidationError, validated
from schemas import Address, AddressUpdate, Customer, ProfileUpdate, Raddiwala

logger = logging.getLogger(__name__)

MAX_CUSTOMER_ADDRESSES = 3

COLLECTIONS = {"customer": "customer", "raddiwala": "raddiwala"}
LABELS = {"customer": "Customer", "raddiwala": "Raddiwala"}


def _collection(role: str) -> str:
    try:
        return COLLECTIONS[role]
    except KeyError:
        raise ValidationError("Invalid role", {"role": role})


def email_owner(db: Database, email: str) -> Optional[str]:
    """Role the email is registered under, if any."""
    email = email.lower()
    for role, collection in COLLECTIONS.items():
        if db[collection].find_one({"email": email}):
            return role
    return None


def _insert_party(db: Database, role: str, party) -> str:
    if email_owner(db, party.email):
        raise DuplicateAccountError("Email already registered", {"email": party.email})
    try:
        return create_document(_collection(role), party, database=db)
    except DuplicateKeyError:
        raise DuplicateAccountError("Email already registered", {"email": party.email})


def create_customer(db: Database, name: str, email: str, phone: str) -> str:
    customer = validated(Customer, {"name": name.strip(), "email": email.lower(), "phone": phone})
    customer_id = _insert_party(db, "customer", customer)
    logger.info("Customer registered", extra={"customer_id": customer_id})
    return customer_id


def create_raddiwala(db: Database, name: str, email: str, phone: str, shop_address: Dict[str, Any]) -> str:
    if not shop_address:
        raise ValidationError("Shop address is required for Raddiwala")
    address = validated(Address, shop_address)
    # Validate the party before touching the address collection
    validated(Raddiwala, {
        "name": name.strip(), "email": email.lower(), "phone": phone,
        "shop_address_id": "pending", "last_reset_date": utcnow(),
    })
    address_id = create_document("address", address, database=db)
    raddiwala = Raddiwala(
        name=name.strip(), email=email.lower(), phone=phone,
        shop_address_id=address_id, last_reset_date=utcnow(),
    )
    try:
        raddiwala_id = _insert_party(db, "raddiwala", raddiwala)
    except DuplicateAccountError:
        db["address"].delete_one({"_id": oid(address_id)})
        raise
    logger.info("Raddiwala registered", extra={"raddiwala_id": raddiwala_id})
    return raddiwala_id


def get_party(db: Database, role: str, party_id: str) -> Dict[str, Any]:
    doc = db[_collection(role)].find_one({"_id": oid(party_id), "is_active": True})
    if not doc:
        raise NotFoundError(f"{LABELS[role]} not found", {"id": party_id})
    return doc


def get_party_by_email(db: Database, role: str, email: str) -> Optional[Dict[str, Any]]:
    return db[_collection(role)].find_one({"email": email.lower(), "is_active": True})


def get_address(db: Database, address_id: str) -> Dict[str, Any]:
    return get_by_id("address", address_id, database=db, label="Address")


def get_addresses(db: Database, address_ids: List[str]) -> List[Dict[str, Any]]:
    if not address_ids:
        return []
    docs = {str(d["_id"]): d for d in db["address"].find({"_id": {"$in": [oid(a) for a in address_ids]}})}
    return [to_str_id(docs[a]) for a in address_ids if a in docs]


def profile(db: Database, role: str, party_id: str) -> Dict[str, Any]:
    """Full profile of a party with its addresses joined in."""
    view = to_str_id(get_party(db, role, party_id))
    if role == "customer":
        view["addresses"] = get_addresses(db, view.get("address_ids", []))
    else:
        view["shop_address"] = to_str_id(get_address(db, view["shop_address_id"]))
    return view


def public_view(db: Database, role: str, party_id: str, with_phone: bool = False) -> Optional[Dict[str, Any]]:
    """Name and rating context shown to the other side of a deal."""
    doc = db[_collection(role)].find_one({"_id": oid(party_id)})
    if not doc:
        return None
    view = {"id": str(doc["_id"]), "name": doc.get("name"), "ratings": doc.get("ratings")}
    if with_phone:
        view["phone"] = doc.get("phone")
    if role == "raddiwala" and doc.get("shop_address_id"):
        address = db["address"].find_one({"_id": oid(doc["shop_address_id"])})
        view["shop_address"] = to_str_id(address)
    return view


def update_profile(db: Database, role: str, party_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
    update = validated(ProfileUpdate, changes).model_dump(exclude_none=True)
    get_party(db, role, party_id)
    if update:
        update["updated_at"] = utcnow()
        db[_collection(role)].update_one({"_id": oid(party_id)}, {"$set": update})
    return profile(db, role, party_id)


def set_profile_picture(db: Database, role: str, party_id: str, url: str) -> Optional[str]:
    """Store the new picture reference and return the one it replaced."""
    party = get_party(db, role, party_id)
    db[_collection(role)].update_one(
        {"_id": party["_id"]}, {"$set": {"profile_picture": url, "updated_at": utcnow()}}
    )
    return party.get("profile_picture")


def customer_owns_address(customer: Dict[str, Any], address_id: str) -> bool:
    return address_id in customer.get("address_ids", [])


def add_address(db: Database, customer_id: str, data: Dict[str, Any]) -> List[Dict[str, Any]]:
    customer = get_party(db, "customer", customer_id)
    if len(customer.get("address_ids", [])) >= MAX_CUSTOMER_ADDRESSES:
        raise ValidationError("Maximum 3 addresses allowed")
    address = validated(Address, data)
    address_id = create_document("address", address, database=db)
    # at most MAX_CUSTOMER_ADDRESSES even under concurrent adds
    updated = db["customer"].find_one_and_update(
        {"_id": customer["_id"], f"address_ids.{MAX_CUSTOMER_ADDRESSES - 1}": {"$exists": False}},
        {"$push": {"address_ids": address_id}, "$set": {"updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        db["address"].delete_one({"_id": oid(address_id)})
        raise ValidationError("Maximum 3 addresses allowed")
    return get_addresses(db, updated["address_ids"])


def _update_address_doc(db: Database, address_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
    update = validated(AddressUpdate, changes).model_dump(exclude_none=True)
    if update:
        update["updated_at"] = utcnow()
        db["address"].update_one({"_id": oid(address_id)}, {"$set": update})
    return to_str_id(get_address(db, address_id))


def update_address(db: Database, customer_id: str, address_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
    customer = get_party(db, "customer", customer_id)
    if not customer_owns_address(customer, address_id):
        raise AccessDeniedError("Address not found or access denied")
    return _update_address_doc(db, address_id, changes)


def delete_address(db: Database, customer_id: str, address_id: str) -> None:
    customer = get_party(db, "customer", customer_id)
    if not customer_owns_address(customer, address_id):
        raise AccessDeniedError("Address not found or access denied")
    db["address"].delete_one({"_id": oid(address_id)})
    db["customer"].update_one(
        {"_id": customer["_id"]},
        {"$pull": {"address_ids": address_id}, "$set": {"updated_at": utcnow()}},
    )


def update_shop_address(db: Database, raddiwala_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
    raddiwala = get_party(db, "raddiwala", raddiwala_id)
    return _update_address_doc(db, raddiwala["shop_address_id"], changes)


def apply_rating(db: Database, role: str, party_id: str, stars: int) -> Dict[str, Any]:
    """Fold one rating into the party's running aggregate."""
    collection = db[_collection(role)]
    doc = collection.find_one_and_update(
        {"_id": oid(party_id)},
        {"$inc": {"ratings.total_stars": stars, "ratings.total_ratings": 1}},
        return_document=ReturnDocument.AFTER,
    )
    if not doc:
        raise NotFoundError(f"{LABELS[role]} not found", {"id": party_id})
    ratings = doc["ratings"]
    avg = ratings["total_stars"] / ratings["total_ratings"] if ratings["total_ratings"] else 0
    # only the writer holding the current totals stores the average
    collection.update_one(
        {
            "_id": doc["_id"],
            "ratings.total_stars": ratings["total_stars"],
            "ratings.total_ratings": ratings["total_ratings"],
        },
        {"$set": {"ratings.avg_rating": avg, "updated_at": utcnow()}},
    )
    ratings["avg_rating"] = avg
    return ratings


def deactivate(db: Database, role: str, party_id: str) -> None:
    party = get_party(db, role, party_id)
    db[_collection(role)].update_one({"_id": party["_id"]}, {"$set": {"is_active": False, "updated_at": utcnow()}})
    logger.info("Account deactivated", extra={"role": role, "party_id": party_id})
