import mongomock
import pytest
from fastapi.testclient import TestClient

import database
import main
import pickups
import registry
import storage

PHOTO = "/uploads/pickup-photos/sample.jpg"


@pytest.fixture
def db():
    client = mongomock.MongoClient()
    test_db = client["raddiwala_test"]
    database.ensure_indexes(test_db)
    yield test_db
    client.close()


@pytest.fixture(autouse=True)
def upload_dir(tmp_path, monkeypatch):
    monkeypatch.setattr(storage, "UPLOAD_DIR", tmp_path)
    return tmp_path


def make_customer(db, email="asha@mail.com", city="Pune"):
    customer_id = registry.create_customer(db, "Asha Rao", email, "9876543210")
    addresses = registry.add_address(db, customer_id, {
        "line": "12 MG Road", "area": "Kothrud", "city": city, "pincode": "411038",
    })
    return {"id": customer_id, "address_id": addresses[0]["id"], "email": email}


def make_raddiwala(db, email="ravi@mail.com", city="Pune"):
    raddiwala_id = registry.create_raddiwala(db, "Ravi Kumar", email, "9123456780", {
        "line": "Shop 4, Market Yard", "area": "Gultekdi", "city": city, "pincode": "411037",
    })
    return {"id": raddiwala_id, "email": email}


def open_request(db, customer, weight_category="2–5 kg", photos=None):
    return pickups.create(db, customer["id"], {
        "waste_types": ["Paper", "Cardboard"],
        "weight_category": weight_category,
        "address_id": customer["address_id"],
        "description": "Old newspapers",
    }, photos or [PHOTO])


def bid_payload(request_id, price=10):
    return {
        "pickup_request_id": request_id,
        "item_rates": [{"waste_type": "Paper", "price_per_kg": price}],
        "proposed_pickup_time": "Tomorrow 10am",
    }


@pytest.fixture
def customer(db):
    return make_customer(db)


@pytest.fixture
def raddiwala(db):
    return make_raddiwala(db)


@pytest.fixture
def far_raddiwala(db):
    return make_raddiwala(db, email="mohan@mail.com", city="Mumbai")


@pytest.fixture
def client(db):
    main.app.dependency_overrides[main.get_db] = lambda: db
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


def as_party(party, role):
    return {"X-Party-Id": party["id"], "X-Party-Role": role}
