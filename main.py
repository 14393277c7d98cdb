import logging
import os
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, File, Form, Header, HTTPException, Query, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel
from pymongo.database import Database

import bids
import database
import notifications
import pickups
import quota
import registry
import settlement
import storage
import verification
from errors import MarketplaceError
from schemas import (
    WASTE_TYPES,
    WEIGHT_CATEGORIES,
    AcceptBidRequest,
    Address,
    AddressUpdate,
    BidUpdate,
    CompletePickupRequest,
    LoginRequest,
    PaymentStatusUpdate,
    PickupRequestUpdate,
    PlaceBidRequest,
    ProfileUpdate,
    PurchaseSubscriptionRequest,
    RatingRequest,
    SendOtpRequest,
    SignupRequest,
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is not None:
        database.ensure_indexes(database.db)
    yield


app = FastAPI(title="RaddiWala Marketplace API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.mount("/uploads", StaticFiles(directory=str(storage.UPLOAD_DIR), check_dir=False), name="uploads")


@app.exception_handler(MarketplaceError)
async def marketplace_error_handler(request, exc: MarketplaceError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# Helpers
def get_db() -> Database:
    if database.db is None:
        raise HTTPException(status_code=500, detail="Database not configured")
    return database.db


class Identity(BaseModel):
    party_id: str
    role: str


def current_party(
    x_party_id: Optional[str] = Header(None),
    x_party_role: Optional[str] = Header(None),
    db: Database = Depends(get_db),
) -> Identity:
    """The (party id, role) pair established by the authentication layer in front of the API."""
    if not x_party_id or not x_party_role:
        raise HTTPException(status_code=401, detail="Access denied. No identity provided.")
    if x_party_role not in ("customer", "raddiwala"):
        raise HTTPException(status_code=401, detail="Invalid role")
    try:
        registry.get_party(db, x_party_role, x_party_id)
    except MarketplaceError:
        raise HTTPException(status_code=401, detail="Invalid identity or user not found.")
    return Identity(party_id=x_party_id, role=x_party_role)


def require_customer(identity: Identity = Depends(current_party)) -> str:
    if identity.role != "customer":
        raise HTTPException(status_code=403, detail="Access denied. Insufficient permissions.")
    return identity.party_id


def require_raddiwala(identity: Identity = Depends(current_party)) -> str:
    if identity.role != "raddiwala":
        raise HTTPException(status_code=403, detail="Access denied. Insufficient permissions.")
    return identity.party_id


def _user_summary(db: Database, role: str, party_id: str) -> dict:
    party = registry.get_party(db, role, party_id)
    return {"id": party_id, "name": party["name"], "email": party["email"], "role": role}


@app.get("/")
async def root():
    return {"message": "RaddiWala Marketplace Backend running"}


@app.get("/api/enums")
async def get_enums():
    return {"waste_types": WASTE_TYPES, "weight_categories": WEIGHT_CATEGORIES}


# Auth (one-time codes)
@app.post("/api/auth/send-otp")
async def send_otp(payload: SendOtpRequest, db: Database = Depends(get_db)):
    code = verification.issue(db, payload.email, payload.purpose, payload.role)
    response = {"message": "OTP sent successfully"}
    if notifications.DEVELOPMENT_MODE:
        response["development_otp"] = code
    return response


@app.post("/api/auth/signup", status_code=201)
async def signup(payload: SignupRequest, db: Database = Depends(get_db)):
    if payload.role == "raddiwala" and payload.shop_address is None:
        raise HTTPException(status_code=400, detail="Shop address is required for Raddiwala")
    verification.check(db, payload.email, "signup", payload.role, payload.otp)
    if payload.role == "customer":
        party_id = registry.create_customer(db, payload.name, payload.email, payload.phone)
    else:
        party_id = registry.create_raddiwala(db, payload.name, payload.email, payload.phone, payload.shop_address.model_dump())
    return {"message": "Account created successfully", "user": _user_summary(db, payload.role, party_id)}


@app.post("/api/auth/login")
async def login(payload: LoginRequest, db: Database = Depends(get_db)):
    verification.check(db, payload.email, "login", payload.role, payload.otp)
    party = registry.get_party_by_email(db, payload.role, payload.email)
    if not party:
        raise HTTPException(status_code=400, detail="User not found or inactive")
    return {"message": "Login successful", "user": _user_summary(db, payload.role, str(party["_id"]))}


@app.get("/api/auth/me")
async def me(identity: Identity = Depends(current_party), db: Database = Depends(get_db)):
    party = registry.get_party(db, identity.role, identity.party_id)
    return {"user": {
        "id": identity.party_id,
        "name": party["name"],
        "email": party["email"],
        "role": identity.role,
        "profile_picture": party.get("profile_picture"),
        "ratings": party.get("ratings"),
    }}


# Profiles (both roles)
def _profile_routes(prefix: str, role: str, guard):
    @app.get(f"{prefix}/profile")
    async def get_profile(party_id: str = Depends(guard), db: Database = Depends(get_db)):
        if role == "raddiwala":
            raddiwala = registry.get_party(db, role, party_id)
            raddiwala = quota.ensure_current_period(db, raddiwala)
            quota.enforce_expiry(db, raddiwala)
        return registry.profile(db, role, party_id)

    @app.put(f"{prefix}/profile")
    async def update_profile(payload: ProfileUpdate, party_id: str = Depends(guard), db: Database = Depends(get_db)):
        return registry.update_profile(db, role, party_id, payload.model_dump(exclude_none=True))

    @app.post(f"{prefix}/profile-picture")
    async def upload_profile_picture(
        profile_picture: UploadFile = File(...),
        party_id: str = Depends(guard),
        db: Database = Depends(get_db),
    ):
        url = storage.save_upload(profile_picture, storage.PROFILE_PICTURES, f"{role}-{party_id}")
        try:
            previous = registry.set_profile_picture(db, role, party_id, url)
        except Exception:
            storage.delete(url)
            raise
        if previous:
            storage.delete(previous)
        return {"message": "Profile picture updated successfully", "profile_picture_url": url}

    @app.get(f"{prefix}/completed-transactions")
    async def completed_transactions(party_id: str = Depends(guard), db: Database = Depends(get_db)):
        return settlement.list_completed(db, role, party_id)

    @app.delete(f"{prefix}/account")
    async def delete_account(party_id: str = Depends(guard), db: Database = Depends(get_db)):
        registry.deactivate(db, role, party_id)
        return {"message": "Account deleted successfully"}


_profile_routes("/api/customers", "customer", require_customer)
_profile_routes("/api/raddiwalas", "raddiwala", require_raddiwala)


# Customer address book
@app.post("/api/customers/addresses", status_code=201)
async def add_address(payload: Address, customer_id: str = Depends(require_customer), db: Database = Depends(get_db)):
    return registry.add_address(db, customer_id, payload.model_dump())


@app.put("/api/customers/addresses/{address_id}")
async def update_address(address_id: str, payload: AddressUpdate, customer_id: str = Depends(require_customer), db: Database = Depends(get_db)):
    return registry.update_address(db, customer_id, address_id, payload.model_dump(exclude_none=True))


@app.delete("/api/customers/addresses/{address_id}")
async def delete_address(address_id: str, customer_id: str = Depends(require_customer), db: Database = Depends(get_db)):
    registry.delete_address(db, customer_id, address_id)
    return {"message": "Address deleted successfully"}


@app.get("/api/customers/pickup-requests")
async def customer_pickup_requests(status: Optional[str] = None, customer_id: str = Depends(require_customer), db: Database = Depends(get_db)):
    return pickups.list_for_customer(db, customer_id, status)


@app.get("/api/customers/pickup-requests/pending")
async def customer_pending_requests(customer_id: str = Depends(require_customer), db: Database = Depends(get_db)):
    return pickups.list_pending_with_bids(db, customer_id)


@app.post("/api/customers/rate-raddiwala/{transaction_id}")
async def rate_raddiwala(transaction_id: str, payload: RatingRequest, customer_id: str = Depends(require_customer), db: Database = Depends(get_db)):
    settlement.rate(db, transaction_id, "customer", customer_id, payload.rating, payload.review)
    return {"message": "Rating submitted successfully"}


# Raddiwala views
@app.put("/api/raddiwalas/shop-address")
async def update_shop_address(payload: AddressUpdate, raddiwala_id: str = Depends(require_raddiwala), db: Database = Depends(get_db)):
    return registry.update_shop_address(db, raddiwala_id, payload.model_dump(exclude_none=True))


@app.get("/api/raddiwalas/pickup-requests/ongoing")
async def ongoing_requests(raddiwala_id: str = Depends(require_raddiwala), db: Database = Depends(get_db)):
    return pickups.list_open_in_city(db, raddiwala_id)


@app.get("/api/raddiwalas/bids")
async def my_bids(status: Optional[str] = None, raddiwala_id: str = Depends(require_raddiwala), db: Database = Depends(get_db)):
    return bids.list_for_raddiwala(db, raddiwala_id, status)


@app.get("/api/raddiwalas/pickups/pending")
async def pending_pickups(raddiwala_id: str = Depends(require_raddiwala), db: Database = Depends(get_db)):
    return bids.list_pending_pickups(db, raddiwala_id)


@app.post("/api/raddiwalas/rate-customer/{transaction_id}")
async def rate_customer(transaction_id: str, payload: RatingRequest, raddiwala_id: str = Depends(require_raddiwala), db: Database = Depends(get_db)):
    settlement.rate(db, transaction_id, "raddiwala", raddiwala_id, payload.rating, payload.review)
    return {"message": "Rating submitted successfully"}


# Pickup requests
@app.post("/api/pickup-requests", status_code=201)
async def create_pickup_request(
    waste_types: List[str] = Form(...),
    weight_category: str = Form(...),
    address_id: str = Form(...),
    description: Optional[str] = Form(None),
    time_window: Optional[str] = Form(None),
    photos: List[UploadFile] = File(...),
    customer_id: str = Depends(require_customer),
    db: Database = Depends(get_db),
):
    stored = storage.save_photos(photos)
    return pickups.create(db, customer_id, {
        "waste_types": waste_types,
        "weight_category": weight_category,
        "address_id": address_id,
        "description": description,
        "time_window": time_window,
    }, stored)


@app.get("/api/pickup-requests/{request_id}")
async def get_pickup_request(request_id: str, identity: Identity = Depends(current_party), db: Database = Depends(get_db)):
    return pickups.get_view(db, request_id, identity.role, identity.party_id)


@app.put("/api/pickup-requests/{request_id}")
async def update_pickup_request(request_id: str, payload: PickupRequestUpdate, customer_id: str = Depends(require_customer), db: Database = Depends(get_db)):
    return pickups.update(db, customer_id, request_id, payload.model_dump(exclude_none=True))


@app.get("/api/pickup-requests/{request_id}/bids")
async def pickup_request_bids(request_id: str, customer_id: str = Depends(require_customer), db: Database = Depends(get_db)):
    return bids.list_for_request(db, customer_id, request_id)


@app.post("/api/pickup-requests/{request_id}/accept-bid")
async def accept_bid(request_id: str, payload: AcceptBidRequest, customer_id: str = Depends(require_customer), db: Database = Depends(get_db)):
    request = pickups.accept_bid(db, customer_id, request_id, payload.bid_id)
    return {"message": "Bid accepted successfully", "pickup_request": request}


@app.post("/api/pickup-requests/{request_id}/cancel")
async def cancel_pickup_request(request_id: str, customer_id: str = Depends(require_customer), db: Database = Depends(get_db)):
    pickups.cancel(db, customer_id, request_id)
    return {"message": "Pickup request cancelled successfully"}


# Bids
@app.post("/api/bids", status_code=201)
async def place_bid(payload: PlaceBidRequest, raddiwala_id: str = Depends(require_raddiwala), db: Database = Depends(get_db)):
    return bids.place(db, raddiwala_id, payload.model_dump())


@app.get("/api/bids/{bid_id}")
async def get_bid(bid_id: str, raddiwala_id: str = Depends(require_raddiwala), db: Database = Depends(get_db)):
    return bids.get_view(db, raddiwala_id, bid_id)


@app.put("/api/bids/{bid_id}")
async def update_bid(bid_id: str, payload: BidUpdate, raddiwala_id: str = Depends(require_raddiwala), db: Database = Depends(get_db)):
    return bids.update(db, raddiwala_id, bid_id, payload.model_dump(exclude_none=True))


@app.delete("/api/bids/{bid_id}")
async def delete_bid(bid_id: str, raddiwala_id: str = Depends(require_raddiwala), db: Database = Depends(get_db)):
    bids.delete(db, raddiwala_id, bid_id)
    return {"message": "Bid deleted successfully"}


@app.post("/api/bids/{bid_id}/complete")
async def complete_pickup(bid_id: str, payload: CompletePickupRequest, raddiwala_id: str = Depends(require_raddiwala), db: Database = Depends(get_db)):
    transaction = settlement.complete(db, raddiwala_id, bid_id, payload.actual_weight, payload.total_amount)
    return {"message": "Pickup marked as completed successfully", "transaction": transaction}


# Transactions
@app.get("/api/transactions")
async def list_transactions(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status: Optional[str] = None,
    identity: Identity = Depends(current_party),
    db: Database = Depends(get_db),
):
    return settlement.list_transactions(db, identity.role, identity.party_id, page, limit, status)


@app.get("/api/transactions/stats/summary")
async def transaction_stats(identity: Identity = Depends(current_party), db: Database = Depends(get_db)):
    return settlement.stats(db, identity.role, identity.party_id)


@app.get("/api/transactions/{transaction_id}")
async def get_transaction(transaction_id: str, identity: Identity = Depends(current_party), db: Database = Depends(get_db)):
    return settlement.get_transaction(db, transaction_id, identity.role, identity.party_id)


@app.post("/api/transactions/{transaction_id}/customer-rating")
async def customer_rating(transaction_id: str, payload: RatingRequest, customer_id: str = Depends(require_customer), db: Database = Depends(get_db)):
    transaction = settlement.rate(db, transaction_id, "customer", customer_id, payload.rating, payload.review)
    return {"message": "Rating submitted successfully", "transaction": transaction}


@app.post("/api/transactions/{transaction_id}/raddiwala-rating")
async def raddiwala_rating(transaction_id: str, payload: RatingRequest, raddiwala_id: str = Depends(require_raddiwala), db: Database = Depends(get_db)):
    transaction = settlement.rate(db, transaction_id, "raddiwala", raddiwala_id, payload.rating, payload.review)
    return {"message": "Rating submitted successfully", "transaction": transaction}


@app.put("/api/transactions/{transaction_id}/payment-status")
async def payment_status(transaction_id: str, payload: PaymentStatusUpdate, identity: Identity = Depends(current_party), db: Database = Depends(get_db)):
    transaction = settlement.update_payment_status(db, transaction_id, identity.role, identity.party_id, payload.payment_status)
    return {"message": "Payment status updated successfully", "transaction": transaction}


# Subscriptions
@app.get("/api/subscriptions")
async def subscription_details(raddiwala_id: str = Depends(require_raddiwala), db: Database = Depends(get_db)):
    return quota.status(db, raddiwala_id)


@app.get("/api/subscriptions/status")
async def subscription_status(raddiwala_id: str = Depends(require_raddiwala), db: Database = Depends(get_db)):
    return quota.status(db, raddiwala_id)


@app.post("/api/subscriptions/purchase")
async def purchase_subscription(payload: PurchaseSubscriptionRequest, raddiwala_id: str = Depends(require_raddiwala), db: Database = Depends(get_db)):
    subscription = quota.purchase(db, raddiwala_id, payload.payment_method, payload.transaction_id)
    return {
        "message": "Subscription purchased successfully",
        "subscription": subscription,
        "expiry_date": subscription["expiry_date"],
    }


@app.get("/api/subscriptions/history")
async def subscription_history(raddiwala_id: str = Depends(require_raddiwala), db: Database = Depends(get_db)):
    return quota.history(db, raddiwala_id)


@app.post("/api/subscriptions/cancel")
async def cancel_subscription(raddiwala_id: str = Depends(require_raddiwala), db: Database = Depends(get_db)):
    quota.cancel(db, raddiwala_id)
    return {"message": "Subscription cancelled successfully"}


# Notifications
@app.get("/api/notifications")
async def get_notifications(unread: bool = False, identity: Identity = Depends(current_party), db: Database = Depends(get_db)):
    party = registry.get_party(db, identity.role, identity.party_id)
    return notifications.list_notifications(db, party["email"], unread_only=unread)


@app.post("/api/notifications/{notification_id}/read")
async def read_notification(notification_id: str, identity: Identity = Depends(current_party), db: Database = Depends(get_db)):
    party = registry.get_party(db, identity.role, identity.party_id)
    notifications.mark_read(db, notification_id, party["email"])
    return {"status": "ok"}


# Schema exposure for tooling
@app.get("/schema")
async def get_schema():
    return {
        "collections": [
            "customer", "raddiwala", "address", "pickuprequest", "bid",
            "completedtransaction", "subscription", "onetimecode", "notification",
        ]
    }


@app.get("/test")
async def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }
    db = database.db
    try:
        if db is not None:
            response["database"] = "✅ Available"
            response["database_url"] = "✅ Set"
            response["database_name"] = db.name
            response["connection_status"] = "Connected"
            try:
                collections = db.list_collection_names()
                response["collections"] = collections[:10]
                response["database"] = "✅ Connected & Working"
            except Exception as e:
                response["database"] = f"⚠️  Connected but Error: {str(e)[:50]}"
        else:
            response["database"] = "⚠️  Available but not initialized"
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:50]}"

    response["database_url"] = "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set"
    response["database_name"] = "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set"
    return response

if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
