"""
Database Schemas for RaddiWala (scrap pickup marketplace)

Each Pydantic model represents a MongoDB collection. Collection name is the lowercase of the class name.
Request payload models live at the bottom of the file.
"""
from datetime import datetime
from typing import Optional, List, Literal
from pydantic import BaseModel, Field, EmailStr

WASTE_TYPES = [
    "Paper",
    "Cardboard",
    "Glass",
    "Plastic Bottles & Containers",
    "Plastic Bags & Wraps",
    "Metal Cans",
    "Other Metal Items",
    "Wood",
    "Textiles & Clothes",
    "Shoes & Leather",
    "Electronics",
    "Batteries",
    "Rubber",
    "Building Materials",
    "Organic Waste",
    "Other",
]

WEIGHT_CATEGORIES = [
    "0–2 kg",
    "2–5 kg",
    "5–10 kg",
    "10–20 kg",
    "20–30 kg",
    "30–50 kg",
    "50+ kg",
]

# Midpoint in kg used for bid estimates
WEIGHT_MIDPOINTS = {
    "0–2 kg": 1,
    "2–5 kg": 3.5,
    "5–10 kg": 7.5,
    "10–20 kg": 15,
    "20–30 kg": 25,
    "30–50 kg": 40,
    "50+ kg": 60,
}

WasteType = Literal[
    "Paper", "Cardboard", "Glass", "Plastic Bottles & Containers", "Plastic Bags & Wraps",
    "Metal Cans", "Other Metal Items", "Wood", "Textiles & Clothes", "Shoes & Leather",
    "Electronics", "Batteries", "Rubber", "Building Materials", "Organic Waste", "Other",
]
WeightCategory = Literal["0–2 kg", "2–5 kg", "5–10 kg", "10–20 kg", "20–30 kg", "30–50 kg", "50+ kg"]
Role = Literal["customer", "raddiwala"]
RequestStatus = Literal["open", "accepted", "completed", "cancelled"]
PaymentStatus = Literal["pending", "completed", "disputed"]
OtpPurpose = Literal["signup", "login", "email_change"]

PINCODE_PATTERN = r"^[1-9][0-9]{5}$"
PHONE_PATTERN = r"^[6-9]\d{9}$"


class Address(BaseModel):
    line: str = Field(..., min_length=1, description="House / street line")
    area: str = Field(..., min_length=1, description="Locality")
    city: str = Field(..., min_length=1, description="City, used to match collectors")
    pincode: str = Field(..., pattern=PINCODE_PATTERN, description="6-digit Indian pincode")
    landmark: Optional[str] = None


class Ratings(BaseModel):
    avg_rating: float = Field(0, ge=0, le=5)
    total_stars: int = 0
    total_ratings: int = 0


class Customer(BaseModel):
    name: str = Field(..., min_length=2, max_length=50)
    email: EmailStr
    phone: str = Field(..., pattern=PHONE_PATTERN)
    is_phone_verified: bool = False
    is_active: bool = True
    profile_picture: Optional[str] = None
    address_ids: List[str] = Field(default_factory=list, max_length=3)
    ratings: Ratings = Field(default_factory=Ratings)
    role: Literal["customer"] = "customer"


class Raddiwala(BaseModel):
    name: str = Field(..., min_length=2, max_length=50)
    email: EmailStr
    phone: str = Field(..., pattern=PHONE_PATTERN)
    is_active: bool = True
    profile_picture: Optional[str] = None
    shop_address_id: str
    is_premium_user: bool = False
    monthly_pickups_count: int = Field(0, ge=0)
    last_reset_date: datetime
    ratings: Ratings = Field(default_factory=Ratings)
    role: Literal["raddiwala"] = "raddiwala"


class PickupRequest(BaseModel):
    customer_id: str
    photos: List[str] = Field(..., min_length=1, max_length=5)
    waste_types: List[WasteType] = Field(..., min_length=1)
    weight_category: WeightCategory
    description: Optional[str] = Field(None, max_length=500)
    address_id: str
    time_window: Optional[str] = None
    is_active: bool = True
    status: RequestStatus = "open"
    accepted_bid_id: Optional[str] = None
    accepted_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None


class ItemRate(BaseModel):
    waste_type: WasteType
    price_per_kg: float = Field(..., ge=0)


class Bid(BaseModel):
    pickup_request_id: str
    raddiwala_id: str
    item_rates: List[ItemRate] = Field(..., min_length=1)
    proposed_pickup_time: str = Field(..., min_length=1)
    is_accepted: bool = False
    total_estimated_amount: float = 0
    notes: Optional[str] = Field(None, max_length=200)


class RatingEntry(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    review: Optional[str] = Field(None, max_length=300)
    rated_at: datetime


class CompletedTransaction(BaseModel):
    pickup_request_id: str
    customer_id: str
    raddiwala_id: str
    total_amount: float = Field(..., ge=0)
    actual_weight: Optional[float] = Field(None, ge=0)
    completed_at: datetime
    # customer -> raddiwala
    customer_rating: Optional[RatingEntry] = None
    # raddiwala -> customer
    raddiwala_rating: Optional[RatingEntry] = None
    payment_status: PaymentStatus = "completed"


class Subscription(BaseModel):
    raddiwala_id: str
    start_date: datetime
    expiry_date: datetime
    price_paid: float = 30
    is_active: bool = True
    payment_method: Literal["online", "cash", "upi"] = "online"
    transaction_id: Optional[str] = None


class OneTimeCode(BaseModel):
    email: EmailStr
    otp: str = Field(..., pattern=r"^\d{4}$")
    purpose: OtpPurpose
    role: Role
    is_used: bool = False
    expires_at: datetime


class Notification(BaseModel):
    email: EmailStr
    title: str
    message: str
    read: bool = False


# ---------- Request payloads ----------

class SendOtpRequest(BaseModel):
    email: EmailStr
    purpose: OtpPurpose
    role: Role


class SignupRequest(BaseModel):
    email: EmailStr
    otp: str
    role: Role
    name: str
    phone: str
    shop_address: Optional[Address] = None


class LoginRequest(BaseModel):
    email: EmailStr
    otp: str
    role: Role


class ProfileUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=2, max_length=50)
    phone: Optional[str] = Field(None, pattern=PHONE_PATTERN)


class AddressUpdate(BaseModel):
    line: Optional[str] = Field(None, min_length=1)
    area: Optional[str] = Field(None, min_length=1)
    city: Optional[str] = Field(None, min_length=1)
    pincode: Optional[str] = Field(None, pattern=PINCODE_PATTERN)
    landmark: Optional[str] = None


class PickupRequestUpdate(BaseModel):
    description: Optional[str] = Field(None, max_length=500)
    time_window: Optional[str] = None


class AcceptBidRequest(BaseModel):
    bid_id: str


class PlaceBidRequest(BaseModel):
    pickup_request_id: str
    item_rates: List[ItemRate]
    proposed_pickup_time: str
    notes: Optional[str] = None


class BidUpdate(BaseModel):
    item_rates: Optional[List[ItemRate]] = None
    proposed_pickup_time: Optional[str] = None
    notes: Optional[str] = None


class CompletePickupRequest(BaseModel):
    actual_weight: Optional[float] = Field(None, ge=0)
    total_amount: Optional[float] = Field(None, ge=0)


class RatingRequest(BaseModel):
    rating: int
    review: Optional[str] = None


class PaymentStatusUpdate(BaseModel):
    payment_status: str


class PurchaseSubscriptionRequest(BaseModel):
    payment_method: Literal["online", "cash", "upi"] = "online"
    transaction_id: Optional[str] = None
