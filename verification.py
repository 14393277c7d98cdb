"""
One-time email codes for signup, login and email change.

At most one outstanding code exists per (email, purpose, role). Codes are
single-use and live OTP_TTL_SECONDS; the TTL index on `expires_at` reaps them,
and `check` also refuses anything past its expiry the reaper has not removed yet.
"""
import logging
import os
import re
import secrets
from datetime import datetime, timedelta
from typing import Optional

from pymongo import DESCENDING
from pymongo.database import Database

import notifications
import registry
from database import create_document, utcnow
from errors import AlreadyUsedError, ExpiredError, InvalidCodeError, ValidationError, validated
from schemas import OneTimeCode

logger = logging.getLogger(__name__)

OTP_TTL_SECONDS = int(os.getenv("OTP_TTL_SECONDS", 300))

PURPOSES = ("signup", "login", "email_change")
ROLES = ("customer", "raddiwala")

SUBJECTS = {
    "signup": "RaddiWala - Complete Your Registration",
    "login": "RaddiWala - Login Verification",
    "email_change": "RaddiWala - Email Change Verification",
}


def generate_code() -> str:
    return str(1000 + secrets.randbelow(9000))


def _check_eligibility(db: Database, email: str, purpose: str, role: str) -> None:
    owner = registry.email_owner(db, email)
    if purpose == "signup" and owner:
        raise ValidationError("Email already registered")
    if purpose == "login":
        if owner is None:
            label = "customer" if role == "customer" else "raddiwala"
            raise ValidationError(f"No {label} account found with this email")
        if owner != role:
            other = "Raddiwala" if owner == "raddiwala" else "Customer"
            raise ValidationError(f"Email registered as {other}. Please use correct role.")


def issue(db: Database, email: str, purpose: str, role: str, now: Optional[datetime] = None) -> str:
    """Store a fresh code for the triple, replacing any outstanding one, and send it."""
    if purpose not in PURPOSES:
        raise ValidationError("Invalid purpose")
    if role not in ROLES:
        raise ValidationError("Invalid role")
    email = email.lower()
    _check_eligibility(db, email, purpose, role)

    now = now or utcnow()
    code = generate_code()
    record = validated(OneTimeCode, {
        "email": email, "otp": code, "purpose": purpose, "role": role,
        "expires_at": now + timedelta(seconds=OTP_TTL_SECONDS),
    })
    db["onetimecode"].delete_many({"email": email, "purpose": purpose, "role": role})
    create_document("onetimecode", dict(record.model_dump(), created_at=now), database=db)

    notifications.send(
        db,
        email,
        SUBJECTS[purpose],
        f"Your verification code for {purpose} is {code}. "
        f"This code will expire in {OTP_TTL_SECONDS // 60} minutes. Please do not share this code with anyone.",
    )
    logger.info("Verification code issued", extra={"purpose": purpose, "role": role})
    return code


def check(db: Database, email: str, purpose: str, role: str, code: str, now: Optional[datetime] = None) -> None:
    """Consume the outstanding code or raise ExpiredError / AlreadyUsedError / InvalidCodeError."""
    now = now or utcnow()
    email = email.lower()
    record = db["onetimecode"].find_one(
        {"email": email, "purpose": purpose, "role": role},
        sort=[("created_at", DESCENDING)],
    )
    if record is None or now > record["expires_at"]:
        raise ExpiredError("Invalid or expired OTP")
    if record["is_used"]:
        raise AlreadyUsedError("OTP already used")
    code = str(code).strip()
    if not re.fullmatch(r"\d{4}", code, re.ASCII) or not secrets.compare_digest(record["otp"], code):
        raise InvalidCodeError("Invalid OTP")

    res = db["onetimecode"].update_one({"_id": record["_id"], "is_used": False}, {"$set": {"is_used": True}})
    if res.matched_count == 0:
        raise AlreadyUsedError("OTP already used")
