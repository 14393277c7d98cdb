"""
Outbound notifications.

Every notification lands in the `notification` collection (the in-app inbox)
and, when SMTP is configured, is also emailed. Delivery problems are logged
and never propagate to the caller.
"""
import logging
import os
import smtplib
from email.message import EmailMessage
from typing import Any, Dict, List

from pymongo.database import Database

from database import create_document, get_documents, oid, to_str_id, utcnow
from errors import NotFoundError
from schemas import Notification

logger = logging.getLogger(__name__)

EMAIL_HOST = os.getenv("EMAIL_HOST")
EMAIL_PORT = int(os.getenv("EMAIL_PORT", 587))
EMAIL_USER = os.getenv("EMAIL_USER")
EMAIL_PASS = os.getenv("EMAIL_PASS")
EMAIL_FROM = os.getenv("EMAIL_FROM", "RaddiWala <no-reply@raddiwala.local>")
DEVELOPMENT_MODE = os.getenv("DEVELOPMENT_MODE", "false").lower() == "true"

FOOTER = "Connecting you with scrap collectors for a greener tomorrow."


def _deliver_email(recipient: str, subject: str, body: str) -> None:
    msg = EmailMessage()
    msg["From"] = EMAIL_FROM
    msg["To"] = recipient
    msg["Subject"] = subject
    msg.set_content(f"{body}\n\n-- \n{FOOTER}")
    with smtplib.SMTP(EMAIL_HOST, EMAIL_PORT, timeout=10) as smtp:
        smtp.starttls()
        if EMAIL_USER:
            smtp.login(EMAIL_USER, EMAIL_PASS or "")
        smtp.send_message(msg)


def send(db: Database, recipient: str, subject: str, message: str) -> bool:
    """Record and deliver a notification. Returns False when anything failed."""
    try:
        create_document("notification", Notification(email=recipient, title=subject, message=message), database=db)
    except Exception:
        logger.exception("Failed to store notification", extra={"recipient": recipient, "subject": subject})
        return False

    if DEVELOPMENT_MODE or not EMAIL_HOST:
        logger.info("Notification to %s: %s", recipient, subject)
        return True

    try:
        _deliver_email(recipient, subject, message)
    except (smtplib.SMTPException, OSError) as e:
        logger.warning("Email delivery failed: %s", e, extra={"recipient": recipient, "subject": subject})
        return False
    logger.info("Notification emailed to %s", recipient)
    return True


def list_notifications(db: Database, email: str, unread_only: bool = False) -> List[Dict[str, Any]]:
    flt: Dict[str, Any] = {"email": email}
    if unread_only:
        flt["read"] = False
    items = get_documents("notification", flt, database=db, sort=[("created_at", -1)])
    return [to_str_id(n) for n in items]


def mark_read(db: Database, notification_id: str, email: str) -> None:
    res = db["notification"].update_one(
        {"_id": oid(notification_id), "email": email},
        {"$set": {"read": True, "updated_at": utcnow()}},
    )
    if res.matched_count == 0:
        raise NotFoundError("Notification not found")
