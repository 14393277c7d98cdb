"""
Domain errors raised by the marketplace services.

Every error carries a machine-readable code and the HTTP status the API layer
answers with, so routes never build HTTPException by hand.
"""
from typing import Any, Dict, Optional

from pydantic import ValidationError as PydanticValidationError


class MarketplaceError(Exception):
    code = "MARKETPLACE_ERROR"
    status_code = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"message": self.message, "code": self.code, "details": self.details}


class ValidationError(MarketplaceError):
    code = "VALIDATION_ERROR"
    status_code = 400


class InvalidStateError(MarketplaceError):
    code = "INVALID_STATE"
    status_code = 400


class NotFoundError(MarketplaceError):
    code = "NOT_FOUND"
    status_code = 404


class AccessDeniedError(MarketplaceError):
    code = "ACCESS_DENIED"
    status_code = 403


class DuplicateBidError(MarketplaceError):
    code = "DUPLICATE_BID"
    status_code = 409


class QuotaExceededError(MarketplaceError):
    code = "QUOTA_EXCEEDED"
    status_code = 403


class GeoMismatchError(MarketplaceError):
    code = "GEO_MISMATCH"
    status_code = 400


class AlreadyRatedError(MarketplaceError):
    code = "ALREADY_RATED"
    status_code = 409


class DuplicateAccountError(MarketplaceError):
    code = "ACCOUNT_EXISTS"
    status_code = 409


# Verification codes
class AlreadyUsedError(MarketplaceError):
    code = "OTP_ALREADY_USED"
    status_code = 400


class ExpiredError(MarketplaceError):
    code = "OTP_EXPIRED"
    status_code = 400


class InvalidCodeError(MarketplaceError):
    code = "OTP_INVALID"
    status_code = 400


def validated(model_cls, data: Dict[str, Any]):
    """Build a schema model, turning pydantic failures into ValidationError."""
    try:
        return model_cls(**data)
    except PydanticValidationError as exc:
        problems = [
            {"field": ".".join(str(part) for part in err["loc"]), "message": err["msg"]}
            for err in exc.errors()
        ]
        first = problems[0] if problems else {"field": "", "message": "Invalid input"}
        raise ValidationError(f"{first['field']}: {first['message']}", {"errors": problems}) from exc
