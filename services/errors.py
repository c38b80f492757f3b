from typing import Any, List, Optional


class BillingError(Exception):
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None, errors: Optional[List[Any]] = None):
        self.message = message or self.default_message
        self.errors = errors
        super().__init__(self.message)

    def to_dict(self) -> dict:
        body = {"success": False, "message": self.message}
        if self.errors:
            body["errors"] = self.errors
        return body


class ValidationError(BillingError):
    status_code = 400
    default_message = "Validation failed"


class AuthenticationError(BillingError):
    status_code = 401
    default_message = "Authentication required"


class AuthorizationError(BillingError):
    status_code = 403
    default_message = "Insufficient permissions"


class NotFoundError(BillingError):
    status_code = 404
    default_message = "Not found"


class ConflictError(BillingError):
    status_code = 409
    default_message = "Resource already exists"


class BelowFloorPriceError(BillingError):
    status_code = 400
    default_message = "Prices cannot be below your base plan minimums"


class NoPlanAvailableError(BillingError):
    status_code = 400
    default_message = "No price plan available"


class InsufficientFundsError(BillingError):
    status_code = 400
    default_message = "Insufficient balance"
