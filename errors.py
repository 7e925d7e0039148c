"""Exceptions raised by the storefront route handlers and business rules."""
from typing import List, Optional


class StorefrontError(Exception):
    """Base exception for all storefront errors."""

    error = "Internal Server Error"

    def __init__(self, message: str, error: Optional[str] = None):
        self.message = message
        if error:
            self.error = error
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"error": self.error, "message": self.message}


class AuthenticationError(StorefrontError):
    """Raised when the request carries no usable identity token."""

    error = "Unauthorized"


class OwnershipError(StorefrontError):
    """Raised when a resource exists but belongs to another user."""

    error = "Forbidden"


class NotFoundError(StorefrontError):
    """Raised when no matching row exists for the caller."""

    error = "Not Found"

    def __init__(self, what: str, message: Optional[str] = None):
        self.what = what
        super().__init__(message or f"{what} not found")


class ValidationError(StorefrontError):
    """Raised when input fails field-level validation."""

    error = "Validation failed"

    def __init__(self, details: List[str]):
        self.details = list(details)
        super().__init__("; ".join(self.details))

    def to_dict(self) -> dict:
        return {"error": self.error, "message": self.message, "details": self.details}


class BusinessRuleError(StorefrontError):
    """Raised when a request is well-formed but not allowed in the current state."""

    error = "Bad Request"


class InsufficientStockError(BusinessRuleError):
    """Raised when a variant cannot cover the requested quantity."""

    def __init__(self, available: int, message: str = "Insufficient stock"):
        self.available = available
        super().__init__(message, error=message)

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["availableStock"] = self.available
        return data


class StoreOperationError(StorefrontError):
    """Raised when a write against the store fails after partial progress."""

    error = "Internal Server Error"
