"""Custom exceptions for the storefront backend."""

from typing import Any, Dict, List, Optional


class StorefrontError(Exception):
    """Base exception for all storefront errors."""

    status_code = 500
    error = "Internal Server Error"


class ValidationError(StorefrontError):
    """Raised when incoming data is malformed or incomplete."""

    status_code = 400
    error = "Validation Error"

    def __init__(self, message: str, details: Optional[List[Dict[str, Any]]] = None):
        self.details = details or []
        super().__init__(message)


class NotFoundError(StorefrontError):
    """Raised when a referenced product, variant, order or purchase is gone."""

    status_code = 404
    error = "Not Found"

    def __init__(self, message: str, resource: Optional[str] = None, identifier: Optional[str] = None):
        self.resource = resource
        self.identifier = identifier
        super().__init__(message)


class InsufficientStockError(StorefrontError):
    """Raised when the conditional stock decrement did not match."""

    status_code = 409
    error = "Insufficient Stock"

    def __init__(self, product_name: str, available: int, requested: int, variant_info: str = ""):
        self.product_name = product_name
        self.available = available
        self.requested = requested
        self.variant_info = variant_info
        label = f"{product_name} ({variant_info})" if variant_info else product_name
        super().__init__(
            f"Insufficient stock for {label}. Available: {available}, Requested: {requested}"
        )


class AuthenticationError(StorefrontError):
    """Raised for a bad or missing webhook signature, or missing credentials."""

    status_code = 401
    error = "Unauthorized"

    def __init__(self, message: str = "Invalid signature", status_code: Optional[int] = None):
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message)


class AuthorizationError(StorefrontError):
    """Raised when a caller acts on a resource owned by someone else."""

    status_code = 403
    error = "Forbidden"

    def __init__(self, message: str = "Access denied"):
        super().__init__(message)


class RateLimitError(StorefrontError):
    """Raised when a caller exceeded the allowed request rate."""

    status_code = 429
    error = "Too Many Requests"

    def __init__(self, retry_after: int, message: str = "Rate limit exceeded. Please try again later."):
        self.retry_after = retry_after
        super().__init__(message)
