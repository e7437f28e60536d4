"""
Business-rule failures raised by the storefront core.

Every error carries the HTTP status it maps to; main.py renders them as
{"success": false, "message": ...}.
"""
from typing import Any, List, Optional


class StoreError(Exception):
    status_code = 400
    default_message = "Request failed"

    def __init__(self, message: Optional[str] = None, errors: Optional[List[Any]] = None):
        self.message = message or self.default_message
        self.errors = errors
        super().__init__(self.message)


class NotFound(StoreError):
    status_code = 404
    default_message = "Not found"


class ProductNotFound(NotFound):
    default_message = "Product not found or not available"


class CategoryNotFound(NotFound):
    default_message = "Category not found"


class OrderNotFound(NotFound):
    default_message = "Order not found"


class UserNotFound(NotFound):
    default_message = "User not found"


class ItemNotFound(NotFound):
    default_message = "Item not found in cart"


class ValidationFailed(StoreError):
    default_message = "Validation failed"


class EmptyCart(ValidationFailed):
    default_message = "Cart is empty"


class InsufficientStock(StoreError):
    default_message = "Insufficient stock"

    def __init__(self, message: Optional[str] = None, available: int = 0):
        self.available = available
        super().__init__(message)


class VariantUnavailable(StoreError):
    default_message = "Selected size and color combination is not available"


class ProductUnavailable(StoreError):
    default_message = "Product is no longer available"


class InvalidStatus(StoreError):
    default_message = "Invalid order status"


class Unauthorized(StoreError):
    status_code = 401
    default_message = "Authentication required"


class Forbidden(StoreError):
    status_code = 403
    default_message = "Admin access required"


class Conflict(StoreError):
    status_code = 409
    default_message = "Resource already exists"
