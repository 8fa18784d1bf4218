"""
Error taxonomy shared by the quote, voucher and checkout services.

Every error carries the HTTP status it maps to and a stable `error_code` the
storefront can branch on; `message` is shown to the customer verbatim.
"""
from __future__ import annotations

from typing import Optional


class ShopError(Exception):
    status_code = 400
    error_code = "BAD_REQUEST"

    def __init__(self, message: str, error_code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if error_code is not None:
            self.error_code = error_code


class ValidationError(ShopError):
    error_code = "VALIDATION_ERROR"


class InvalidQuantity(ValidationError):
    error_code = "INVALID_QUANTITY"


class NotFound(ShopError):
    status_code = 404
    error_code = "NOT_FOUND"


class ProductNotFound(NotFound):
    error_code = "PRODUCT_NOT_FOUND"

    def __init__(self, product_ids: list[str]):
        super().__init__(f"Products not found: {', '.join(product_ids)}")
        self.product_ids = product_ids


class OrderNotFound(NotFound):
    error_code = "ORDER_NOT_FOUND"


class MediaNotFound(NotFound):
    error_code = "MEDIA_NOT_FOUND"


class ConflictError(ShopError):
    status_code = 409
    error_code = "CONFLICT"


class CurrencyMismatch(ShopError):
    error_code = "CURRENCY_MISMATCH"

    def __init__(self, currencies: list[str]):
        super().__init__(
            "All items must be in the same currency. "
            "Please create separate orders for different currencies."
        )
        self.currencies = currencies


class InsufficientStock(ShopError):
    status_code = 409
    error_code = "INSUFFICIENT_STOCK"

    def __init__(self, product_id: str, message: str):
        super().__init__(message)
        self.product_id = product_id


class VoucherInvalid(ShopError):
    error_code = "VOUCHER_INVALID"


class VoucherNotFound(VoucherInvalid):
    error_code = "VOUCHER_NOT_FOUND"


class VoucherExpired(VoucherInvalid):
    error_code = "VOUCHER_EXPIRED"


class VoucherNotStarted(VoucherInvalid):
    error_code = "VOUCHER_NOT_STARTED"


class VoucherInactive(VoucherInvalid):
    error_code = "VOUCHER_INACTIVE"


class UsageLimitExceeded(VoucherInvalid):
    error_code = "VOUCHER_USAGE_LIMIT_REACHED"


class UserLimitExceeded(VoucherInvalid):
    error_code = "VOUCHER_USER_LIMIT_REACHED"


class MinimumNotMet(VoucherInvalid):
    error_code = "VOUCHER_MIN_ORDER_NOT_MET"


class NoEligibleProducts(VoucherInvalid):
    error_code = "VOUCHER_NO_ELIGIBLE_PRODUCTS"


class IdempotencyConflict(ShopError):
    """Another request already claimed this idempotency key. Never sent to clients."""

    status_code = 409
    error_code = "IDEMPOTENCY_CONFLICT"

    def __init__(self, key: str):
        super().__init__(f"Idempotency key already used: {key}")
        self.key = key


class InvariantViolation(ShopError):
    status_code = 500
    error_code = "INVARIANT_VIOLATION"


class Forbidden(ShopError):
    status_code = 403
    error_code = "FORBIDDEN"
