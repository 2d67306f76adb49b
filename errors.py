"""
Error taxonomy

Every failure the service reports to a client is an AppError carrying the
HTTP status it maps to. Handlers in main.py render them in the response
envelope; anything that is not an AppError is treated as an internal error.
"""

from typing import Any, Dict, Optional


class AppError(Exception):
    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.details = details


# 400
class ValidationError(AppError):
    status_code = 400


class PriceMismatch(ValidationError):
    pass


class SizeRequired(ValidationError):
    pass


class InsufficientStock(ValidationError):
    pass


class CartMismatch(ValidationError):
    pass


class CartTotalMismatch(ValidationError):
    pass


class AmountMismatch(ValidationError):
    pass


class DiscountMismatch(ValidationError):
    pass


class DiscountWithoutOffer(ValidationError):
    pass


class InvalidOfferCode(ValidationError):
    pass


class OfferExpired(ValidationError):
    pass


class OfferAlreadyUsed(ValidationError):
    pass


class OfferNotFirstOrder(ValidationError):
    pass


class InvalidDiscount(ValidationError):
    pass


class InvalidSignature(ValidationError):
    pass


class PaymentNotCaptured(ValidationError):
    pass


class OrderAlreadyProcessed(ValidationError):
    pass


# 401 / 403 / 404 / 409 / 423
class AuthenticationError(AppError):
    status_code = 401


class Forbidden(AppError):
    status_code = 403


class NotFound(AppError):
    status_code = 404


class ProductNotFound(NotFound):
    pass


class OrderNotFound(NotFound):
    pass


class Conflict(AppError):
    status_code = 409


class StockConflict(Conflict):
    pass


class AccountLocked(AppError):
    status_code = 423


# 500: upstream provider failed after retries
class GatewayError(AppError):
    status_code = 500


class PaymentGatewayUnavailable(GatewayError):
    pass


class ShippingGatewayError(GatewayError):
    pass
