"""
Domain errors raised by the cart, checkout and payment services.

Every error carries a machine-readable ``kind`` and the HTTP status the API
layer answers with; ``main.py`` renders them as ``{"detail", "kind"}``.
"""
from fastapi import status


class CommerceError(Exception):
    kind: str = "CommerceError"
    status_code: int = status.HTTP_400_BAD_REQUEST
    default_message: str = "Request could not be processed"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class NotFound(CommerceError):
    kind = "NotFound"
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Resource not found"


class Forbidden(CommerceError):
    kind = "Forbidden"
    status_code = status.HTTP_403_FORBIDDEN
    default_message = "Not authorized to access this resource"


class EmptyCart(CommerceError):
    kind = "EmptyCart"
    default_message = "Cart is empty"


class ProductUnavailable(CommerceError):
    kind = "ProductUnavailable"
    default_message = "Product is not available"


class InsufficientStock(CommerceError):
    kind = "InsufficientStock"
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, product_name: str, requested: int, available: int):
        self.product_name = product_name
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient stock for {product_name}: requested {requested}, available {available}"
        )


class InvalidDiscountCode(CommerceError):
    kind = "InvalidDiscountCode"
    default_message = "Invalid discount code"


class InvalidShippingMethod(CommerceError):
    kind = "InvalidShippingMethod"
    default_message = "Invalid shipping method"


class InvalidStateTransition(CommerceError):
    kind = "InvalidStateTransition"
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, current: str, target: str, message: str | None = None):
        self.current = current
        self.target = target
        super().__init__(message or f"Cannot change order status from {current} to {target}")


class PaymentNotSucceeded(CommerceError):
    kind = "PaymentNotSucceeded"
    status_code = status.HTTP_402_PAYMENT_REQUIRED
    default_message = "Payment was declined"


class InvalidWebhookSignature(CommerceError):
    kind = "InvalidWebhookSignature"
    default_message = "Invalid webhook signature"


class NoPaymentTransaction(CommerceError):
    kind = "NoPaymentTransaction"
    default_message = "Order has no payment transaction"


class AlreadyRefunded(CommerceError):
    kind = "AlreadyRefunded"
    status_code = status.HTTP_409_CONFLICT
    default_message = "Order is already refunded"


class ProviderError(CommerceError):
    kind = "ProviderError"
    status_code = status.HTTP_502_BAD_GATEWAY
    default_message = "Payment provider error, please retry"


class ValidationFailed(CommerceError):
    kind = "ValidationFailed"


class ConcurrentModification(CommerceError):
    kind = "ConcurrentModification"
    status_code = status.HTTP_409_CONFLICT
    default_message = "Resource was modified by another request, please retry"
