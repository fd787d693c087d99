"""
Error taxonomy shared by the ledgers, the state machine and the webhook
pipeline.

Security and replay errors stop at the pipeline boundary. Business-rule
errors are raised inside atomic blocks so the whole block rolls back, then
converted to typed results by the state machine. Storage errors are never
wrapped: django.db.DatabaseError propagates as-is.
"""


class FulfillmentError(Exception):
    """Base class for every error raised by the fulfillment core."""
    pass


class SecurityError(FulfillmentError):
    """Raised when a webhook signature is missing or does not verify."""
    pass


class ReplayError(FulfillmentError):
    """Raised for events that must be skipped rather than applied."""
    pass


class ExpiredEventError(ReplayError):
    """Raised when an event is older than the anti-replay window."""
    def __init__(self, event_id: str, age_seconds: int, window_seconds: int):
        self.event_id = event_id
        self.age_seconds = age_seconds
        self.window_seconds = window_seconds
        super().__init__(
            f"Event {event_id} is {age_seconds}s old "
            f"(anti-replay window {window_seconds}s)"
        )


class PayloadValidationError(FulfillmentError):
    """Raised when a webhook payload is malformed."""
    pass


class ConcurrencyConflict(FulfillmentError):
    """Raised when a ledger write lost a race and the transaction may be retried."""
    pass


class BusinessRuleError(FulfillmentError):
    """Base class for rejections that callers surface instead of retrying."""
    pass


class InsufficientStock(BusinessRuleError):
    """Raised when there's not enough stock to commit an order item."""
    def __init__(self, sku_id: int, requested: int, available: int):
        self.sku_id = sku_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient stock for SKU {sku_id}: "
            f"requested {requested}, available {available}"
        )


class SkuNotFound(BusinessRuleError):
    def __init__(self, sku_id: int):
        self.sku_id = sku_id
        super().__init__(f"SKU {sku_id} not found")


class SkuInactive(BusinessRuleError):
    def __init__(self, sku_id: int):
        self.sku_id = sku_id
        super().__init__(f"SKU {sku_id} is inactive")


class CapReached(BusinessRuleError):
    """Raised when a discount code has no redemptions left."""
    def __init__(self, code: str, cap: int):
        self.code = code
        self.cap = cap
        super().__init__(f"Discount code {code} reached its usage cap of {cap}")


class OrderValidationError(BusinessRuleError):
    """Raised when a checkout request is not a valid order."""
    pass


class DiscountRejected(BusinessRuleError):
    """Raised when a discount code cannot be applied to a new order."""
    def __init__(self, code: str, reason: str, message: str):
        self.code = code
        self.reason = reason
        super().__init__(message)
