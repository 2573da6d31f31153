"""Domain exceptions for marketplace escrow.

These exceptions are framework-agnostic and represent business rule violations
or failures of the external collaborators (gateway, record store). They are
caught and translated to HTTP responses once, by the API layer's middleware.
"""


class MarketplaceError(Exception):
    """Base exception for all domain errors."""

    def __init__(self, message: str, code: str = "MARKETPLACE_ERROR") -> None:
        self.message = message
        self.code = code
        super().__init__(self.message)


# --- Precondition Errors ---


class PreconditionError(MarketplaceError):
    """Raised when the order's state violates an operation's precondition.

    Example: releasing payment on an order that was never delivered.
    """

    def __init__(self, message: str, code: str = "PRECONDITION_FAILED") -> None:
        super().__init__(message=message, code=code)


class NotAuthorizedError(PreconditionError):
    """Raised when the acting user may not perform the operation on this order."""

    def __init__(self, message: str) -> None:
        super().__init__(message=message, code="NOT_AUTHORIZED")


class InvalidStateTransitionError(MarketplaceError):
    """Raised when an attempted status transition is not allowed.

    Example: completed -> active (completed is final).
    """

    def __init__(self, current_state: str, attempted: str) -> None:
        super().__init__(
            message=f"Invalid state transition: {current_state} -> {attempted}",
            code="INVALID_STATE_TRANSITION",
        )
        self.current_state = current_state
        self.attempted = attempted


# --- Lookup Errors ---


class OrderNotFoundError(MarketplaceError):
    """Raised when an order ID does not exist."""

    def __init__(self, order_id: str) -> None:
        super().__init__(
            message=f"Order not found: {order_id}",
            code="ORDER_NOT_FOUND",
        )
        self.order_id = order_id


class PaymentNotFoundError(MarketplaceError):
    """Raised when no payment matches an ID or gateway transaction reference."""

    def __init__(self, reference: str) -> None:
        super().__init__(
            message=f"Payment not found: {reference}",
            code="PAYMENT_NOT_FOUND",
        )
        self.reference = reference


# --- Gateway Errors ---


class GatewayError(MarketplaceError):
    """Raised when the payment gateway rejects a call or cannot be reached.

    status_code is the gateway's HTTP status, or None when the request never
    produced a response (timeout, connection refused, missing configuration).
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message=message, code="GATEWAY_ERROR")
        self.status_code = status_code


class UnknownGatewayError(MarketplaceError):
    """Raised when no gateway client is registered under the requested name."""

    def __init__(self, name: str, supported: list[str]) -> None:
        super().__init__(
            message=f"Unknown payment gateway: '{name}'. Supported: {supported}",
            code="UNKNOWN_GATEWAY",
        )
        self.name = name


class SignatureError(MarketplaceError):
    """Raised when a webhook arrives without a valid signature."""

    def __init__(self, message: str = "Invalid webhook signature") -> None:
        super().__init__(message=message, code="INVALID_SIGNATURE")


# --- Store Errors ---


class StoreError(MarketplaceError):
    """Raised when a record read or write fails."""

    def __init__(self, message: str, code: str = "STORE_ERROR") -> None:
        super().__init__(message=message, code=code)


class ConcurrentUpdateError(StoreError):
    """Raised when an order changed between read and conditional write."""

    def __init__(self, order_id: str) -> None:
        super().__init__(
            message=f"Order was modified concurrently: {order_id}",
            code="CONCURRENT_UPDATE",
        )
        self.order_id = order_id


# --- Idempotency Errors ---


class DuplicateOperationError(MarketplaceError):
    """Raised when a duplicate idempotency key is detected."""

    def __init__(self, idempotency_key: str) -> None:
        super().__init__(
            message=f"Duplicate operation detected for key: {idempotency_key}",
            code="DUPLICATE_OPERATION",
        )


# --- Settlement Errors ---


class SettlementInProgressError(MarketplaceError):
    """Raised when another release or refund of the same order is under way.

    The order carries a settlement claim while money is moving; it is cleared
    when the settlement finishes or the gateway refuses it.
    """

    def __init__(self, order_id: str) -> None:
        super().__init__(
            message=f"A release or refund is already in progress for order: {order_id}",
            code="SETTLEMENT_IN_PROGRESS",
        )
        self.order_id = order_id
