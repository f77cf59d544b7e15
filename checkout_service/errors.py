"""Typed failures raised by the checkout, gateway and order modules.

Route handlers in ``main`` translate these into HTTP responses; nothing below
the route layer returns error dictionaries.
"""


class CheckoutError(Exception):
    """Base class for every domain failure."""


class InvalidCartError(CheckoutError):
    pass


class InsufficientStockError(CheckoutError):
    def __init__(self, product_id: str, product_name: str, requested: int, available: int):
        self.product_id = product_id
        self.product_name = product_name
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient stock for '{product_name}': requested {requested}, available {available}"
        )


class SessionNotFoundError(CheckoutError):
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Checkout session {session_id} not found")


class InvalidStateTransitionError(CheckoutError):
    def __init__(self, session_id: str, current: str, target: str):
        self.session_id = session_id
        self.current = current
        self.target = target
        super().__init__(f"Checkout session {session_id} cannot move from {current} to {target}")


class SessionExpiredError(CheckoutError):
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Checkout session {session_id} has expired")


class UnknownCorrelationError(CheckoutError):
    pass


class PaymentVerificationError(CheckoutError):
    pass


class OrderNotFoundError(CheckoutError):
    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order {order_id} not found")


class InvalidOrderUpdateError(CheckoutError):
    pass


class GatewayError(CheckoutError):
    """Base class for payment gateway failures."""


class GatewayTransportError(GatewayError):
    """Network failure, timeout or unusable response. Safe to retry with the same idempotency key."""


class GatewayDeclinedError(GatewayError):
    """The provider rejected the request. Terminal for this attempt."""

    def __init__(self, error_code: str, message: str):
        self.error_code = error_code
        self.message = message
        super().__init__(f"Gateway declined ({error_code}): {message}")
