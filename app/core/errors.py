"""Payment domain errors. Routers translate these into HTTP responses."""
from enum import Enum


class FailureReason(str, Enum):
    # Terminal FAILED outcomes
    UNKNOWN_REFERENCE = "unknown_reference"
    AMOUNT_MISMATCH = "amount_mismatch"
    DECLINED = "declined"
    REFUNDED = "refunded"
    # Transient outcomes; the caller re-invokes verify later
    VERIFICATION_IN_PROGRESS = "verification_in_progress"
    GATEWAY_UNREACHABLE = "gateway_unreachable"
    PAYMENT_PENDING = "payment_pending"


class PaymentError(Exception):
    """Base class for transaction / enrollment errors."""


class DuplicateReference(PaymentError):
    def __init__(self, reference: str) -> None:
        super().__init__(f"Transaction reference already exists: {reference}")
        self.reference = reference


class TransactionNotFound(PaymentError):
    def __init__(self, reference: str) -> None:
        super().__init__(f"Transaction not found: {reference}")
        self.reference = reference


class InvalidTransition(PaymentError):
    def __init__(self, reference: str, current: str | None, target: str) -> None:
        super().__init__(f"Transaction {reference}: cannot move from {current} to {target}")
        self.reference = reference
        self.current = current
        self.target = target


class GatewayUnreachable(PaymentError):
    """The gateway gave no determination (timeout, connection error, 5xx). Retry-safe."""


class GatewayNotSettled(GatewayUnreachable):
    """The gateway knows the reference but has not settled it yet (pending / ongoing)."""

    def __init__(self, reference: str, gateway_status: str) -> None:
        super().__init__(f"Gateway has not settled {reference} yet (status={gateway_status})")
        self.reference = reference
        self.gateway_status = gateway_status


class GatewayRequestError(PaymentError):
    """The gateway rejected a checkout request (initialize)."""
