from datetime import datetime
from enum import Enum

from sqlmodel import Field, SQLModel


class TransactionStatus(str, Enum):
    PENDING = "PENDING"
    VERIFYING = "VERIFYING"
    PAID = "PAID"
    FAILED = "FAILED"


TERMINAL_STATUSES = (TransactionStatus.PAID.value, TransactionStatus.FAILED.value)


class PaymentTransaction(SQLModel, table=True):
    """One checkout attempt, keyed by the gateway reference. Never deleted (audit trail)."""

    reference: str = Field(primary_key=True, max_length=128)
    user_id: int = Field(index=True)
    course_id: int = Field(index=True)
    course_title: str = ""  # snapshot at checkout time
    amount: int  # minor units: kobo for NGN (5000 = 50.00 NGN)
    currency: str = "NGN"
    provider: str = "paystack"
    status: str = Field(default=TransactionStatus.PENDING.value, index=True)  # PENDING | VERIFYING | PAID | FAILED
    amount_paid: int | None = None  # amount confirmed by the gateway
    failure_reason: str | None = None
    gateway_raw_response: str | None = None  # opaque JSON, only read for audit
    # VERIFYING lease: set by begin_verification, cleared on terminal/rollback
    verification_token: str | None = Field(default=None, max_length=64)
    verification_started_at: datetime | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    verified_at: datetime | None = None
    # Set once by a gateway refund; the transaction stays PAID but never grants access again
    refunded_at: datetime | None = None
