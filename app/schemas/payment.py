from datetime import datetime

from pydantic import BaseModel, Field


class InitializePaymentRequest(BaseModel):
    """Checkout: a PENDING transaction is created before the student is redirected to the gateway."""
    course_id: int = Field(gt=0)


class CheckoutOut(BaseModel):
    reference: str
    authorization_url: str
    access_code: str
    amount: int
    currency: str


class TransactionOut(BaseModel):
    model_config = {"from_attributes": True}

    reference: str
    user_id: int
    course_id: int
    course_title: str = ""
    amount: int
    currency: str
    provider: str
    status: str
    amount_paid: int | None = None
    failure_reason: str | None = None
    created_at: datetime
    verified_at: datetime | None = None
    refunded_at: datetime | None = None


class EnrollmentOut(BaseModel):
    model_config = {"from_attributes": True}

    id: int
    user_id: int
    course_id: int
    transaction_reference: str
    price_paid: int
    currency: str
    status: str
    enrolled_at: datetime
    revoked_at: datetime | None = None


class VerificationOut(BaseModel):
    status: str  # PAID | FAILED | PENDING
    reference: str
    reason: str | None = None
    enrolled: bool = False
    enrollment: EnrollmentOut | None = None
    transaction: TransactionOut | None = None


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int
