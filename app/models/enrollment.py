from datetime import datetime
from enum import Enum

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel


class EnrollmentStatus(str, Enum):
    ACTIVE = "ACTIVE"
    REVOKED = "REVOKED"


class Enrollment(SQLModel, table=True):
    """Course access. One row per (user_id, course_id), ever."""

    __table_args__ = (UniqueConstraint("user_id", "course_id", name="uq_enrollment_user_course"),)

    id: int | None = Field(default=None, primary_key=True)
    user_id: int = Field(index=True)
    course_id: int = Field(index=True)
    # The transaction that granted access; older retried transactions keep pointing nowhere
    transaction_reference: str = Field(index=True, max_length=128)
    price_paid: int  # minor units
    currency: str = "NGN"
    status: str = Field(default=EnrollmentStatus.ACTIVE.value, index=True)  # ACTIVE | REVOKED
    enrolled_at: datetime = Field(default_factory=datetime.utcnow)
    revoked_at: datetime | None = None
