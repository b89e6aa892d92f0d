from datetime import datetime

from sqlmodel import Field, SQLModel


class AuditLog(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    event: str = Field(index=True)  # payment_initialized, payment_paid, payment_failed, payment_refunded, etc.
    user_id: int | None = Field(default=None, index=True)
    reference: str | None = Field(default=None, index=True, max_length=128)
    detail: str | None = None
    ip: str | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
