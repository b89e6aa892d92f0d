from datetime import datetime

from sqlmodel import Field, SQLModel


class Course(SQLModel, table=True):
    """Catalog entry. Authored and listed elsewhere; checkout only reads price and bumps enrollment_count."""

    id: int | None = Field(default=None, primary_key=True)
    title: str
    slug: str = Field(unique=True, index=True)
    price: int  # minor units
    discount_price: int | None = None
    currency: str = "NGN"
    is_published: bool = False
    enrollment_count: int = 0
    created_at: datetime = Field(default_factory=datetime.utcnow)
