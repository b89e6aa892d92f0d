from datetime import datetime

from sqlmodel import Field, SQLModel


class User(SQLModel, table=True):
    """Student profile as seen by checkout. Accounts and credentials are owned by the auth service."""

    id: int | None = Field(default=None, primary_key=True)
    email: str = Field(unique=True, index=True)
    full_name: str = ""
    created_at: datetime | None = Field(default_factory=datetime.utcnow)
    is_banned: bool = False
