import logging

from sqlalchemy import text
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from .config import settings

log = logging.getLogger(__name__)


def _normalized_database_url(raw_url: str) -> str:
    """
    DATABASE_URL normalization:
    - postgres:// or postgresql:// without a driver is rewritten to the psycopg3 dialect.
    - Everything else (SQLite etc.) is left as is.
    """
    if not raw_url:
        return "sqlite:///./coursepay.db"
    raw_url = raw_url.strip()
    if raw_url.startswith("postgres://"):
        return "postgresql+psycopg://" + raw_url[len("postgres://") :]
    if raw_url.startswith("postgresql://") and "+psycopg" not in raw_url.split("://", 1)[0]:
        return "postgresql+psycopg://" + raw_url[len("postgresql://") :]
    return raw_url


def build_engine(url: str):
    """Engine factory shared by the app and by tests that need their own database."""
    connect_args = {"check_same_thread": False, "timeout": 30} if url.startswith("sqlite") else {}
    # In-memory SQLite: one shared connection so tables created by init_db are visible everywhere
    use_static_pool = url.startswith("sqlite") and ":memory:" in url
    return create_engine(
        url,
        connect_args=connect_args,
        poolclass=StaticPool if use_static_pool else None,
    )


DATABASE_URL = _normalized_database_url(settings.database_url)

engine = build_engine(DATABASE_URL)


def get_db():
    with Session(engine) as session:
        yield session


def init_db():
    SQLModel.metadata.create_all(engine)


def ping_db() -> bool:
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        log.warning("Database ping failed: %s", e)
        return False
