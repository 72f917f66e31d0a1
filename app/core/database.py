"""Database setup for Reelshelf using SQLModel."""

from sqlalchemy import Engine
from sqlmodel import SQLModel, create_engine
from app.core.config import get_settings

settings = get_settings()


def build_engine(database_url: str, echo: bool = False) -> Engine:
    """Create an engine, applying the SQLite threading workaround when needed."""
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False  # Needed for SQLite
    return create_engine(database_url, echo=echo, connect_args=connect_args)


# Create engine
engine = build_engine(settings.database_url, echo=settings.debug)


def create_db_and_tables(bind: Engine | None = None):
    """Create all database tables."""
    # Register table models on the metadata before creating
    import app.models.tables  # noqa: F401

    SQLModel.metadata.create_all(bind or engine)
