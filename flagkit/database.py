"""
Database engine and session management for the database driver and
snapshot repository.
"""

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker

from .config import FlagSettings, get_settings


def build_engine(settings: FlagSettings | None = None) -> Engine:
    """Create an engine from ``settings.database``."""
    settings = settings or get_settings()
    return create_engine(settings.database.url, echo=settings.database.echo)


def session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(engine, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    """Create flagkit tables that do not exist yet."""
    from .models import Base

    Base.metadata.create_all(engine)
