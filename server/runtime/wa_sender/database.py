"""
WA Sender Runtime - Database Connection

SQLAlchemy setup for the credential table. The engine is created on first
use so the file credential backend never opens a database connection.
"""

from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

from wa_sender.config import settings

# Base class for models
Base = declarative_base()

_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker] = None


def make_engine(url: str, *, echo: bool = False) -> Engine:
    """Create an engine with connection pooling for server databases"""
    if url.startswith("sqlite"):
        return create_engine(url, echo=echo)
    return create_engine(
        url,
        pool_pre_ping=True,  # Verify connections before using
        pool_size=10,
        max_overflow=20,
        echo=echo,  # Log SQL queries in debug mode
    )


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        _engine = make_engine(settings.database_url, echo=settings.DEBUG)
    return _engine


def get_session_factory() -> sessionmaker:
    """Session factory bound to the configured engine"""
    global _session_factory
    if _session_factory is None:
        _session_factory = sessionmaker(autocommit=False, autoflush=False, bind=get_engine())
    return _session_factory


def init_db(engine: Optional[Engine] = None) -> None:
    """Create the credential tables"""
    # Importing registers the models on Base.metadata
    from wa_sender.models import credentials  # noqa: F401

    Base.metadata.create_all(bind=engine or get_engine())
