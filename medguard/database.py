"""
Database engine and session factory.
"""

import logging
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from medguard.config import settings
from medguard.models import Base

logger = logging.getLogger(__name__)


def init_engine(database_url: Optional[str] = None, echo: Optional[bool] = None) -> Engine:
    """Create a SQLAlchemy engine for the configured database."""
    url = database_url or settings.database_url
    kwargs = {"echo": settings.database_echo if echo is None else echo, "future": True}
    if url.startswith("sqlite"):
        # Store calls run in worker threads
        kwargs["connect_args"] = {"check_same_thread": False}
    else:
        kwargs["pool_size"] = settings.database_pool_size
        kwargs["pool_pre_ping"] = True

    engine = create_engine(url, **kwargs)
    logger.info(f"Database engine created: {url.split('@')[-1]}")
    return engine


def create_session_factory(engine: Engine) -> sessionmaker:
    """Session factory; sessions keep attribute values after commit."""
    return sessionmaker(bind=engine, expire_on_commit=False)


def create_all_tables(engine: Engine) -> None:
    Base.metadata.create_all(engine)
