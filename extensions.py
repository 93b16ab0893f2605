"""
SQLAlchemy 2.x session management for the Charter Commerce Engine.
"""

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, scoped_session
from sqlalchemy.pool import StaticPool

import config
from models import Base


def build_engine(database_url=None, echo=False):
    """Create an engine; in-memory SQLite shares one connection across threads."""
    url = database_url or config.DATABASE_URL
    if url.startswith("sqlite:///") and ":memory:" not in url:
        config.ensure_instance_dir()
    if url in ("sqlite://", "sqlite:///:memory:"):
        return create_engine(
            url,
            echo=echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    if url.startswith("sqlite"):
        return create_engine(url, echo=echo, connect_args={"check_same_thread": False})
    return create_engine(url, echo=echo)


def build_session_factory(engine):
    """Scoped session factory bound to `engine`."""
    session_local = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)
    return scoped_session(session_local)


def init_db(engine):
    """Initialize the database by creating all tables."""
    Base.metadata.create_all(bind=engine)
