"""
db.py
=====
Handles database connection and session management for the dispatch service.
"""

import os
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from .config import DATABASE_URL, SQLITE_BUSY_TIMEOUT


def make_engine(url: str = DATABASE_URL):
    """
    Build an engine for the given URL.
    SQLite files get their directory created and a busy timeout so that
    concurrent writers queue up instead of failing.
    """
    if url.startswith("sqlite"):
        db_path = url.split("///", 1)[-1]
        db_dir = os.path.dirname(db_path)
        if db_dir and not os.path.exists(db_dir):
            os.makedirs(db_dir, exist_ok=True)
        # For SQLite, we must disable thread check
        return create_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT},
        )
    return create_engine(url, pool_pre_ping=True)


def make_session_factory(engine):
    """Create a configured session factory bound to ``engine``."""
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


engine = make_engine()
SessionLocal = make_session_factory(engine)


def init_db(Base, bind=None):
    """
    Initializes the database: creates tables if missing.
    Called once on FastAPI startup.
    """
    Base.metadata.create_all(bind=bind or engine)
