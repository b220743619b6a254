"""
Database connection utilities
"""

from contextlib import contextmanager
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
import os
from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///supply_chain.db")


def make_engine(url: str = DATABASE_URL, **kwargs):
    """Create an engine; SQLite connections may be shared with worker threads."""
    if url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False})
    else:
        kwargs.setdefault("pool_pre_ping", True)  # Test connections before using them
        kwargs.setdefault("pool_recycle", 3600)   # Recycle connections after 1 hour
    return create_engine(url, echo=False, **kwargs)


engine = make_engine()
SessionLocal = sessionmaker(bind=engine)


@contextmanager
def get_db(session_factory=None):
    """Get database session with automatic commit/rollback."""
    db = (session_factory or SessionLocal)()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
