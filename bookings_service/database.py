from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from .config import DATABASE_URL, DB_POOL_TIMEOUT_SECONDS


def make_engine(url: str = DATABASE_URL):
    """
    Create the SQLAlchemy engine for the bookings store.

    SQLite connections are shared with the threads FastAPI runs sync
    endpoints on, so thread checking is disabled for them.
    """
    if url.startswith("sqlite"):
        return create_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": DB_POOL_TIMEOUT_SECONDS},
        )
    return create_engine(
        url,
        pool_pre_ping=True,
        pool_timeout=DB_POOL_TIMEOUT_SECONDS,
        connect_args={"connect_timeout": DB_POOL_TIMEOUT_SECONDS},
    )


engine = make_engine()

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


@contextmanager
def session_scope(session_factory=SessionLocal):
    """
    Yield a SQLAlchemy session for one repository operation.

    The session is rolled back if the block raises and always closed
    afterwards; committing is left to the caller.

    Yields
    ------
    Session
        Active SQLAlchemy session bound to the bookings database engine.
    """
    db = session_factory()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
