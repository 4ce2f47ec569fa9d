"""
SQLAlchemy declarative base and database session configuration
"""
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

# Create declarative base
Base = declarative_base()


def build_engine(database_url: str) -> Engine:
    """
    Create an engine for the given URL

    SQLite connections are shared with the ticker task, so the
    same-thread check is disabled.
    """
    return create_engine(
        database_url,
        connect_args={"check_same_thread": False} if database_url.startswith("sqlite") else {},
        echo=False
    )


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@contextmanager
def session_scope(session_factory: sessionmaker) -> Iterator[Session]:
    """
    Session context for one unit of work

    Commits on success, rolls back on error, always closes.
    """
    db = session_factory()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def init_db(engine: Engine) -> None:
    """
    Initialize database by creating all tables
    """
    # Register models on the metadata before create_all
    from backend.models import runtime_state_snapshot  # noqa: F401

    Base.metadata.create_all(bind=engine)
