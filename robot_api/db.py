"""
Database configuration and session management
"""
from contextlib import contextmanager
import logging

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from . import config

logger = logging.getLogger("robot")

DATABASE_URL = config.DATABASE_URL

engine = create_engine(
    DATABASE_URL,
    future=True,
    connect_args={"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)

Base = declarative_base()


def init_db():
    """Initialize database tables"""
    # Make sure all models are imported so Base.metadata is populated
    import robot_api.models  # noqa: F401
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables ready")


# Dependency to get database session
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def session_scope():
    s = SessionLocal()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()
