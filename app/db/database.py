"""
Database connection and session management.
Provides SQLAlchemy engine, session factory, and base class.
"""
import logging
import os
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base
from core.config import settings

logger = logging.getLogger(__name__)

# Connection pool settings (ignored by SQLite)
DB_POOL_SIZE = int(os.getenv("DB_POOL_SIZE", "20"))
DB_MAX_OVERFLOW = int(os.getenv("DB_MAX_OVERFLOW", "10"))
DB_POOL_RECYCLE = int(os.getenv("DB_POOL_RECYCLE", "3600"))  # 1 hour


def build_engine(database_url: str):
    """
    Create an engine for the given URL.

    SQLite connections are shared with the threadpool that runs sync
    endpoints and live-channel authorization checks, so thread checks are
    disabled there. Other backends get a bounded connection pool.
    """
    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            echo=settings.log_level == "DEBUG"
        )
    return create_engine(
        database_url,
        pool_size=DB_POOL_SIZE,
        max_overflow=DB_MAX_OVERFLOW,
        pool_pre_ping=True,
        pool_recycle=DB_POOL_RECYCLE,
        echo=settings.log_level == "DEBUG"
    )


engine = build_engine(settings.database_url)

# Create SessionLocal class for database sessions
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Create Base class for models
Base = declarative_base()


def init_db() -> None:
    """
    Initialize database by creating all tables.
    Should be called once during application setup.
    """
    from db import models  # noqa: F401  (registers models with Base)
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables created successfully")
