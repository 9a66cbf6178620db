"""Database session management"""
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from billing.core.config import settings
from billing.models.base import Base


def build_engine(database_url: str) -> Engine:
    """Engine for the billing database.

    SQLite connections are shared with the maintenance task thread, so they
    skip the same-thread check; server databases get a recycled, pre-pinged pool.
    """
    if database_url.startswith("sqlite"):
        return create_engine(database_url, connect_args={"check_same_thread": False})
    return create_engine(
        database_url,
        pool_pre_ping=True,
        pool_recycle=3600
    )


engine = build_engine(settings.DATABASE_URL)

# Stores flush, the lock holder commits
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    """Dependency for FastAPI endpoints"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind: Engine = None):
    """Create missing billing tables. Production schemas are owned by alembic."""
    import billing.models  # noqa: F401 - registers every table on Base.metadata
    Base.metadata.create_all(bind=bind or engine)
