"""Database connection and session management."""
from sqlalchemy import create_engine, JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from typing import Generator

from flaglab.config import get_settings

settings = get_settings()

# JSONB on PostgreSQL, plain JSON on SQLite (tests, local runs)
JSONType = JSONB().with_variant(JSON(), "sqlite")


def _connect_args(database_url: str) -> dict:
    """Driver arguments bounding how long a definition read may block."""
    if database_url.startswith("postgresql"):
        return {"options": f"-c statement_timeout={settings.definition_store_timeout_ms}"}
    if database_url.startswith("sqlite"):
        return {"check_same_thread": False}
    return {}


# Create database engine
engine = create_engine(
    settings.database_url,
    pool_pre_ping=True,
    echo=settings.debug,
    connect_args=_connect_args(settings.database_url)
)

# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for models
Base = declarative_base()


def get_db() -> Generator[Session, None, None]:
    """
    Dependency to get database session.

    Usage:
        @app.get("/flags")
        def list_flags(db: Session = Depends(get_db)):
            return db.query(FeatureFlag).all()
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
