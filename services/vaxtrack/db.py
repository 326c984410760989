import os

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import sessionmaker

from services.vaxtrack import models


DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./vaxtrack.db")


def make_engine(url: str) -> Engine:
    # SQLite needs special flag for multithreaded access.
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, connect_args=connect_args, future=True)


engine = make_engine(DATABASE_URL)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


def init_db(bind: Engine = engine) -> None:
    """Create tables (dev-only). In production use Alembic migrations."""
    models.Base.metadata.create_all(bind=bind)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
