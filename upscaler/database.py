from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
import os
import logging

from .settings import get_settings

logger = logging.getLogger(__name__)

SQLALCHEMY_DATABASE_URL = get_settings().database_url

Base = declarative_base()


def make_engine(url: str = SQLALCHEMY_DATABASE_URL):
    if url.startswith("sqlite:///") and not url.startswith("sqlite:///:memory:"):
        # Ensure data directory exists
        db_dir = os.path.dirname(url[len("sqlite:///"):])
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)

    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, connect_args=connect_args)


engine = None
SessionLocal = sessionmaker(autocommit=False, autoflush=False)


def init_db(url: str = SQLALCHEMY_DATABASE_URL):
    """Bind the session factory and create tables. Call once at startup."""
    global engine
    from . import models  # noqa: F401  (register tables on Base)

    engine = make_engine(url)
    SessionLocal.configure(bind=engine)
    Base.metadata.create_all(bind=engine)
    logger.info(f"Database ready at {url}")
    return engine


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
