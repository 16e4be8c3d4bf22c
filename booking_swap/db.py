from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from aws_lambda_powertools import Logger

from booking_swap.config import settings
from booking_swap.model import Base

logger = Logger(service=settings.POWERTOOLS_SERVICE_NAME)


def build_engine(database_url: str):
    """Create an engine; SQLite connections are shared across worker threads"""
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False, "timeout": 30}
    return create_engine(database_url, connect_args=connect_args)


engine = build_engine(settings.DATABASE_URL)
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def init_db(bind=None):
    """Create all tables"""
    bind = bind or engine
    Base.metadata.create_all(bind=bind)
    logger.info(f"Database initialised: {bind.url}")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
