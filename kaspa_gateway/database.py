import os

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

# Importing config loads the project .env
from kaspa_gateway import config  # noqa: F401

Base = declarative_base()


def create_session_factory(database_url: str):
    engine = create_engine(
        database_url,
        connect_args={"check_same_thread": False} if database_url.startswith("sqlite") else {}
    )
    # Records are handed out as snapshots after commit, so keep loaded attributes
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


DATABASE_URL = os.getenv("DATABASE_URL")
if not DATABASE_URL:
    raise RuntimeError("DATABASE_URL is not set. Check your .env file.")

SessionLocal = create_session_factory(DATABASE_URL)
engine = SessionLocal.kw["bind"]
