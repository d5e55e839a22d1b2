from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

from blesspay.config import get_settings

Base = declarative_base()


def create_db_engine(database_url: str, timeout: int = 10):
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False, "timeout": timeout}
    else:
        connect_args = {"connect_timeout": timeout}
    return create_engine(database_url, connect_args=connect_args, pool_pre_ping=True)


settings = get_settings()
DATABASE_URL = settings.database_url
if not DATABASE_URL:
    raise RuntimeError("DATABASE_URL is not set. Check your .env file.")

engine = create_db_engine(DATABASE_URL, settings.db_timeout)

SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
