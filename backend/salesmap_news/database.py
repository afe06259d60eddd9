from functools import lru_cache

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from salesmap_news.config import get_settings


class Base(DeclarativeBase):
    pass


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    settings = get_settings()
    return create_engine(settings.database_url, pool_pre_ping=True)


@lru_cache(maxsize=1)
def get_session_factory() -> sessionmaker[Session]:
    return sessionmaker(autoflush=False, autocommit=False, bind=get_engine())


def init_db(engine: Engine | None = None) -> None:
    # Import models so metadata is populated.
    from salesmap_news import models  # noqa: F401

    Base.metadata.create_all(bind=engine or get_engine())
