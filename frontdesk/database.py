from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from frontdesk.config import settings

Base = declarative_base()


def build_engine(database_url: str = settings.database_url):
    connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
    return create_engine(database_url, pool_pre_ping=True, connect_args=connect_args)


def build_session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)
