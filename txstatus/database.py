from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from txstatus.config import get_settings


def make_engine(database_url: str, **kwargs):
    connect_args = {}
    if database_url.startswith("sqlite"):
        # Poll continuations run on the scheduler thread, not the request thread.
        connect_args["check_same_thread"] = False
    return create_engine(database_url, connect_args=connect_args, **kwargs)


engine = make_engine(get_settings().database_url, pool_pre_ping=True)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()
