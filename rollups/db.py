from __future__ import annotations
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase

class Base(DeclarativeBase):
    pass

def make_engine(url: str) -> Engine:
    connect_args = {}
    if url.startswith("sqlite"):
        # TestClient and the CLI share one engine across threads
        connect_args = {"check_same_thread": False}
    elif url.startswith(("postgresql", "postgres")):
        connect_args = {"connect_timeout": 5}
    return create_engine(url, pool_pre_ping=True, connect_args=connect_args)

def init_db(engine: Engine) -> None:
    from rollups import models  # noqa
    Base.metadata.create_all(bind=engine)
