# src/engine/db.py
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import config
from engine.models import Base


def make_session_factory(database_url: str = config.DATABASE_URL):
    """Create the engine and tables for a database URL and return a session factory."""
    kwargs = {}
    if database_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            # one shared connection, otherwise every session sees an empty database
            kwargs["poolclass"] = StaticPool
    engine = create_engine(database_url, **kwargs)
    Base.metadata.create_all(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)
