import os

from sqlalchemy import create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool


def _require_env(name: str) -> str:
    value = os.environ.get(name)
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


def _engine_options(db_url: str) -> dict:
    options = {"pool_pre_ping": True, "future": True}
    url = make_url(db_url)
    if url.get_backend_name() == "sqlite":
        options["connect_args"] = {"check_same_thread": False}
        if url.database in (None, "", ":memory:"):
            # Every session must see the same in-memory database.
            options["poolclass"] = StaticPool
    return options


LAB_LENDING_DB_URL = _require_env("LAB_LENDING_DB_URL")

engine = create_engine(LAB_LENDING_DB_URL, **_engine_options(LAB_LENDING_DB_URL))

SessionLocal = sessionmaker(
    bind=engine,
    autoflush=False,
    expire_on_commit=False,
)
