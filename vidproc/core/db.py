import os

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, create_engine

from vidproc.core.config import settings


def make_engine(url: str) -> Engine:
    """
    create an engine for the job store

    sqlite connections run in WAL mode and open every transaction with
    BEGIN IMMEDIATE so concurrent writers queue on the busy timeout
    instead of failing with "database is locked" on lock upgrade.
    """
    if not url.startswith("sqlite"):
        return create_engine(url, pool_pre_ping=True)

    path = url.split("///", 1)[-1]
    if path and path != ":memory:":
        os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)

    engine = create_engine(url, connect_args={"check_same_thread": False, "timeout": 30})

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # hand transaction control to sqlalchemy
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA busy_timeout=30000")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def init_db(target: Engine = None):
    # import models so their tables are registered on the metadata
    from vidproc import models  # noqa: F401

    SQLModel.metadata.create_all(target or get_engine())


_engine = None


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        _engine = make_engine(settings.DATABASE_URL)
    return _engine
