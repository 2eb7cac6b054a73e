from sqlalchemy import create_engine, event
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from .config import settings

connect_args = {}
if settings.DATABASE_URL.startswith("sqlite"):
    connect_args = {"check_same_thread": False}

engine = create_engine(settings.DATABASE_URL, echo=False, connect_args=connect_args)


def enable_sqlite_wal(target_engine) -> None:
    # WAL keeps readers off the writer lock; a transaction holding a stale
    # snapshot cannot upgrade to a writer, which backs the booking check.
    # The driver's own deferred BEGIN is disabled so that the snapshot is
    # taken at the first SELECT rather than at the first write.
    @event.listens_for(target_engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(target_engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")


if settings.DATABASE_URL.startswith("sqlite"):
    enable_sqlite_wal(engine)

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


class Base(DeclarativeBase):
    pass


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
