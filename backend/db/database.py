from sqlalchemy import create_engine, event, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase

from config import settings


class Base(DeclarativeBase):
    pass


def _sqlite_pragmas(dbapi_connection, connection_record):
    # WAL lets history reads proceed while a turn is appending messages.
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def make_engine(url: str) -> Engine:
    is_sqlite = url.startswith("sqlite")
    new_engine = create_engine(
        url,
        connect_args={"check_same_thread": False} if is_sqlite else {},
        echo=False,
    )
    if is_sqlite:
        event.listen(new_engine, "connect", _sqlite_pragmas)
    return new_engine


def make_session_factory(bind: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=bind)


engine = make_engine(settings.DATABASE_URL)
SessionLocal = make_session_factory(engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# Columns added after the first release; create_all never alters existing tables.
_LATE_COLUMNS = {
    "conversations": {
        "state_json": "TEXT",
        "summary_cursor_seq": "INTEGER",
        "summary_version": "INTEGER NOT NULL DEFAULT 0",
    },
    "messages": {
        "call_id": "TEXT",
        "payload_json": "TEXT",
    },
}


def init_db(bind: Engine | None = None) -> None:
    """Create missing tables and apply lightweight column fixes for existing SQLite databases."""
    bind = bind or engine
    Base.metadata.create_all(bind=bind)

    inspector = inspect(bind)
    statements: list[str] = []
    for table, columns in _LATE_COLUMNS.items():
        existing = {col["name"] for col in inspector.get_columns(table)}
        for name, ddl in columns.items():
            if name not in existing:
                statements.append(f"ALTER TABLE {table} ADD COLUMN {name} {ddl}")

    with bind.begin() as conn:
        for stmt in statements:
            conn.execute(text(stmt))
