from sqlalchemy import create_engine, event, inspect, text
from sqlalchemy.orm import sessionmaker, DeclarativeBase

from config import settings


def _is_sqlite(url: str) -> bool:
    return (url or "").strip().lower().startswith("sqlite")


engine = create_engine(
    settings.DATABASE_URL,
    connect_args={"check_same_thread": False} if _is_sqlite(settings.DATABASE_URL) else {},
    echo=False,
)


def enable_sqlite_pragmas(bind_engine) -> None:
    """WAL for concurrent reads; foreign keys so dose logs cascade with their medicine.

    pysqlite's own BEGIN handling is switched off and SQLAlchemy emits BEGIN
    itself, so SAVEPOINTs nest inside the session transaction.
    """

    @event.listens_for(bind_engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        _ = connection_record
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(bind_engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")


if _is_sqlite(settings.DATABASE_URL):
    enable_sqlite_pragmas(engine)


SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class Base(DeclarativeBase):
    pass


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def run_startup_migrations() -> None:
    """Apply lightweight schema fixes for existing SQLite databases."""
    inspector = inspect(engine)

    def _table_columns(table_name: str) -> set[str]:
        try:
            return {col["name"] for col in inspector.get_columns(table_name)}
        except Exception:
            return set()

    medicine_columns = _table_columns("medicines")
    user_settings_columns = _table_columns("user_settings")
    if not medicine_columns and not user_settings_columns:
        # Tables may not exist yet on first boot.
        return

    alter_statements: list[str] = []
    if medicine_columns:
        if "custom_dose_times" not in medicine_columns:
            alter_statements.append("ALTER TABLE medicines ADD COLUMN custom_dose_times TEXT")
        if "dose_interval_hours" not in medicine_columns:
            alter_statements.append("ALTER TABLE medicines ADD COLUMN dose_interval_hours FLOAT")
        if "dose" not in medicine_columns:
            alter_statements.append("ALTER TABLE medicines ADD COLUMN dose TEXT")

    if user_settings_columns:
        if "reminders_enabled" not in user_settings_columns:
            alter_statements.append("ALTER TABLE user_settings ADD COLUMN reminders_enabled BOOLEAN DEFAULT 1")

    if not alter_statements:
        return
    with engine.begin() as conn:
        for stmt in alter_statements:
            conn.execute(text(stmt))
