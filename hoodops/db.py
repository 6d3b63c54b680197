from sqlalchemy import create_engine, event, inspect, text
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from .config import settings

_IS_SQLITE = settings.DATABASE_URL.startswith("sqlite")

engine = create_engine(
    settings.DATABASE_URL,
    echo=False,
    connect_args={"check_same_thread": False} if _IS_SQLITE else {},
)

if _IS_SQLITE:
    @event.listens_for(engine, "connect")
    def _enable_wal(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.close()

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


class Base(DeclarativeBase):
    pass


# Columns added after the first release. Older sqlite files get them on startup.
_ADDITIVE_COLUMNS = {
    "clients": [
        ("scheduling_email", "VARCHAR(160)"),
        ("accounting_email", "VARCHAR(160)"),
        ("is_archived", "BOOLEAN NOT NULL DEFAULT 0"),
    ],
    "technicians": [
        ("depot_address", "VARCHAR(255)"),
        ("include_in_payroll", "BOOLEAN NOT NULL DEFAULT 1"),
    ],
    "schedules": [
        ("technician_notes", "TEXT NOT NULL DEFAULT ''"),
        ("actual_service_minutes", "INTEGER"),
        ("historical_service_minutes", "INTEGER"),
        ("dead_run", "BOOLEAN NOT NULL DEFAULT 0"),
    ],
}


def run_schema_migrations():
    """Bring an existing sqlite file up to the current column set."""
    if not _IS_SQLITE:
        return

    with engine.begin() as conn:
        inspector = inspect(conn)
        existing_tables = set(inspector.get_table_names())
        for table_name, columns in _ADDITIVE_COLUMNS.items():
            if table_name not in existing_tables:
                continue
            present = {col["name"] for col in inspector.get_columns(table_name)}
            for column_name, ddl in columns:
                if column_name in present:
                    continue
                conn.execute(text(f"ALTER TABLE {table_name} ADD COLUMN {column_name} {ddl}"))

        if "payroll_periods" in existing_tables:
            conn.execute(
                text(
                    "CREATE UNIQUE INDEX IF NOT EXISTS uq_payroll_periods_start_date "
                    "ON payroll_periods (start_date)"
                )
            )


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
