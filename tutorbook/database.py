from threading import Lock

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

from tutorbook.core import config


def build_engine(database_url: str) -> Engine:
    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            echo=config.DATABASE_ECHO,
            connect_args={
                "check_same_thread": False,
                "timeout": config.SQLITE_BUSY_TIMEOUT_SECONDS,
            },
        )
    return create_engine(database_url, echo=config.DATABASE_ECHO, pool_pre_ping=True)


engine = build_engine(config.DATABASE_URL)

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)

Base = declarative_base()

_schema_lock = Lock()
_checked_engines: set[str] = set()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def ensure_scheduling_schema(bind: Engine | None = None) -> None:
    """Bring an appointments table created by an older release up to date."""
    target = bind or engine
    key = str(target.url)

    if key in _checked_engines:
        return

    with _schema_lock:
        if key in _checked_engines:
            return

        inspector = inspect(target)

        if 'appointments' not in inspector.get_table_names():
            _checked_engines.add(key)
            return

        existing_columns = {column['name'] for column in inspector.get_columns('appointments')}
        migration_steps = [
            ('notes', 'ALTER TABLE appointments ADD COLUMN notes VARCHAR'),
            ('cancellation_reason', 'ALTER TABLE appointments ADD COLUMN cancellation_reason VARCHAR(32)'),
            ('cancellation_note', 'ALTER TABLE appointments ADD COLUMN cancellation_note VARCHAR'),
            ('cancelled_by_id', 'ALTER TABLE appointments ADD COLUMN cancelled_by_id INTEGER'),
            ('rescheduled_from_id', 'ALTER TABLE appointments ADD COLUMN rescheduled_from_id INTEGER'),
            ('confirmed_at', 'ALTER TABLE appointments ADD COLUMN confirmed_at TIMESTAMP'),
            ('version', 'ALTER TABLE appointments ADD COLUMN version INTEGER NOT NULL DEFAULT 1'),
        ]

        with target.begin() as connection:
            for column_name, statement in migration_steps:
                if column_name not in existing_columns:
                    connection.execute(text(statement))
            connection.execute(
                text('CREATE INDEX IF NOT EXISTS idx_appointments_tutor_range ON appointments(tutor_id, start_time, end_time)')
            )
            connection.execute(
                text('CREATE INDEX IF NOT EXISTS idx_appointments_student_range ON appointments(student_id, start_time, end_time)')
            )

        _checked_engines.add(key)
