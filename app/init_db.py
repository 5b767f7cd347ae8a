from sqlalchemy import text

from models import user, scheduling, payment, notification  # noqa: F401
from models.base import Base, engine

# Tables whose updated_at column is maintained by the database on PostgreSQL
UPDATED_AT_TABLES = ("app_user", "appointment", "payment", "notification_log")


def init_db() -> None:
    # Create all ORM tables
    Base.metadata.create_all(bind=engine)

    if engine.dialect.name != "postgresql":
        return

    # Trigger and index (PostgreSQL only)
    with engine.begin() as conn:
        # 1) Trigger: keep updated_at current for writes that bypass the ORM
        conn.execute(
            text(
                """
                CREATE OR REPLACE FUNCTION touch_updated_at()
                RETURNS TRIGGER AS $$
                BEGIN
                    NEW.updated_at = NOW();
                    RETURN NEW;
                END;
                $$ LANGUAGE plpgsql;
                """
            )
        )
        for table in UPDATED_AT_TABLES:
            conn.execute(text(f"DROP TRIGGER IF EXISTS trg_{table}_updated_at ON {table};"))
            conn.execute(
                text(
                    f"""
                    CREATE TRIGGER trg_{table}_updated_at
                    BEFORE UPDATE ON {table}
                    FOR EACH ROW
                    EXECUTE FUNCTION touch_updated_at();
                    """
                )
            )

        # 2) Index: the reminder job only scans open appointments by start time
        conn.execute(
            text(
                """
                CREATE INDEX IF NOT EXISTS idx_appointment_open_start
                ON appointment(start_time)
                WHERE status IN ('PENDING', 'CONFIRMED');
                """
            )
        )

        # 3) Index: retry job looks up failed deliveries by age
        conn.execute(
            text(
                """
                CREATE INDEX IF NOT EXISTS idx_notification_log_failed
                ON notification_log(created_at)
                WHERE status = 'failed';
                """
            )
        )


if __name__ == "__main__":
    init_db()
    print("Database tables + triggers + indexes created.")
