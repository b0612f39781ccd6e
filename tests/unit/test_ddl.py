"""Unit tests for DDL module."""

from mail_jobs.ddl import (
    ALL_TABLES_DDL,
    EMAIL_LOGS_TABLE_DDL,
    JOB_EVENTS_TABLE_DDL,
    JOBS_TABLE_DDL,
    MESSAGING_SETTINGS_TABLE_DDL,
    SCHEDULED_EMAILS_TABLE_DDL,
)


def test_jobs_table_ddl_contains_required_columns():
    """Test that jobs DDL contains all required columns."""
    required_columns = [
        "id",
        "type",
        "payload",
        "dedupe_key",
        "priority",
        "status",
        "attempts",
        "max_attempts",
        "retry_backoff_ms",
        "run_at",
        "locked_at",
        "last_run_at",
        "last_error",
        "completed_at",
        "created_at",
        "updated_at",
    ]

    for column in required_columns:
        assert column in JOBS_TABLE_DDL, f"Column {column} not found in DDL"


def test_jobs_table_has_unique_dedupe_index():
    """Test that (type, dedupe_key) is enforced by a unique index."""
    assert "CREATE UNIQUE INDEX idx_jobs_type_dedupe_key" in JOBS_TABLE_DDL
    assert "(type, dedupe_key)" in JOBS_TABLE_DDL


def test_job_events_reference_jobs():
    assert "REFERENCES jobs (id)" in JOB_EVENTS_TABLE_DDL
    for event_type in ("ENQUEUED", "DEDUPED", "STARTED", "RETRY_SCHEDULED"):
        assert event_type in JOB_EVENTS_TABLE_DDL


def test_scheduled_emails_ddl_includes_attachments():
    assert "CREATE TABLE scheduled_emails" in SCHEDULED_EMAILS_TABLE_DDL
    assert "CREATE TABLE scheduled_email_attachments" in SCHEDULED_EMAILS_TABLE_DDL
    assert "BYTEA" in SCHEDULED_EMAILS_TABLE_DDL


def test_all_tables_ddl_in_dependency_order():
    """Test that referenced tables are created first."""
    for ddl in (
        JOBS_TABLE_DDL,
        JOB_EVENTS_TABLE_DDL,
        SCHEDULED_EMAILS_TABLE_DDL,
        EMAIL_LOGS_TABLE_DDL,
        MESSAGING_SETTINGS_TABLE_DDL,
    ):
        assert ddl in ALL_TABLES_DDL
    assert ALL_TABLES_DDL.index("CREATE TABLE jobs") < ALL_TABLES_DDL.index(
        "CREATE TABLE job_events"
    )
