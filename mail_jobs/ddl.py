"""Database schema DDL for mail jobs."""

JOBS_TABLE_DDL = """
CREATE TABLE jobs (
  id                UUID PRIMARY KEY,
  type              TEXT NOT NULL,
  payload           JSONB,
  dedupe_key        TEXT,
  priority          INT NOT NULL DEFAULT 0,

  status            TEXT NOT NULL DEFAULT 'PENDING'
                    CHECK (status IN ('PENDING', 'RUNNING', 'SUCCEEDED', 'FAILED')),
  attempts          INT NOT NULL DEFAULT 0,
  max_attempts      INT NOT NULL DEFAULT 5,
  retry_backoff_ms  INT NOT NULL DEFAULT 60000,

  run_at            TIMESTAMPTZ NOT NULL DEFAULT now(),
  locked_at         TIMESTAMPTZ,
  last_run_at       TIMESTAMPTZ,
  last_error        TEXT,
  completed_at      TIMESTAMPTZ,

  created_at        TIMESTAMPTZ NOT NULL DEFAULT now(),
  updated_at        TIMESTAMPTZ NOT NULL DEFAULT now()
);

-- NULL dedupe keys never collide, so only keyed jobs are deduplicated
CREATE UNIQUE INDEX idx_jobs_type_dedupe_key
ON jobs (type, dedupe_key);

CREATE INDEX idx_jobs_status_run_at
ON jobs (status, run_at);

CREATE INDEX idx_jobs_run_at
ON jobs (run_at);
"""

JOB_EVENTS_TABLE_DDL = """
CREATE TABLE job_events (
  id          UUID PRIMARY KEY,
  job_id      UUID NOT NULL REFERENCES jobs (id) ON DELETE CASCADE,
  type        TEXT NOT NULL
              CHECK (type IN ('ENQUEUED', 'DEDUPED', 'STARTED', 'SUCCEEDED', 'FAILED', 'RETRY_SCHEDULED')),
  detail      JSONB,
  created_at  TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE INDEX idx_job_events_job_created
ON job_events (job_id, created_at);
"""

SCHEDULED_EMAILS_TABLE_DDL = """
CREATE TABLE scheduled_emails (
  id              UUID PRIMARY KEY,
  user_id         TEXT NOT NULL,
  to_addresses    JSONB NOT NULL,
  cc_addresses    JSONB,
  bcc_addresses   JSONB,
  subject         TEXT NOT NULL,
  text_body       TEXT NOT NULL,
  html_body       TEXT NOT NULL,
  preview_text    TEXT NOT NULL,
  send_at         TIMESTAMPTZ NOT NULL,
  sent_at         TIMESTAMPTZ,
  canceled_at     TIMESTAMPTZ,
  status          TEXT NOT NULL DEFAULT 'PENDING'
                  CHECK (status IN ('PENDING', 'SENDING', 'SENT', 'FAILED', 'CANCELLED')),
  failure_reason  TEXT,
  created_at      TIMESTAMPTZ NOT NULL DEFAULT now(),
  updated_at      TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE INDEX idx_scheduled_emails_user_status_send_at
ON scheduled_emails (user_id, status, send_at);

CREATE INDEX idx_scheduled_emails_status_send_at
ON scheduled_emails (status, send_at);

CREATE TABLE scheduled_email_attachments (
  id                  UUID PRIMARY KEY,
  scheduled_email_id  UUID NOT NULL REFERENCES scheduled_emails (id) ON DELETE CASCADE,
  filename            TEXT,
  content_type        TEXT,
  size                INT NOT NULL,
  content             BYTEA NOT NULL,
  created_at          TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE INDEX idx_scheduled_email_attachments_email
ON scheduled_email_attachments (scheduled_email_id);
"""

EMAIL_LOGS_TABLE_DDL = """
CREATE TABLE email_logs (
  id             UUID PRIMARY KEY,
  user_id        TEXT NOT NULL,
  document_type  TEXT NOT NULL CHECK (document_type IN ('FACTURE', 'DEVIS')),
  document_id    TEXT NOT NULL,
  to_address     TEXT NOT NULL,
  subject        TEXT NOT NULL,
  status         TEXT NOT NULL DEFAULT 'EN_ATTENTE'
                 CHECK (status IN ('EN_ATTENTE', 'ENVOYE', 'ECHEC')),
  error          TEXT,
  sent_at        TIMESTAMPTZ,
  created_at     TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE INDEX idx_email_logs_user_document_type
ON email_logs (user_id, document_type);
"""

MESSAGING_SETTINGS_TABLE_DDL = """
CREATE TABLE messaging_settings (
  user_id                TEXT PRIMARY KEY,
  imap_host              TEXT,
  smtp_host              TEXT,
  auto_reply_enabled     BOOLEAN NOT NULL DEFAULT FALSE,
  vacation_mode_enabled  BOOLEAN NOT NULL DEFAULT FALSE,
  vacation_start_date    TIMESTAMPTZ,
  vacation_end_date      TIMESTAMPTZ
);
"""

ALL_TABLES_DDL = "\n".join(
    [
        JOBS_TABLE_DDL,
        JOB_EVENTS_TABLE_DDL,
        SCHEDULED_EMAILS_TABLE_DDL,
        EMAIL_LOGS_TABLE_DDL,
        MESSAGING_SETTINGS_TABLE_DDL,
    ]
)
