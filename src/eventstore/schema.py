# (tenant_id, event_id) is the primary key: it is the idempotency constraint
# that arbitrates racing ingests. The composite index serves count queries of
# the form tenant_id = ? AND event_name = ? AND occurred_at in [from, to).

POSTGRES_SCHEMA = """
CREATE TABLE IF NOT EXISTS events (
    tenant_id   TEXT        NOT NULL,
    event_id    TEXT        NOT NULL,
    event_name  TEXT        NOT NULL,
    occurred_at TIMESTAMPTZ NOT NULL,
    attributes  JSONB       NOT NULL DEFAULT '{}'::jsonb,
    ingested_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    PRIMARY KEY (tenant_id, event_id)
);

CREATE INDEX IF NOT EXISTS idx_events_tenant_name_occurred
    ON events(tenant_id, event_name, occurred_at);
"""

SQLITE_SCHEMA = """
CREATE TABLE IF NOT EXISTS events (
    tenant_id   TEXT NOT NULL,
    event_id    TEXT NOT NULL,
    event_name  TEXT NOT NULL,
    occurred_at TEXT NOT NULL,
    attributes  TEXT NOT NULL DEFAULT '{}',
    ingested_at TEXT NOT NULL,
    PRIMARY KEY (tenant_id, event_id)
);

CREATE INDEX IF NOT EXISTS idx_events_tenant_name_occurred
    ON events(tenant_id, event_name, occurred_at);
"""
