"""Database schema initialization for the credit ledger."""

from ..ledger.grants import GrantType
from ..utils.logging_config import StructuredLogger
from .connection import get_db_connection, redacted_dsn

logger = StructuredLogger(__name__)

_GRANT_TYPES_SQL = ", ".join(f"'{t.value}'" for t in GrantType)

_STATEMENTS = (
    f"""
    CREATE TABLE IF NOT EXISTS credit_ledger (
        operation_id TEXT PRIMARY KEY,
        user_id TEXT,
        org_id TEXT,
        principal BIGINT NOT NULL,
        balance BIGINT NOT NULL,
        type TEXT NOT NULL,
        description TEXT,
        priority INTEGER NOT NULL,
        expires_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CHECK (principal >= 0),
        CHECK (user_id IS NOT NULL OR org_id IS NOT NULL),
        CHECK (type IN ({_GRANT_TYPES_SQL}))
    )
    """,
    # Active-window scans by owner
    "CREATE INDEX IF NOT EXISTS idx_credit_ledger_user_active ON credit_ledger (user_id, expires_at)",
    "CREATE INDEX IF NOT EXISTS idx_credit_ledger_org_active ON credit_ledger (org_id, expires_at)",
    """
    CREATE TABLE IF NOT EXISTS usage_records (
        record_id TEXT PRIMARY KEY,
        user_id TEXT,
        org_id TEXT,
        action TEXT NOT NULL,
        model TEXT,
        credits BIGINT NOT NULL,
        cost_usd NUMERIC(18, 8) NOT NULL DEFAULT 0,
        input_tokens INTEGER NOT NULL DEFAULT 0,
        output_tokens INTEGER NOT NULL DEFAULT 0,
        bypass BOOLEAN NOT NULL DEFAULT FALSE,
        latency_ms INTEGER,
        metadata_json TEXT,
        started_at TIMESTAMPTZ,
        finished_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CHECK (credits >= 0)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_usage_records_user ON usage_records (user_id, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_usage_records_org ON usage_records (org_id, created_at)",
    """
    CREATE TABLE IF NOT EXISTS metering_customers (
        owner_key TEXT PRIMARY KEY,
        customer_id TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)


def init_db():
    """Create ledger tables and indexes (idempotent)."""
    logger.info("Initializing database", dsn=redacted_dsn())
    with get_db_connection() as conn:
        for statement in _STATEMENTS:
            conn.execute(statement)
        conn.commit()
    logger.info("Database initialized successfully")
