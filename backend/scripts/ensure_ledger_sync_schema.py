#!/usr/bin/env python3
"""
Idempotently add the ledger-sync columns and tables to an existing POS database.

  DATABASE_URL=postgresql://... python -m backend.scripts.ensure_ledger_sync_schema
"""
import os
import sys

import psycopg

STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS business_settings (
      key text PRIMARY KEY,
      value text NOT NULL DEFAULT '""'
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS feature_flags (
      key text PRIMARY KEY,
      enabled boolean NOT NULL DEFAULT false
    )
    """,
    "INSERT INTO feature_flags (key, enabled) VALUES ('ledger_enabled', false) ON CONFLICT (key) DO NOTHING",
    """
    ALTER TABLE customers
      ADD COLUMN IF NOT EXISTS remote_id text,
      ADD COLUMN IF NOT EXISTS remote_synced_at timestamptz,
      ADD COLUMN IF NOT EXISTS remote_display_name text
    """,
    "ALTER TABLE services ADD COLUMN IF NOT EXISTS remote_id text",
    "ALTER TABLE products ADD COLUMN IF NOT EXISTS remote_id text",
    """
    ALTER TABLE transactions
      ADD COLUMN IF NOT EXISTS remote_id text,
      ADD COLUMN IF NOT EXISTS remote_sync_status text
        CHECK (remote_sync_status IN ('unsynced', 'pending', 'synced', 'failed', 'skipped')),
      ADD COLUMN IF NOT EXISTS remote_sync_error text,
      ADD COLUMN IF NOT EXISTS remote_synced_at timestamptz,
      ADD COLUMN IF NOT EXISTS remote_sync_attempted_at timestamptz
    """,
    """
    CREATE INDEX IF NOT EXISTS transactions_remote_sync_idx
      ON transactions (remote_sync_status, created_at)
    """,
    """
    CREATE TABLE IF NOT EXISTS ledger_sync_log (
      id bigserial PRIMARY KEY,
      entity_type text NOT NULL CHECK (entity_type IN ('customer', 'service', 'product', 'transaction')),
      entity_id text NOT NULL,
      action text NOT NULL CHECK (action IN ('create', 'update')),
      remote_id text,
      status text NOT NULL CHECK (status IN ('success', 'failed')),
      error_message text,
      request_payload jsonb,
      response_payload jsonb,
      duration_ms integer,
      source text NOT NULL DEFAULT 'manual',
      created_at timestamptz NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS ledger_sync_log_created_idx ON ledger_sync_log (created_at DESC)",
    "CREATE INDEX IF NOT EXISTS ledger_sync_log_source_idx ON ledger_sync_log (source, created_at DESC)",
]


def main() -> int:
    db_url = os.getenv("DATABASE_URL")
    if not db_url:
        print("ensure_ledger_sync_schema: missing DATABASE_URL", file=sys.stderr)
        return 2
    with psycopg.connect(db_url) as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                for sql in STATEMENTS:
                    cur.execute(sql)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
