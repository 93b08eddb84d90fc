"""
Database Migration Script: Create Identity Document Table

Creates the JSONB document table backing every identity collection
(accounts, orders, points_records, visit_sessions, events, link_holds,
merge_jobs, operator_queue, credentials, counters, identity_audit_log)
and the partial unique indexes enforcing the account invariants, plus the
identity_unique_keys side table for provider subjects.

Run this script directly to create the table:
    cd backend && python migrations/create_identity_tables.py
"""

import asyncio
import sys
import os

# Add backend to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import text
from database.connection import get_engine


# One statement per entry: asyncpg prepares each statement separately
CREATE_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS public.identity_documents (
        collection VARCHAR(64) NOT NULL,
        id VARCHAR(128) NOT NULL,
        data JSONB NOT NULL DEFAULT '{}'::jsonb,
        version INTEGER NOT NULL DEFAULT 1,
        created_at TIMESTAMPTZ DEFAULT NOW(),
        updated_at TIMESTAMPTZ DEFAULT NOW(),
        PRIMARY KEY (collection, id)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS ix_identity_documents_data
        ON public.identity_documents USING gin (data)
    """,
    # Live accounts only: tombstones keep their email/phone for history
    """
    CREATE UNIQUE INDEX IF NOT EXISTS uq_accounts_email
        ON public.identity_documents ((data->>'email'))
        WHERE collection = 'accounts' AND data->>'status' <> 'merged'
          AND coalesce(data->>'email', '') <> ''
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS uq_accounts_phone
        ON public.identity_documents ((data->>'phone'))
        WHERE collection = 'accounts' AND data->>'status' <> 'merged'
          AND coalesce(data->>'phone', '') <> ''
    """,
    # Member ids are never reused, tombstones included
    """
    CREATE UNIQUE INDEX IF NOT EXISTS uq_accounts_member_id
        ON public.identity_documents ((data->>'member_id'))
        WHERE collection = 'accounts' AND coalesce(data->>'member_id', '') <> ''
    """,
    # Provider subjects of live accounts, one row per element of provider_keys
    """
    CREATE TABLE IF NOT EXISTS public.identity_unique_keys (
        collection VARCHAR(64) NOT NULL,
        doc_id VARCHAR(128) NOT NULL,
        index_name VARCHAR(64) NOT NULL,
        key VARCHAR(512) NOT NULL,
        PRIMARY KEY (collection, doc_id, index_name, key)
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS uq_accounts_provider_key
        ON public.identity_unique_keys (key)
        WHERE index_name = 'uq_accounts_provider_key'
    """,
    # Claim keys for accounts written before the side table existed
    """
    INSERT INTO public.identity_unique_keys (collection, doc_id, index_name, key)
    SELECT d.collection, d.id, 'uq_accounts_provider_key', k.value
    FROM public.identity_documents d,
         jsonb_array_elements_text(coalesce(d.data->'provider_keys', '[]'::jsonb)) AS k(value)
    WHERE d.collection = 'accounts' AND d.data->>'status' <> 'merged'
    ON CONFLICT DO NOTHING
    """,
]


async def create_tables():
    """Create the identity_documents table and its indexes."""
    print("Creating identity_documents table...")

    async with get_engine().begin() as conn:
        try:
            for statement in CREATE_STATEMENTS:
                await conn.execute(text(statement))
            print("✅ Table created successfully!")

            result = await conn.execute(text("""
                SELECT indexname FROM pg_indexes
                WHERE schemaname = 'public'
                  AND tablename IN ('identity_documents', 'identity_unique_keys')
                ORDER BY indexname
            """))
            indexes = [row[0] for row in result.fetchall()]
            print(f"✅ Verified indexes: {indexes}")

        except Exception as e:
            print(f"❌ Error creating table: {e}")
            raise


async def drop_tables():
    """Drop the table (for testing)."""
    print("Dropping identity_documents...")
    async with get_engine().begin() as conn:
        await conn.execute(text("DROP TABLE IF EXISTS public.identity_unique_keys CASCADE"))
        await conn.execute(text("DROP TABLE IF EXISTS public.identity_documents CASCADE"))
        print("✅ Table dropped")


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Manage the identity_documents table")
    parser.add_argument("--drop", action="store_true", help="Drop the table instead of creating it")
    args = parser.parse_args()

    if args.drop:
        asyncio.run(drop_tables())
    else:
        asyncio.run(create_tables())
