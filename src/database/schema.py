"""
DDL for the progress tables and the change-notification triggers.

The trigger publishes every row change on a channel named after the table, so
``PostgresNotifyTransport`` can LISTEN on ``progress_entries`` and
``class_averages`` directly.
"""

import logging

from .connection import DatabasePool


logger = logging.getLogger(__name__)


TABLES_DDL = """
CREATE TABLE IF NOT EXISTS public.progress_entries (
    id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
    student_id uuid NOT NULL,
    subject_id uuid NOT NULL,
    class_id uuid NOT NULL,
    grade numeric(5, 2) NOT NULL CHECK (grade >= 0 AND grade <= 100),
    comments text,
    entered_by uuid NOT NULL,
    entry_date timestamptz NOT NULL DEFAULT now()
);

CREATE INDEX IF NOT EXISTS progress_entries_class_subject_idx
    ON public.progress_entries (class_id, subject_id);

CREATE TABLE IF NOT EXISTS public.class_averages (
    class_id uuid NOT NULL,
    subject_id uuid NOT NULL,
    average_grade double precision NOT NULL,
    entry_count integer NOT NULL CHECK (entry_count > 0),
    calculation_date timestamptz NOT NULL DEFAULT now(),
    CONSTRAINT class_averages_class_subject_key UNIQUE (class_id, subject_id)
);
"""

NOTIFY_FUNCTION_DDL = """
CREATE OR REPLACE FUNCTION public.notify_row_change() RETURNS trigger AS $$
BEGIN
    PERFORM pg_notify(
        TG_TABLE_NAME,
        json_build_object(
            'table', TG_TABLE_NAME,
            'operation', TG_OP,
            'new', CASE WHEN TG_OP = 'DELETE' THEN NULL ELSE row_to_json(NEW) END,
            'old', CASE WHEN TG_OP = 'INSERT' THEN NULL ELSE row_to_json(OLD) END
        )::text
    );
    RETURN NULL;
END;
$$ LANGUAGE plpgsql;
"""

TRIGGER_TEMPLATE = """
DROP TRIGGER IF EXISTS {table}_notify_change ON public.{table};
CREATE TRIGGER {table}_notify_change
    AFTER INSERT OR UPDATE OR DELETE ON public.{table}
    FOR EACH ROW EXECUTE FUNCTION public.notify_row_change();
"""

WATCHED_TABLES = ("progress_entries", "class_averages")


async def install_schema(pool: DatabasePool, include_tables: bool = True) -> None:
    """Create the progress tables (optionally) and the notify triggers."""
    async with pool.acquire_connection() as conn:
        async with conn.transaction():
            if include_tables:
                await conn.execute(TABLES_DDL)
            await conn.execute(NOTIFY_FUNCTION_DDL)
            for table in WATCHED_TABLES:
                await conn.execute(TRIGGER_TEMPLATE.format(table=table))

    logger.info(f"Installed change triggers on {', '.join(WATCHED_TABLES)}")
