# fitbit_sync/infrastructure/postgres_store.py
"""
PostgreSQL implementation of the destination health store.
Samples land in ``health_samples`` keyed by their sync identifier, so a
repeated write of the same record is absorbed by the database itself.
"""
from __future__ import annotations

from contextlib import contextmanager
from typing import Collection, Dict, Optional

import psycopg
from psycopg_pool import ConnectionPool

from fitbit_sync.domain.destination import HealthSample, HealthStore
from fitbit_sync.domain.exceptions import DestinationAuthError, DestinationWriteError
from fitbit_sync.domain.metrics import MetricKind
from fitbit_sync.infrastructure import log_utils
from fitbit_sync.infrastructure.db_conn import get_database_url

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS health_samples (
        id BIGSERIAL PRIMARY KEY,
        sync_identifier TEXT NOT NULL UNIQUE,
        metric TEXT NOT NULL,
        sample_type TEXT NOT NULL,
        value DOUBLE PRECISION NOT NULL,
        unit TEXT NOT NULL,
        start_time TIMESTAMPTZ NOT NULL,
        end_time TIMESTAMPTZ NOT NULL,
        source TEXT NOT NULL DEFAULT 'fitbit',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    );
    """,
    "CREATE INDEX IF NOT EXISTS health_samples_metric_start_idx ON health_samples (metric, start_time);",
    """
    CREATE TABLE IF NOT EXISTS health_write_grants (
        metric TEXT PRIMARY KEY,
        granted_at TIMESTAMPTZ NOT NULL DEFAULT now()
    );
    """,
)

# --- Connection Pool Management ---
_pool: ConnectionPool | None = None


def _create_pool() -> ConnectionPool:
    db_url = get_database_url()
    return ConnectionPool(conninfo=db_url, min_size=1, max_size=5)


def get_pool() -> ConnectionPool:
    global _pool
    if _pool is None:
        _pool = _create_pool()
    return _pool


class PostgresHealthStore(HealthStore):
    """PostgreSQL-backed destination for synced samples."""

    def __init__(self, pool: Optional[ConnectionPool] = None):
        self._pool = pool

    @property
    def pool(self) -> ConnectionPool:
        if self._pool is None:
            self._pool = get_pool()
        return self._pool

    @contextmanager
    def _get_cursor(self):
        with self.pool.connection() as conn:
            with conn.cursor() as cur:
                yield cur

    def close(self) -> None:
        if self._pool is not None and not self._pool.closed:
            self._pool.close()
            log_utils.info("Database connection pool closed.")

    # ----------------------------------------------
    # --- Schema & authorization ---
    # ----------------------------------------------
    def ensure_schema(self) -> None:
        """Create the sample and grant tables when missing."""
        with self._get_cursor() as cur:
            for statement in SCHEMA_STATEMENTS:
                cur.execute(statement)
        log_utils.info("Ensured health_samples schema.")

    def request_authorization(self, metrics: Collection[MetricKind]) -> None:
        requested = [MetricKind.parse(metric) for metric in metrics]
        try:
            with self._get_cursor() as cur:
                cur.execute("SELECT has_table_privilege(current_user, 'health_samples', 'INSERT');")
                row = cur.fetchone()
                if not row or not row[0]:
                    raise DestinationAuthError(
                        "Current database role may not insert into health_samples."
                    )
                for metric in requested:
                    cur.execute(
                        """
                        INSERT INTO health_write_grants (metric) VALUES (%s)
                        ON CONFLICT (metric) DO UPDATE SET granted_at = now();
                        """,
                        (metric.value,),
                    )
        except DestinationAuthError:
            raise
        except psycopg.Error as exc:
            log_utils.error(f"Destination authorization check failed: {exc}")
            raise DestinationAuthError(
                f"Health store unavailable or not initialised (run 'fitbit-sync init-db'): {exc}"
            ) from exc
        log_utils.debug(f"Write grant confirmed for {', '.join(m.value for m in requested) or 'no metrics'}.")

    # ----------------------------------------------
    # --- Samples ---
    # ----------------------------------------------
    def save_sample(self, sample: HealthSample) -> bool:
        try:
            with self._get_cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO health_samples (
                        sync_identifier, metric, sample_type, value, unit, start_time, end_time, source
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (sync_identifier) DO NOTHING
                    RETURNING id;
                    """,
                    (
                        sample.idempotency_key,
                        sample.metric.value,
                        sample.metric.sample_type,
                        sample.value,
                        sample.unit,
                        sample.start,
                        sample.end,
                        sample.source,
                    ),
                )
                inserted = cur.fetchone() is not None
        except psycopg.Error as exc:
            log_utils.error(f"Failed to save sample {sample.idempotency_key}: {exc}")
            raise DestinationWriteError(
                f"Failed to save {sample.metric.label} sample: {exc}",
                idempotency_key=sample.idempotency_key,
            ) from exc
        return inserted

    def count_samples(self, metric: Optional[MetricKind] = None) -> int:
        with self._get_cursor() as cur:
            if metric is None:
                cur.execute("SELECT COUNT(*) FROM health_samples;")
            else:
                cur.execute("SELECT COUNT(*) FROM health_samples WHERE metric = %s;", (metric.value,))
            row = cur.fetchone()
        return int(row[0]) if row else 0

    def counts_by_metric(self) -> Dict[MetricKind, int]:
        with self._get_cursor() as cur:
            cur.execute("SELECT metric, COUNT(*) FROM health_samples GROUP BY metric;")
            rows = cur.fetchall()
        counts = {metric: 0 for metric in MetricKind}
        for name, count in rows:
            try:
                counts[MetricKind.parse(name)] = int(count)
            except ValueError:
                continue
        return counts


__all__ = ["PostgresHealthStore", "SCHEMA_STATEMENTS", "get_pool"]
