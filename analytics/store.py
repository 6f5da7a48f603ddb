"""
Persistent Store for job_analytics

DuckDB-backed storage for every collection the scheduler and the platform
services share:
- job_configurations / job_executions
- platform_configs / platform_sync_jobs
- platform_analytics_raw / platform_analytics_aggregated
- referrals / website_events

All access goes through one connection guarded by a re-entrant lock, so
jobs running on different scheduler threads never interleave statements.
Upserts are keyed on natural keys (never on a surrogate row id), which
makes two concurrent writers of the same key converge on one row.

Usage:
    from analytics.store import PersistentStore

    store = PersistentStore("./data/analytics.duckdb")
    store.insert_raw_metrics(rows)
    df = store.fetch_raw_metrics_df("user-1", start, end)

    # In-memory store for tests
    store = PersistentStore(":memory:")
"""

import hashlib
import logging
import threading
import uuid
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

import duckdb
import pandas as pd

from analytics.utils import dumps_json, loads_json


logger = logging.getLogger(__name__)


# ============================================
# Table Definitions
# ============================================

SCHEMA: Dict[str, str] = {
    "job_configurations": """
        id VARCHAR,
        name VARCHAR,
        schedule VARCHAR,
        enabled BOOLEAN,
        platform_type VARCHAR,
        platform_name VARCHAR,
        last_run TIMESTAMP,
        next_run TIMESTAMP,
        retry_count INTEGER,
        max_retries INTEGER,
        timeout_ms BIGINT,
        created_at TIMESTAMP,
        updated_at TIMESTAMP
    """,
    "job_executions": """
        id VARCHAR,
        job_id VARCHAR,
        status VARCHAR,
        started_at TIMESTAMP,
        completed_at TIMESTAMP,
        error_message VARCHAR,
        retry_attempt INTEGER,
        execution_time_ms BIGINT,
        result VARCHAR
    """,
    "platform_configs": """
        id VARCHAR,
        user_id VARCHAR,
        platform_type VARCHAR,
        platform_name VARCHAR,
        config_data VARCHAR,
        is_active BOOLEAN,
        last_sync_at TIMESTAMP,
        created_at TIMESTAMP,
        updated_at TIMESTAMP
    """,
    "platform_sync_jobs": """
        id VARCHAR,
        user_id VARCHAR,
        platform_config_id VARCHAR,
        job_type VARCHAR,
        status VARCHAR,
        metadata VARCHAR,
        result VARCHAR,
        error_message VARCHAR,
        created_at TIMESTAMP,
        updated_at TIMESTAMP,
        completed_at TIMESTAMP
    """,
    "platform_analytics_raw": """
        id VARCHAR,
        user_id VARCHAR,
        platform_type VARCHAR,
        platform_name VARCHAR,
        job_posting_id VARCHAR,
        metric_name VARCHAR,
        metric_value DOUBLE,
        metadata VARCHAR,
        recorded_at TIMESTAMP,
        created_at TIMESTAMP
    """,
    "platform_analytics_aggregated": """
        id VARCHAR,
        user_id VARCHAR,
        platform_type VARCHAR,
        platform_name VARCHAR,
        job_posting_id VARCHAR,
        period_type VARCHAR,
        period_start DATE,
        period_end DATE,
        total_applications DOUBLE,
        total_views DOUBLE,
        total_clicks DOUBLE,
        conversion_rate DOUBLE,
        metadata VARCHAR,
        created_at TIMESTAMP,
        updated_at TIMESTAMP
    """,
    "referrals": """
        id VARCHAR,
        user_id VARCHAR,
        referrer_user_id VARCHAR,
        referral_code VARCHAR,
        referral_source VARCHAR,
        job_posting_id VARCHAR,
        status VARCHAR,
        reward_amount DOUBLE,
        reward_currency VARCHAR,
        metadata VARCHAR,
        referred_at TIMESTAMP,
        approved_at TIMESTAMP,
        expires_at TIMESTAMP,
        created_at TIMESTAMP,
        updated_at TIMESTAMP
    """,
    "website_events": """
        id VARCHAR,
        user_id VARCHAR,
        job_posting_id VARCHAR,
        metric_name VARCHAR,
        metric_value DOUBLE,
        metadata VARCHAR,
        recorded_at TIMESTAMP
    """,
}

# Columns stored as JSON text
JSON_COLUMNS = {"result", "config_data", "metadata"}

# Natural key of an aggregated row
AGGREGATE_KEY = [
    "user_id", "platform_type", "platform_name", "job_posting_id",
    "period_type", "period_start", "period_end",
]


def raw_metric_id(user_id: str, row: Dict[str, Any]) -> str:
    """
    Deterministic id of a raw metric row.

    Built from the row's identity (not its value), so writing the same
    fetched row twice stores it once. A row may narrow the metadata part
    of its identity with an "identity" mapping, which keeps volatile
    metadata (rates, conversions) out of the id of a daily snapshot.
    """
    identity = row["identity"] if "identity" in row else row.get("metadata")
    parts = [
        user_id,
        row.get("platform_type") or "",
        row.get("platform_name") or "",
        row.get("job_posting_id") or "",
        row.get("metric_name") or "",
        str(row.get("recorded_at") or ""),
        dumps_json(identity or {}),
    ]
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()[:32]


class PersistentStore:
    """
    DuckDB implementation of the durable store.

    Rows are returned as plain dictionaries with JSON columns decoded.
    """

    def __init__(self, duckdb_path: Union[str, Path] = ":memory:"):
        """
        Open (or create) the database and ensure all tables exist.

        Args:
            duckdb_path: Path to the DuckDB file, or ':memory:'
        """
        path = str(duckdb_path)
        if path != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)

        self.duckdb_path = path
        self._lock = threading.RLock()
        self._conn = duckdb.connect(path)
        self._create_tables()

    def _create_tables(self) -> None:
        with self._lock:
            for table_name, columns in SCHEMA.items():
                self._conn.execute(f"CREATE TABLE IF NOT EXISTS {table_name} ({columns})")
        logger.debug(f"Store ready at {self.duckdb_path} ({len(SCHEMA)} tables)")

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # ============================================
    # Generic Helpers
    # ============================================

    @staticmethod
    def _encode(column: str, value: Any) -> Any:
        if column in JSON_COLUMNS:
            return dumps_json(value)
        return value

    @staticmethod
    def _where(filters: Dict[str, Any]) -> tuple:
        if not filters:
            return "", []
        clauses = [f"{column} IS NOT DISTINCT FROM ?" for column in filters]
        return " WHERE " + " AND ".join(clauses), list(filters.values())

    def _rows(self, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        with self._lock:
            cursor = self._conn.execute(sql, list(params))
            columns = [d[0] for d in cursor.description]
            records = cursor.fetchall()

        rows = []
        for record in records:
            row = dict(zip(columns, record))
            for column in JSON_COLUMNS.intersection(row):
                row[column] = loads_json(row[column], default=None)
            rows.append(row)
        return rows

    def _insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        columns = list(row.keys())
        placeholders = ", ".join("?" for _ in columns)
        values = [self._encode(c, row[c]) for c in columns]
        with self._lock:
            self._conn.execute(
                f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})",
                values
            )
        return row

    def _update(self, table: str, filters: Dict[str, Any], fields: Dict[str, Any]) -> int:
        if not fields:
            return 0
        assignments = ", ".join(f"{column} = ?" for column in fields)
        values = [self._encode(c, v) for c, v in fields.items()]
        where_sql, where_params = self._where(filters)
        with self._lock:
            count = self._count(table, filters)
            self._conn.execute(
                f"UPDATE {table} SET {assignments}{where_sql}",
                values + where_params
            )
        return count

    def _select(
        self,
        table: str,
        filters: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = None,
        limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        where_sql, params = self._where(filters or {})
        sql = f"SELECT * FROM {table}{where_sql}"
        if order_by:
            sql += f" ORDER BY {order_by}"
        if limit is not None:
            sql += f" LIMIT {int(limit)}"
        return self._rows(sql, params)

    def _count(self, table: str, filters: Optional[Dict[str, Any]] = None) -> int:
        where_sql, params = self._where(filters or {})
        with self._lock:
            result = self._conn.execute(f"SELECT COUNT(*) FROM {table}{where_sql}", params).fetchone()
        return result[0] if result else 0

    def _first(self, table: str, filters: Dict[str, Any], order_by: Optional[str] = None) -> Optional[Dict[str, Any]]:
        rows = self._select(table, filters, order_by=order_by, limit=1)
        return rows[0] if rows else None

    # ============================================
    # Job Configurations
    # ============================================

    def ensure_job_config(self, config: Dict[str, Any]) -> bool:
        """
        Insert a job configuration unless one with the same id exists.

        Existing rows are left untouched so that a disabled job stays
        disabled across restarts.

        Returns:
            True if the row was created
        """
        with self._lock:
            if self._count("job_configurations", {"id": config["id"]}):
                return False
            now = datetime.now()
            row = {"created_at": now, "updated_at": now, **config}
            self._insert("job_configurations", row)
        return True

    def get_job_config(self, job_id: str) -> Optional[Dict[str, Any]]:
        return self._first("job_configurations", {"id": job_id})

    def list_job_configs(self, enabled_only: bool = False) -> List[Dict[str, Any]]:
        filters = {"enabled": True} if enabled_only else {}
        return self._select("job_configurations", filters, order_by="id")

    def update_job_config(self, job_id: str, **fields: Any) -> int:
        fields["updated_at"] = datetime.now()
        return self._update("job_configurations", {"id": job_id}, fields)

    # ============================================
    # Job Executions
    # ============================================

    def insert_execution(self, execution: Dict[str, Any]) -> Dict[str, Any]:
        return self._insert("job_executions", execution)

    def finalize_execution(self, execution_id: str, **fields: Any) -> int:
        """Finalize a running execution. Finalized rows are never changed again."""
        return self._update(
            "job_executions",
            {"id": execution_id, "status": "running"},
            fields
        )

    def get_execution(self, execution_id: str) -> Optional[Dict[str, Any]]:
        return self._first("job_executions", {"id": execution_id})

    def list_executions(self, job_id: str, limit: int = 10) -> List[Dict[str, Any]]:
        # id breaks ties between executions started within the same tick
        return self._select(
            "job_executions", {"job_id": job_id},
            order_by="started_at DESC, id DESC", limit=limit
        )

    def count_executions(self, job_id: str) -> int:
        return self._count("job_executions", {"job_id": job_id})

    # ============================================
    # Platform Configs
    # ============================================

    def upsert_platform_config(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """Insert or update the config of one user for one platform."""
        key = {
            "user_id": config["user_id"],
            "platform_type": config["platform_type"],
            "platform_name": config["platform_name"],
        }
        now = datetime.now()
        with self._lock:
            existing = self._first("platform_configs", key)
            if existing:
                self._update("platform_configs", {"id": existing["id"]}, {
                    "config_data": config.get("config_data") or {},
                    "is_active": bool(config.get("is_active", True)),
                    "updated_at": now,
                })
            else:
                self._insert("platform_configs", {
                    "id": config.get("id") or str(uuid.uuid4()),
                    **key,
                    "config_data": config.get("config_data") or {},
                    "is_active": bool(config.get("is_active", True)),
                    "last_sync_at": None,
                    "created_at": now,
                    "updated_at": now,
                })
            return self._first("platform_configs", key)

    def get_platform_config(self, user_id: str, platform_type: str, platform_name: str) -> Optional[Dict[str, Any]]:
        return self._first("platform_configs", {
            "user_id": user_id,
            "platform_type": platform_type,
            "platform_name": platform_name,
        })

    def list_platform_configs(
        self,
        user_id: Optional[str] = None,
        platform_type: Optional[str] = None,
        platform_name: Optional[str] = None,
        active_only: bool = True
    ) -> List[Dict[str, Any]]:
        filters: Dict[str, Any] = {}
        if user_id is not None:
            filters["user_id"] = user_id
        if platform_type is not None:
            filters["platform_type"] = platform_type
        if platform_name is not None:
            filters["platform_name"] = platform_name
        if active_only:
            filters["is_active"] = True
        return self._select("platform_configs", filters, order_by="user_id")

    def update_last_sync(self, user_id: str, platform_type: str, platform_name: str, synced_at: datetime) -> int:
        return self._update(
            "platform_configs",
            {"user_id": user_id, "platform_type": platform_type, "platform_name": platform_name},
            {"last_sync_at": synced_at, "updated_at": synced_at}
        )

    # ============================================
    # Platform Sync Jobs
    # ============================================

    def insert_sync_job(self, sync_job: Dict[str, Any]) -> Dict[str, Any]:
        return self._insert("platform_sync_jobs", sync_job)

    def update_sync_job(self, sync_job_id: str, **fields: Any) -> Optional[Dict[str, Any]]:
        self._update("platform_sync_jobs", {"id": sync_job_id}, fields)
        return self._first("platform_sync_jobs", {"id": sync_job_id})

    def latest_sync_job(self, user_id: str, platform_config_id: str) -> Optional[Dict[str, Any]]:
        return self._first(
            "platform_sync_jobs",
            {"user_id": user_id, "platform_config_id": platform_config_id},
            order_by="created_at DESC"
        )

    # ============================================
    # Raw Metrics
    # ============================================

    def insert_raw_metrics(self, user_id: str, rows: Iterable[Dict[str, Any]]) -> int:
        """
        Insert raw metric rows for a user, skipping rows already stored.

        Rows flagged "snapshot" (daily totals that a later fetch may
        restate) overwrite the stored value and metadata instead.

        Returns:
            Number of rows actually inserted
        """
        inserted = replaced = 0
        now = datetime.now()
        with self._lock:
            for row in rows:
                row_id = row.get("id") or raw_metric_id(user_id, row)
                if self._count("platform_analytics_raw", {"id": row_id}):
                    if row.get("snapshot"):
                        replaced += self._update("platform_analytics_raw", {"id": row_id}, {
                            "metric_value": float(row["metric_value"]),
                            "metadata": row.get("metadata") or {},
                        })
                    continue
                self._insert("platform_analytics_raw", {
                    "id": row_id,
                    "user_id": user_id,
                    "platform_type": row["platform_type"],
                    "platform_name": row["platform_name"],
                    "job_posting_id": row.get("job_posting_id"),
                    "metric_name": row["metric_name"],
                    "metric_value": float(row["metric_value"]),
                    "metadata": row.get("metadata") or {},
                    "recorded_at": row["recorded_at"],
                    "created_at": now,
                })
                inserted += 1
        if replaced:
            logger.debug(f"Restated {replaced} snapshot rows for user {user_id}")
        return inserted

    def fetch_raw_metrics(self, user_id: str, start: datetime, end: datetime) -> List[Dict[str, Any]]:
        return self._rows(
            "SELECT * FROM platform_analytics_raw "
            "WHERE user_id = ? AND recorded_at >= ? AND recorded_at <= ? "
            "ORDER BY recorded_at ASC, created_at ASC",
            [user_id, start, end]
        )

    def fetch_raw_metrics_df(self, user_id: str, start: datetime, end: datetime) -> pd.DataFrame:
        """Raw rows for one user in [start, end] as a DataFrame, oldest first."""
        return pd.DataFrame(
            self.fetch_raw_metrics(user_id, start, end),
            columns=[c.split()[0] for c in SCHEMA["platform_analytics_raw"].split(",")]
        )

    def distinct_raw_users(self, start: datetime, end: datetime) -> List[str]:
        rows = self._rows(
            "SELECT DISTINCT user_id FROM platform_analytics_raw "
            "WHERE recorded_at >= ? AND recorded_at <= ? ORDER BY user_id",
            [start, end]
        )
        return [row["user_id"] for row in rows]

    def delete_raw_before(self, cutoff: datetime) -> int:
        """Delete raw rows recorded before the cutoff; returns the number removed."""
        with self._lock:
            count = self._conn.execute(
                "SELECT COUNT(*) FROM platform_analytics_raw WHERE recorded_at < ?", [cutoff]
            ).fetchone()[0]
            self._conn.execute("DELETE FROM platform_analytics_raw WHERE recorded_at < ?", [cutoff])
        return count

    def count_raw_metrics(self, user_id: Optional[str] = None) -> int:
        return self._count("platform_analytics_raw", {"user_id": user_id} if user_id else {})

    # ============================================
    # Aggregated Metrics
    # ============================================

    def upsert_aggregated(self, record: Dict[str, Any]) -> str:
        """
        Insert or overwrite an aggregated row keyed by its full period key.

        Returns:
            'inserted' or 'updated'
        """
        key = {column: record.get(column) for column in AGGREGATE_KEY}
        now = datetime.now()
        values = {
            "total_applications": record["total_applications"],
            "total_views": record["total_views"],
            "total_clicks": record["total_clicks"],
            "conversion_rate": record["conversion_rate"],
            "metadata": record.get("metadata") or {},
            "updated_at": now,
        }
        with self._lock:
            if self._count("platform_analytics_aggregated", key):
                self._update("platform_analytics_aggregated", key, values)
                return "updated"
            self._insert("platform_analytics_aggregated", {
                "id": str(uuid.uuid4()),
                **key,
                **values,
                "created_at": now,
            })
            return "inserted"

    def get_aggregated(self, **key: Any) -> Optional[Dict[str, Any]]:
        filters = {column: key.get(column) for column in AGGREGATE_KEY}
        return self._first("platform_analytics_aggregated", filters)

    def list_aggregated(
        self,
        user_id: str,
        period_type: Optional[str] = None,
        start: Optional[Any] = None,
        end: Optional[Any] = None
    ) -> List[Dict[str, Any]]:
        sql = "SELECT * FROM platform_analytics_aggregated WHERE user_id = ?"
        params: List[Any] = [user_id]
        if period_type:
            sql += " AND period_type = ?"
            params.append(period_type)
        if start is not None:
            sql += " AND period_start >= CAST(? AS DATE)"
            params.append(start)
        if end is not None:
            sql += " AND period_end <= CAST(? AS DATE)"
            params.append(end)
        sql += " ORDER BY period_start DESC, platform_type, platform_name"
        return self._rows(sql, params)

    # ============================================
    # Referrals
    # ============================================

    def insert_referral(self, referral: Dict[str, Any]) -> Dict[str, Any]:
        return self._insert("referrals", referral)

    def get_referral_by_code(self, referral_code: str) -> Optional[Dict[str, Any]]:
        return self._first("referrals", {"referral_code": referral_code})

    def referral_code_exists(self, referral_code: str) -> bool:
        return self._count("referrals", {"referral_code": referral_code}) > 0

    def update_referral(self, referral_id: str, **fields: Any) -> Optional[Dict[str, Any]]:
        if not self._update("referrals", {"id": referral_id}, fields):
            return None
        return self._first("referrals", {"id": referral_id})

    def list_referrals_by_referrer(self, referrer_user_id: str, status: Optional[str] = None) -> List[Dict[str, Any]]:
        filters: Dict[str, Any] = {"referrer_user_id": referrer_user_id}
        if status:
            filters["status"] = status
        return self._select("referrals", filters, order_by="created_at DESC")

    def count_referrals_by_referrer(self, referrer_user_id: str) -> int:
        return self._count("referrals", {"referrer_user_id": referrer_user_id})

    def list_referrals_for_user(self, user_id: str, start: datetime, end: datetime) -> List[Dict[str, Any]]:
        return self._rows(
            "SELECT * FROM referrals WHERE user_id = ? AND created_at >= ? AND created_at <= ? "
            "ORDER BY created_at ASC",
            [user_id, start, end]
        )

    def referral_days_updated(self, user_id: str, start: datetime, end: datetime) -> List[date]:
        """Creation days of referrals whose record changed within [start, end]."""
        rows = self._rows(
            "SELECT DISTINCT CAST(created_at AS DATE) AS day FROM referrals "
            "WHERE user_id = ? AND updated_at >= ? AND updated_at <= ? ORDER BY day",
            [user_id, start, end]
        )
        return [row["day"] for row in rows]

    # ============================================
    # Website Events
    # ============================================

    def insert_website_event(self, event: Dict[str, Any]) -> Dict[str, Any]:
        return self._insert("website_events", {"id": str(uuid.uuid4()), **event})

    def list_website_events(self, user_id: str, start: datetime, end: datetime) -> List[Dict[str, Any]]:
        return self._rows(
            "SELECT * FROM website_events WHERE user_id = ? AND recorded_at >= ? AND recorded_at <= ? "
            "ORDER BY recorded_at ASC",
            [user_id, start, end]
        )
