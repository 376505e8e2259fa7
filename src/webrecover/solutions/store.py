"""SQLite storage for stored solutions.

This module provides durable, indexed storage of solutions, their usage
history and version-compatibility records, plus full-text and fuzzy
lookup. If the database file cannot be opened the store degrades to an
in-memory database and keeps working.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager, nullcontext
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from ..errors import StoreError
from ..generator.models import RiskLevel
from .models import (
    ImportResult,
    SolutionSearchOptions,
    StoredSolution,
    UsageRecord,
    current_versions,
    error_signature,
    extract_error_keywords,
    is_valid_solution_data,
)

logger = logging.getLogger(__name__)

MEMORY_PATH = ":memory:"

# Auto-deprecation after enough evidence of failure
MIN_USES_FOR_DEPRECATION = 10
DEPRECATION_SUCCESS_RATE = 0.2

SOLUTION_COLUMNS = (
    "id",
    "error_pattern",
    "error_signature",
    "solution_code",
    "explanation",
    "confidence",
    "estimated_success_rate",
    "actual_success_rate",
    "risk_level",
    "strategy",
    "tags",
    "categories",
    "version_compatibility",
    "performance_metrics",
    "usage_statistics",
    "metadata",
)


@dataclass(frozen=True)
class Migration:
    version: str
    description: str
    statements: tuple[str, ...]


MIGRATIONS: tuple[Migration, ...] = (
    Migration(
        version="1.0.0",
        description="Initial schema creation",
        statements=(
            """
            CREATE TABLE IF NOT EXISTS solutions (
                id TEXT PRIMARY KEY,
                error_pattern TEXT NOT NULL,
                error_signature TEXT NOT NULL,
                solution_code TEXT NOT NULL,
                explanation TEXT NOT NULL,
                confidence REAL NOT NULL CHECK (confidence >= 0 AND confidence <= 1),
                estimated_success_rate REAL NOT NULL DEFAULT 0.5,
                actual_success_rate REAL NOT NULL DEFAULT 0,
                risk_level TEXT NOT NULL CHECK (risk_level IN ('low', 'medium', 'high')),
                strategy TEXT NOT NULL,
                tags TEXT NOT NULL DEFAULT '[]',
                categories TEXT NOT NULL DEFAULT '[]',
                version_compatibility TEXT NOT NULL DEFAULT '{}',
                performance_metrics TEXT NOT NULL DEFAULT '{}',
                usage_statistics TEXT NOT NULL DEFAULT '{}',
                metadata TEXT NOT NULL DEFAULT '{}',
                created_at INTEGER NOT NULL DEFAULT (strftime('%s', 'now')),
                updated_at INTEGER NOT NULL DEFAULT (strftime('%s', 'now'))
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS solution_usage (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                solution_id TEXT NOT NULL,
                timestamp INTEGER NOT NULL DEFAULT (strftime('%s', 'now')),
                success INTEGER NOT NULL CHECK (success IN (0, 1)),
                execution_time REAL NOT NULL,
                memory_usage REAL,
                error_message TEXT,
                context TEXT,
                FOREIGN KEY (solution_id) REFERENCES solutions(id) ON DELETE CASCADE
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS version_compatibility (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                solution_id TEXT NOT NULL,
                python_version TEXT,
                driver_version TEXT,
                platform TEXT NOT NULL,
                compatible INTEGER NOT NULL CHECK (compatible IN (0, 1)),
                tested_at INTEGER NOT NULL DEFAULT (strftime('%s', 'now')),
                FOREIGN KEY (solution_id) REFERENCES solutions(id) ON DELETE CASCADE
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_solutions_error_signature ON solutions(error_signature)",
            "CREATE INDEX IF NOT EXISTS idx_solutions_strategy ON solutions(strategy)",
            "CREATE INDEX IF NOT EXISTS idx_solutions_confidence ON solutions(confidence)",
            "CREATE INDEX IF NOT EXISTS idx_solutions_success_rate ON solutions(actual_success_rate)",
            "CREATE INDEX IF NOT EXISTS idx_solutions_risk_level ON solutions(risk_level)",
            "CREATE INDEX IF NOT EXISTS idx_usage_solution_id ON solution_usage(solution_id)",
            "CREATE INDEX IF NOT EXISTS idx_usage_timestamp ON solution_usage(timestamp)",
            "CREATE INDEX IF NOT EXISTS idx_version_solution_id ON version_compatibility(solution_id)",
        ),
    ),
    Migration(
        version="1.1.0",
        description="Index recency and compatibility lookups",
        statements=(
            "CREATE INDEX IF NOT EXISTS idx_solutions_updated_at ON solutions(updated_at)",
            "CREATE INDEX IF NOT EXISTS idx_usage_success ON solution_usage(success)",
            "CREATE INDEX IF NOT EXISTS idx_version_platform ON version_compatibility(platform)",
        ),
    ),
)


def compare_versions(left: str, right: str) -> int:
    """Compare dotted version strings; returns -1, 0 or 1."""
    a = [int(p) for p in left.split(".")]
    b = [int(p) for p in right.split(".")]
    for i in range(max(len(a), len(b))):
        x = a[i] if i < len(a) else 0
        y = b[i] if i < len(b) else 0
        if x != y:
            return 1 if x > y else -1
    return 0


def fts_query(terms: list[str]) -> str:
    """OR-join search terms as quoted FTS5 strings."""
    return " OR ".join('"' + t.replace('"', '""') + '"' for t in terms)


def _sql_literal(value: Any) -> str:
    if value is None:
        return "NULL"
    if isinstance(value, (int, float)):
        return repr(value)
    return "'" + str(value).replace("'", "''") + "'"


class SolutionStore:
    """SQLite database of stored solutions.

    Attributes:
        db_path: Database file, or ":memory:".
        backup_dir: Directory receiving create_backup() copies.
        degraded: True when the configured file could not be opened and the
            store fell back to an in-memory database.
        fts_enabled: True when the FTS5 index is available.
    """

    def __init__(
        self,
        db_path: Path | str | None = None,
        backup_dir: Path | str | None = None,
        max_backups: int = 10,
    ):
        """Open (creating if needed) the solution database.

        Args:
            db_path: Path to the database file. Defaults to an in-memory database.
            backup_dir: Backup directory. Defaults to <db dir>/backups.
            max_backups: Number of newest backups create_backup() keeps.
        """
        self.db_path: Path | str = Path(db_path) if db_path and str(db_path) != MEMORY_PATH else MEMORY_PATH
        if backup_dir is not None:
            self.backup_dir = Path(backup_dir)
        elif isinstance(self.db_path, Path):
            self.backup_dir = self.db_path.parent / "backups"
        else:
            self.backup_dir = Path("data") / "backups"
        self.max_backups = max_backups
        self.degraded = False
        self.fts_enabled = False

        self._local = threading.local()
        self._shared: sqlite3.Connection | None = None
        self._shared_lock = threading.RLock()
        self._locks_guard = threading.Lock()
        self._solution_locks: dict[str, threading.Lock] = {}

        try:
            self._init_db()
        except (sqlite3.Error, OSError) as e:
            if self.in_memory:
                raise StoreError(f"Failed to initialize solution store: {e}") from e
            logger.warning(f"Solution store unavailable at {self.db_path} ({e}); using in-memory store")
            self.db_path = MEMORY_PATH
            self.degraded = True
            self._local = threading.local()
            self._init_db()

    @property
    def in_memory(self) -> bool:
        return self.db_path == MEMORY_PATH

    # =========================================================================
    # Connection handling
    # =========================================================================

    def _connect(self) -> sqlite3.Connection:
        if isinstance(self.db_path, Path):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self.db_path), check_same_thread=False, timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        if not self.in_memory:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
        return conn

    def _get_connection(self) -> sqlite3.Connection:
        """Get the connection for this thread.

        In-memory databases exist per connection, so they share one.
        """
        if self.in_memory:
            if self._shared is None:
                self._shared = self._connect()
            return self._shared
        if getattr(self._local, "connection", None) is None:
            self._local.connection = self._connect()
        result: sqlite3.Connection = self._local.connection
        return result

    @contextmanager
    def _cursor(self) -> Iterator[sqlite3.Cursor]:
        """Get a database cursor with automatic commit/rollback."""
        with self._shared_lock if self.in_memory else nullcontext():
            conn = self._get_connection()
            cursor = conn.cursor()
            try:
                yield cursor
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                cursor.close()

    def _solution_lock(self, solution_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._solution_locks.get(solution_id)
            if lock is None:
                lock = self._solution_locks[solution_id] = threading.Lock()
            return lock

    def close(self) -> None:
        """Close this thread's connection (and the shared one, if any)."""
        conn = getattr(self._local, "connection", None)
        if conn is not None:
            conn.close()
            self._local.connection = None
        if self._shared is not None:
            self._shared.close()
            self._shared = None

    # =========================================================================
    # Schema
    # =========================================================================

    def _init_db(self) -> None:
        """Create metadata table, apply pending migrations, set up FTS."""
        with self._cursor() as cursor:
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS database_metadata (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at INTEGER NOT NULL DEFAULT (strftime('%s', 'now'))
                )
                """
            )
            cursor.execute("SELECT value FROM database_metadata WHERE key = 'version'")
            row = cursor.fetchone()
            current = row["value"] if row else "0.0.0"
            if row is None:
                cursor.execute(
                    "INSERT OR REPLACE INTO database_metadata (key, value) "
                    "VALUES ('created_at', strftime('%s', 'now'))"
                )

            for migration in MIGRATIONS:
                if compare_versions(migration.version, current) <= 0:
                    continue
                logger.info(f"Applying migration {migration.version}: {migration.description}")
                for statement in migration.statements:
                    cursor.execute(statement)
                cursor.execute(
                    "INSERT OR REPLACE INTO database_metadata (key, value) VALUES ('version', ?)",
                    (migration.version,),
                )

        self.fts_enabled = self._init_fts()

    def _init_fts(self) -> bool:
        try:
            with self._cursor() as cursor:
                cursor.execute(
                    """
                    CREATE VIRTUAL TABLE IF NOT EXISTS solutions_fts USING fts5(
                        solution_id UNINDEXED,
                        error_pattern,
                        solution_code,
                        explanation,
                        strategy,
                        tags,
                        categories
                    )
                    """
                )
        except sqlite3.OperationalError as e:
            logger.debug(f"FTS5 unavailable, full-text search uses LIKE: {e}")
            return False
        return True

    def schema_version(self) -> str:
        with self._cursor() as cursor:
            cursor.execute("SELECT value FROM database_metadata WHERE key = 'version'")
            row = cursor.fetchone()
        return row["value"] if row else "0.0.0"

    # =========================================================================
    # Writes
    # =========================================================================

    def store(self, solution: StoredSolution) -> None:
        """Insert or update a solution and its search/compatibility rows."""
        values = self._row_values(solution)
        assignments = ", ".join(f"{c} = excluded.{c}" for c in SOLUTION_COLUMNS[1:])
        placeholders = ", ".join("?" * len(SOLUTION_COLUMNS))

        with self._cursor() as cursor:
            cursor.execute(
                f"""
                INSERT INTO solutions ({", ".join(SOLUTION_COLUMNS)})
                VALUES ({placeholders})
                ON CONFLICT(id) DO UPDATE SET {assignments},
                    updated_at = strftime('%s', 'now')
                """,
                values,
            )

            if self.fts_enabled:
                cursor.execute("DELETE FROM solutions_fts WHERE solution_id = ?", (solution.id,))
                cursor.execute(
                    """
                    INSERT INTO solutions_fts (
                        solution_id, error_pattern, solution_code, explanation,
                        strategy, tags, categories
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        solution.id,
                        solution.error_pattern,
                        solution.solution_code,
                        solution.explanation,
                        solution.strategy,
                        " ".join(solution.tags),
                        " ".join(solution.categories),
                    ),
                )

            compat = solution.version_compatibility
            cursor.execute("DELETE FROM version_compatibility WHERE solution_id = ?", (solution.id,))
            for platform_name in compat.platform_compatible:
                cursor.execute(
                    """
                    INSERT INTO version_compatibility
                    (solution_id, python_version, driver_version, platform, compatible)
                    VALUES (?, ?, ?, ?, 1)
                    """,
                    (solution.id, compat.python_version, compat.driver_version, platform_name),
                )

    @staticmethod
    def _row_values(solution: StoredSolution) -> tuple[Any, ...]:
        return (
            solution.id,
            solution.error_pattern,
            solution.error_signature,
            solution.solution_code,
            solution.explanation,
            solution.confidence,
            solution.estimated_success_rate,
            solution.actual_success_rate,
            solution.risk_level.value,
            solution.strategy,
            json.dumps(solution.tags),
            json.dumps(solution.categories),
            json.dumps(solution.version_compatibility.to_dict()),
            json.dumps(solution.performance_metrics.to_dict()),
            json.dumps(solution.usage_statistics.to_dict()),
            json.dumps(solution.metadata.to_dict()),
        )

    def record_usage(self, record: UsageRecord) -> StoredSolution | None:
        """Append a usage row and fold it into the solution's statistics.

        The read-modify-write is serialized per solution. After the update
        the auto-deprecation rule runs.

        Returns:
            The updated solution, or None if the id is unknown.
        """
        with self._solution_lock(record.solution_id):
            solution = self.get(record.solution_id)
            if solution is None:
                return None

            with self._cursor() as cursor:
                cursor.execute(
                    """
                    INSERT INTO solution_usage (
                        solution_id, success, execution_time, memory_usage,
                        error_message, context, timestamp
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        record.solution_id,
                        1 if record.success else 0,
                        record.execution_time_ms,
                        record.memory_usage,
                        record.error,
                        json.dumps({"timestamp": record.timestamp.isoformat()}),
                        int(record.timestamp.timestamp()),
                    ),
                )

            stats = solution.usage_statistics
            stats.record(record.success, record.timestamp)
            solution.actual_success_rate = stats.success_count / stats.total_uses

            metrics = solution.performance_metrics
            metrics.average_execution_time_ms = (
                metrics.average_execution_time_ms * (stats.total_uses - 1) + record.execution_time_ms
            ) / stats.total_uses
            if record.memory_usage:
                metrics.memory_usage = (
                    (metrics.memory_usage + record.memory_usage) / 2
                    if metrics.memory_usage
                    else record.memory_usage
                )

            with self._cursor() as cursor:
                cursor.execute(
                    """
                    UPDATE solutions SET
                        actual_success_rate = ?,
                        usage_statistics = ?,
                        performance_metrics = ?,
                        updated_at = strftime('%s', 'now')
                    WHERE id = ?
                    """,
                    (
                        solution.actual_success_rate,
                        json.dumps(stats.to_dict()),
                        json.dumps(metrics.to_dict()),
                        solution.id,
                    ),
                )

            if (
                not solution.deprecated
                and stats.total_uses >= MIN_USES_FOR_DEPRECATION
                and solution.actual_success_rate <= DEPRECATION_SUCCESS_RATE
            ):
                percent = int(solution.actual_success_rate * 100 + 0.5)
                reason = (
                    f"Auto-deprecated due to low success rate: {percent}% "
                    f"over {stats.total_uses} attempts"
                )
                solution = self._deprecate(solution, reason)
                logger.info(f"Solution {solution.id} deprecated: {reason}")

            return solution

    def deprecate(self, solution_id: str, reason: str) -> StoredSolution:
        """Soft-delete a solution.

        Raises:
            StoreError: If the solution does not exist.
        """
        solution = self.get(solution_id)
        if solution is None:
            raise StoreError(f"Solution {solution_id} not found")
        return self._deprecate(solution, reason)

    def _deprecate(self, solution: StoredSolution, reason: str) -> StoredSolution:
        now = datetime.now()
        solution.metadata.deprecated = True
        solution.metadata.deprecated_reason = reason
        solution.metadata.deprecated_at = now
        solution.metadata.updated_at = now
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE solutions SET
                    metadata = ?,
                    updated_at = strftime('%s', 'now')
                WHERE id = ?
                """,
                (json.dumps(solution.metadata.to_dict()), solution.id),
            )
        return solution

    # =========================================================================
    # Reads
    # =========================================================================

    def get(self, solution_id: str) -> StoredSolution | None:
        """Get a solution by id."""
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM solutions WHERE id = ?", (solution_id,))
            row = cursor.fetchone()
        return self._row_to_solution(row) if row else None

    def search(self, options: SolutionSearchOptions | None = None) -> list[StoredSolution]:
        """Find solutions matching criteria.

        Args:
            options: Filter, sort and pagination options.

        Returns:
            Matching solutions in the requested order.
        """
        options = options or SolutionSearchOptions()
        where_clause, params = options.to_sql_where()

        query = f"""
            SELECT * FROM solutions
            WHERE {where_clause}
            ORDER BY {options.order_clause()}
        """
        if options.limit:
            query += " LIMIT ? OFFSET ?"
            params.extend([options.limit, options.offset])

        with self._cursor() as cursor:
            cursor.execute(query, params)
            rows = cursor.fetchall()
        return [self._row_to_solution(row) for row in rows]

    def full_text_search(
        self,
        terms: list[str],
        options: SolutionSearchOptions | None = None,
    ) -> list[StoredSolution]:
        """Search pattern, code, explanation, strategy, tags and categories.

        Any term matching is enough. Uses the FTS5 index when available and
        LIKE matching otherwise. Only min_confidence, min_success_rate,
        include_deprecated and limit are honored from options.
        """
        options = options or SolutionSearchOptions()
        if not terms:
            return []

        conditions = []
        params: list[Any] = []
        if options.min_confidence is not None:
            conditions.append("solutions.confidence >= ?")
            params.append(options.min_confidence)
        if options.min_success_rate is not None:
            conditions.append("solutions.actual_success_rate >= ?")
            params.append(options.min_success_rate)
        if not options.include_deprecated:
            conditions.append("json_extract(solutions.metadata, '$.deprecated') IS NOT 1")
        extra = "".join(f" AND {c}" for c in conditions)
        limit = " LIMIT ?" if options.limit else ""
        tail = [options.limit] if options.limit else []

        if self.fts_enabled:
            query = f"""
                SELECT solutions.* FROM solutions_fts
                JOIN solutions ON solutions.id = solutions_fts.solution_id
                WHERE solutions_fts MATCH ?{extra}
                ORDER BY solutions_fts.rank, solutions.actual_success_rate DESC,
                    solutions.confidence DESC{limit}
            """
            try:
                with self._cursor() as cursor:
                    cursor.execute(query, [fts_query(terms), *params, *tail])
                    rows = cursor.fetchall()
                return [self._row_to_solution(row) for row in rows]
            except sqlite3.OperationalError as e:
                logger.debug(f"FTS query failed, retrying with LIKE: {e}")

        searchable = ("error_pattern", "solution_code", "explanation", "strategy", "tags", "categories")
        term_conditions = []
        like_params: list[Any] = []
        for term in terms:
            term_conditions.append(
                "(" + " OR ".join(f"solutions.{c} LIKE ?" for c in searchable) + ")"
            )
            like_params.extend([f"%{term}%"] * len(searchable))

        query = f"""
            SELECT solutions.* FROM solutions
            WHERE ({" OR ".join(term_conditions)}){extra}
            ORDER BY solutions.actual_success_rate DESC, solutions.confidence DESC{limit}
        """
        with self._cursor() as cursor:
            cursor.execute(query, [*like_params, *params, *tail])
            rows = cursor.fetchall()
        return [self._row_to_solution(row) for row in rows]

    def find_similar(
        self,
        error_pattern: str,
        options: SolutionSearchOptions | None = None,
    ) -> list[tuple[StoredSolution, float]]:
        """Find solutions for errors shaped like this one.

        Exact signature matches score 1.0 and short-circuit. Otherwise rows
        are scored 0.8 for containing the whole pattern, 0.6 for containing
        its keywords, and 0.4 for sharing a strategy with the best
        solutions whose pattern contains it.

        Returns:
            (solution, similarity) pairs, most similar first.
        """
        options = options or SolutionSearchOptions()
        signature = error_signature(error_pattern)

        exact = self.search(replace(options, error_signature=signature, limit=5, offset=0))
        if exact:
            return [(solution, 1.0) for solution in exact]

        conditions = []
        params: list[Any] = []
        if options.min_success_rate is not None:
            conditions.append("actual_success_rate >= ?")
            params.append(options.min_success_rate)
        if options.max_risk_level is not None:
            allowed = [r.value for r in RiskLevel if r.rank <= options.max_risk_level.rank]
            conditions.append(f"risk_level IN ({','.join('?' * len(allowed))})")
            params.extend(allowed)
        extra = "".join(f" AND {c}" for c in conditions)

        keywords = extract_error_keywords(error_pattern)
        query = f"""
            SELECT *,
                (CASE
                    WHEN error_signature = ? THEN 1.0
                    WHEN error_pattern LIKE ? THEN 0.8
                    WHEN error_pattern LIKE ? THEN 0.6
                    ELSE 0.4
                END) AS similarity
            FROM solutions
            WHERE (
                error_signature LIKE ? OR
                error_pattern LIKE ? OR
                strategy IN (
                    SELECT DISTINCT strategy FROM solutions
                    WHERE error_pattern LIKE ?
                    ORDER BY actual_success_rate DESC
                    LIMIT 3
                )
            )
            AND json_extract(metadata, '$.deprecated') IS NOT 1{extra}
            ORDER BY similarity DESC, actual_success_rate DESC, confidence DESC
            LIMIT ?
        """
        with self._cursor() as cursor:
            cursor.execute(
                query,
                [
                    signature,
                    f"%{error_pattern}%",
                    f"%{keywords}%",
                    f"%{signature[:8]}%",
                    f"%{error_pattern}%",
                    f"%{error_pattern}%",
                    *params,
                    options.limit or 10,
                ],
            )
            rows = cursor.fetchall()
        return [(self._row_to_solution(row), float(row["similarity"])) for row in rows]

    def usage_history(self, solution_id: str, limit: int = 50) -> list[dict[str, Any]]:
        """Newest usage rows for one solution."""
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT timestamp, success, execution_time, memory_usage, error_message
                FROM solution_usage
                WHERE solution_id = ?
                ORDER BY timestamp DESC, id DESC
                LIMIT ?
                """,
                (solution_id, limit),
            )
            rows = cursor.fetchall()
        return [
            {
                "timestamp": datetime.fromtimestamp(row["timestamp"]).isoformat(),
                "success": bool(row["success"]),
                "execution_time_ms": row["execution_time"],
                "memory_usage": row["memory_usage"],
                "error": row["error_message"],
            }
            for row in rows
        ]

    def count(self) -> int:
        with self._cursor() as cursor:
            cursor.execute("SELECT COUNT(*) AS count FROM solutions")
            row = cursor.fetchone()
        return row["count"] if row else 0

    def _row_to_solution(self, row: sqlite3.Row) -> StoredSolution:
        return StoredSolution.from_dict(
            {
                "id": row["id"],
                "error_pattern": row["error_pattern"],
                "error_signature": row["error_signature"],
                "solution_code": row["solution_code"],
                "explanation": row["explanation"],
                "confidence": row["confidence"],
                "estimated_success_rate": row["estimated_success_rate"],
                "actual_success_rate": row["actual_success_rate"],
                "risk_level": row["risk_level"],
                "strategy": row["strategy"],
                "tags": json.loads(row["tags"] or "[]"),
                "categories": json.loads(row["categories"] or "[]"),
                "version_compatibility": json.loads(row["version_compatibility"] or "{}"),
                "performance_metrics": json.loads(row["performance_metrics"] or "{}"),
                "usage_statistics": json.loads(row["usage_statistics"] or "{}"),
                "metadata": json.loads(row["metadata"] or "{}"),
            }
        )

    # =========================================================================
    # Statistics
    # =========================================================================

    def get_statistics(self, now: datetime | None = None) -> dict[str, Any]:
        """Totals, per-strategy aggregates, daily activity and timing extremes."""
        since = int(((now or datetime.now()) - timedelta(days=30)).timestamp())
        active = "json_extract(metadata, '$.deprecated') IS NOT 1"

        with self._cursor() as cursor:
            cursor.execute(
                f"""
                SELECT
                    COUNT(*) AS total,
                    COUNT(CASE WHEN {active} THEN 1 END) AS active,
                    COUNT(CASE WHEN json_extract(metadata, '$.deprecated') = 1 THEN 1 END) AS deprecated,
                    AVG(actual_success_rate) AS avg_success_rate
                FROM solutions
                """
            )
            totals = cursor.fetchone()

            cursor.execute(
                f"""
                SELECT strategy, COUNT(*) AS count, AVG(actual_success_rate) AS avg_success_rate
                FROM solutions
                WHERE {active}
                GROUP BY strategy
                ORDER BY count DESC, avg_success_rate DESC
                LIMIT 10
                """
            )
            strategies = cursor.fetchall()

            cursor.execute(
                """
                SELECT
                    date(timestamp, 'unixepoch') AS period,
                    COUNT(*) AS uses,
                    SUM(success) AS successes
                FROM solution_usage
                WHERE timestamp > ?
                GROUP BY date(timestamp, 'unixepoch')
                ORDER BY period DESC
                LIMIT 30
                """,
                (since,),
            )
            activity = cursor.fetchall()

            timing = "json_extract(performance_metrics, '$.average_execution_time_ms')"
            cursor.execute(
                f"""
                SELECT
                    AVG({timing}) AS avg_execution_time,
                    (SELECT id FROM solutions WHERE {active} ORDER BY {timing} ASC LIMIT 1) AS fastest,
                    (SELECT id FROM solutions WHERE {active} ORDER BY {timing} DESC LIMIT 1) AS slowest
                FROM solutions
                WHERE {active}
                """
            )
            performance = cursor.fetchone()

        return {
            "total_solutions": totals["total"],
            "active_solutions": totals["active"],
            "deprecated_solutions": totals["deprecated"],
            "average_success_rate": totals["avg_success_rate"] or 0.0,
            "top_strategies": [
                {
                    "strategy": row["strategy"],
                    "count": row["count"],
                    "avg_success_rate": row["avg_success_rate"] or 0.0,
                }
                for row in strategies
            ],
            "recent_activity": [
                {"period": row["period"], "uses": row["uses"], "successes": row["successes"] or 0}
                for row in activity
            ],
            "performance_metrics": {
                "average_execution_time_ms": performance["avg_execution_time"] or 0.0,
                "fastest_solution": performance["fastest"] or "",
                "slowest_solution": performance["slowest"] or "",
            },
        }

    # =========================================================================
    # Maintenance
    # =========================================================================

    def cleanup_old_usage(self, days: int = 90, now: datetime | None = None) -> int:
        """Delete usage rows older than `days`.

        Returns:
            Number of rows deleted.
        """
        cutoff = int(((now or datetime.now()) - timedelta(days=days)).timestamp())
        with self._cursor() as cursor:
            cursor.execute("DELETE FROM solution_usage WHERE timestamp < ?", (cutoff,))
            return cursor.rowcount

    def create_backup(self) -> Path:
        """Copy the database into backup_dir with a .metadata.json sidecar.

        Only the newest max_backups backups are kept.

        Returns:
            Path of the new backup file.
        """
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now().strftime("%Y-%m-%dT%H-%M-%S-%f")
        backup_path = self.backup_dir / f"solution-library-backup-{stamp}.db"

        target = sqlite3.connect(str(backup_path))
        try:
            with self._shared_lock if self.in_memory else nullcontext():
                self._get_connection().backup(target)
        finally:
            target.close()

        info = {
            "version": self.schema_version(),
            "timestamp": datetime.now().isoformat(),
            "total_solutions": self.count(),
            "metadata": current_versions(),
        }
        Path(f"{backup_path}.metadata.json").write_text(json.dumps(info, indent=2))

        self._cleanup_old_backups()
        logger.info(f"Solution store backed up to {backup_path}")
        return backup_path

    def list_backups(self) -> list[Path]:
        """Backups, newest first."""
        if not self.backup_dir.exists():
            return []
        backups = [p for p in self.backup_dir.glob("*backup*.db") if p.is_file()]
        return sorted(backups, key=lambda p: (p.stat().st_mtime, p.name), reverse=True)

    def _cleanup_old_backups(self) -> None:
        try:
            for stale in self.list_backups()[self.max_backups :]:
                stale.unlink()
                Path(f"{stale}.metadata.json").unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Failed to clean up old backups: {e}")

    # =========================================================================
    # Export / import
    # =========================================================================

    def export(self, include_deprecated: bool = False, fmt: str = "json") -> str:
        """Export solutions as a JSON document or SQL INSERT statements."""
        solutions = self.search(
            SolutionSearchOptions(include_deprecated=include_deprecated, sort_by="last_used")
        )
        timestamp = datetime.now().isoformat()

        if fmt == "sql":
            lines = [
                "-- Solution library export",
                f"-- Generated: {timestamp}",
                f"-- Total Solutions: {len(solutions)}",
                "",
            ]
            columns = ", ".join(SOLUTION_COLUMNS)
            for solution in solutions:
                values = ", ".join(_sql_literal(v) for v in self._row_values(solution))
                lines.append(f"INSERT OR REPLACE INTO solutions ({columns}) VALUES ({values});")
            return "\n".join(lines) + "\n"

        return json.dumps(
            {
                "version": self.schema_version(),
                "timestamp": timestamp,
                "total_solutions": len(solutions),
                "solutions": [s.to_dict() for s in solutions],
                "metadata": current_versions(),
            },
            indent=2,
        )

    def import_solutions(
        self,
        data: str | dict[str, Any],
        overwrite: bool = False,
        validate: bool = False,
    ) -> ImportResult:
        """Import solutions from an export document.

        Args:
            data: JSON text or an already-parsed document with a `solutions` list.
            overwrite: Replace solutions whose id already exists.
            validate: Reject records missing required fields.

        Returns:
            Counts of imported and skipped solutions, and per-record errors.
        """
        result = ImportResult()
        try:
            document = json.loads(data) if isinstance(data, str) else data
        except json.JSONDecodeError as e:
            result.errors.append(f"Import failed: {e}")
            return result

        records = document.get("solutions") if isinstance(document, dict) else None
        if not isinstance(records, list):
            result.errors.append("Import failed: Invalid import format: missing solutions array")
            return result

        for record in records:
            record_id = record.get("id", "unknown") if isinstance(record, dict) else "unknown"
            if validate and not is_valid_solution_data(record):
                result.errors.append(f"Invalid solution data: {record_id or 'unknown'}")
                continue
            try:
                if self.get(record["id"]) is not None and not overwrite:
                    result.skipped += 1
                    continue
                self.store(StoredSolution.from_dict(record))
                result.imported += 1
            except (KeyError, ValueError, TypeError, AttributeError, sqlite3.Error) as e:
                result.errors.append(f"Failed to import solution {record_id}: {e}")

        logger.info(f"Imported {result.imported} solutions ({result.skipped} skipped)")
        return result
