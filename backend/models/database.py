"""SQLite-backed job and trace persistence using aiosqlite.

The ResultStore is the durable side of the system: it records every job, the
artifacts of completed jobs (which the durable cache tier scans), and the
per-request trace of orchestration steps. All operations are async and
designed to fail gracefully: a database error is logged and never crashes a
running job.

Tables:
    jobs: One row per request (status, summary, artifacts JSON, timestamps).
    traces: One row per finished orchestration trace (steps JSON, counters).

Usage:
    >>> from models.database import ResultStore
    >>> store = ResultStore("./data/kilatflow.db")
    >>> await store.init()
    >>> await store.save_job(job_id="job_abc123", request_text="todo app", mode="planning")
    >>> rows = await store.recent_completed(since=time.time() - 72 * 3600, limit=100)
"""

import json
import time
from pathlib import Path
from typing import Any

import aiosqlite
import structlog

logger = structlog.get_logger(__name__)


class ResultStore:
    """Async SQLite store for jobs, completed results and traces.

    Attributes:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        """Initialize the result store.

        Args:
            db_path: Filesystem path to the SQLite database file.
                     Parent directories are created automatically on init().
        """
        self.db_path = db_path

    async def init(self) -> None:
        """Create database tables if they do not exist."""
        db_dir = Path(self.db_path).parent
        db_dir.mkdir(parents=True, exist_ok=True)

        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS jobs (
                        id TEXT PRIMARY KEY,
                        request_text TEXT NOT NULL,
                        user_id TEXT,
                        mode TEXT NOT NULL,
                        status TEXT NOT NULL DEFAULT 'pending',
                        project_name TEXT,
                        result_summary TEXT,
                        artifacts TEXT,
                        error_message TEXT,
                        created_at REAL NOT NULL,
                        completed_at REAL
                    )
                """)
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS traces (
                        id TEXT PRIMARY KEY,
                        job_id TEXT,
                        user_id TEXT,
                        mode TEXT NOT NULL,
                        status TEXT NOT NULL,
                        steps TEXT NOT NULL,
                        cache_hits INTEGER NOT NULL DEFAULT 0,
                        cache_misses INTEGER NOT NULL DEFAULT 0,
                        rate_limit_waits INTEGER NOT NULL DEFAULT 0,
                        started_at REAL NOT NULL,
                        ended_at REAL NOT NULL
                    )
                """)
                await db.execute("""
                    CREATE INDEX IF NOT EXISTS idx_jobs_completed
                    ON jobs(status, completed_at DESC)
                """)
                await db.execute("""
                    CREATE INDEX IF NOT EXISTS idx_traces_started_at
                    ON traces(started_at)
                """)
                await db.commit()
            logger.info("result_store_initialized", db_path=self.db_path)
        except Exception as e:
            logger.error(
                "result_store_init_failed",
                db_path=self.db_path,
                error=str(e),
            )
            raise

    # -----------------------------------------------------------------
    # Jobs
    # -----------------------------------------------------------------

    async def save_job(
        self,
        job_id: str,
        request_text: str,
        mode: str,
        user_id: str | None = None,
        status: str = "pending",
        created_at: float | None = None,
    ) -> None:
        """Insert a new job record.

        Args:
            job_id: Unique job identifier (e.g. "job_abc123").
            request_text: The user's original request.
            mode: Execution mode (planning or fast).
            user_id: Optional owner.
            status: Initial status string.
            created_at: Unix timestamp of creation (defaults to now).
        """
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    """
                    INSERT INTO jobs (id, request_text, user_id, mode, status, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (job_id, request_text, user_id, mode, status, created_at or time.time()),
                )
                await db.commit()
            logger.debug("job_saved", job_id=job_id, mode=mode, status=status)
        except Exception as e:
            logger.error("job_save_failed", job_id=job_id, error=str(e))

    async def update_job_status(
        self,
        job_id: str,
        status: str,
        error_message: str | None = None,
    ) -> None:
        """Update the status (and optionally an error message) for a job."""
        completed_at = time.time() if status in ("failed", "cancelled") else None
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    """
                    UPDATE jobs
                    SET status = ?, error_message = ?,
                        completed_at = COALESCE(?, completed_at)
                    WHERE id = ?
                    """,
                    (status, error_message, completed_at, job_id),
                )
                await db.commit()
            logger.debug("job_status_updated", job_id=job_id, status=status)
        except Exception as e:
            logger.error("job_status_update_failed", job_id=job_id, error=str(e))

    async def upsert_completed(
        self,
        job_id: str,
        request_text: str,
        result_summary: str,
        artifacts: dict[str, str],
        project_name: str = "",
        mode: str = "planning",
        user_id: str | None = None,
        completed_at: float | None = None,
    ) -> None:
        """Record a completed job with its artifacts, keyed by job id.

        Existing rows keep their ``created_at``; everything else is replaced.
        """
        now = time.time()
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    """
                    INSERT INTO jobs
                        (id, request_text, user_id, mode, status, project_name,
                         result_summary, artifacts, created_at, completed_at)
                    VALUES (?, ?, ?, ?, 'completed', ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        status = 'completed',
                        project_name = excluded.project_name,
                        result_summary = excluded.result_summary,
                        artifacts = excluded.artifacts,
                        completed_at = excluded.completed_at
                    """,
                    (
                        job_id,
                        request_text,
                        user_id,
                        mode,
                        project_name,
                        result_summary,
                        json.dumps(artifacts),
                        now,
                        completed_at or now,
                    ),
                )
                await db.commit()
            logger.debug("job_completed_saved", job_id=job_id, files=len(artifacts))
        except Exception as e:
            logger.error("job_completed_save_failed", job_id=job_id, error=str(e))

    async def recent_completed(self, since: float, limit: int = 100) -> list[dict[str, Any]]:
        """Return up to ``limit`` most recent completed jobs finished after ``since``.

        Args:
            since: Unix timestamp; older completions are excluded.
            limit: Maximum number of rows.

        Returns:
            Dicts with id, request_text, result_summary, project_name,
            artifacts (decoded) and completed_at, newest first.
        """
        try:
            async with aiosqlite.connect(self.db_path) as db:
                db.row_factory = aiosqlite.Row
                cursor = await db.execute(
                    """
                    SELECT id, request_text, result_summary, project_name,
                           artifacts, completed_at
                    FROM jobs
                    WHERE status = 'completed' AND completed_at >= ?
                    ORDER BY completed_at DESC
                    LIMIT ?
                    """,
                    (since, limit),
                )
                rows = await cursor.fetchall()
                return [_decode_job(dict(row)) for row in rows]
        except Exception as e:
            logger.error("recent_completed_query_failed", error=str(e))
            return []

    async def get_job(self, job_id: str) -> dict[str, Any] | None:
        """Retrieve a single job by its ID, or None if not found."""
        try:
            async with aiosqlite.connect(self.db_path) as db:
                db.row_factory = aiosqlite.Row
                cursor = await db.execute("SELECT * FROM jobs WHERE id = ?", (job_id,))
                row = await cursor.fetchone()
                if row is None:
                    return None
                return _decode_job(dict(row))
        except Exception as e:
            logger.error("job_get_failed", job_id=job_id, error=str(e))
            return None

    async def list_jobs(self, limit: int = 50, offset: int = 0) -> list[dict[str, Any]]:
        """List recent jobs ordered by creation time (newest first)."""
        try:
            async with aiosqlite.connect(self.db_path) as db:
                db.row_factory = aiosqlite.Row
                cursor = await db.execute(
                    """
                    SELECT * FROM jobs
                    ORDER BY created_at DESC
                    LIMIT ? OFFSET ?
                    """,
                    (limit, offset),
                )
                rows = await cursor.fetchall()
                return [_decode_job(dict(row)) for row in rows]
        except Exception as e:
            logger.error("job_list_failed", error=str(e))
            return []

    # -----------------------------------------------------------------
    # Traces
    # -----------------------------------------------------------------

    async def save_trace(self, trace: dict[str, Any]) -> None:
        """Insert a finished trace (see ``tracing.TraceContext.to_record``)."""
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    """
                    INSERT OR REPLACE INTO traces
                        (id, job_id, user_id, mode, status, steps, cache_hits,
                         cache_misses, rate_limit_waits, started_at, ended_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        trace["trace_id"],
                        trace.get("job_id"),
                        trace.get("user_id"),
                        trace["mode"],
                        trace["status"],
                        json.dumps(trace["steps"]),
                        trace.get("cache_hits", 0),
                        trace.get("cache_misses", 0),
                        trace.get("rate_limit_waits", 0),
                        trace["started_at"],
                        trace["ended_at"],
                    ),
                )
                await db.commit()
            logger.debug("trace_saved", trace_id=trace["trace_id"])
        except Exception as e:
            logger.error("trace_save_failed", trace_id=trace.get("trace_id"), error=str(e))

    async def get_traces(self, job_id: str) -> list[dict[str, Any]]:
        """Return all traces recorded for a job, oldest first."""
        try:
            async with aiosqlite.connect(self.db_path) as db:
                db.row_factory = aiosqlite.Row
                cursor = await db.execute(
                    "SELECT * FROM traces WHERE job_id = ? ORDER BY started_at",
                    (job_id,),
                )
                rows = await cursor.fetchall()
                traces = []
                for row in rows:
                    trace = dict(row)
                    trace["steps"] = json.loads(trace["steps"])
                    traces.append(trace)
                return traces
        except Exception as e:
            logger.error("trace_get_failed", job_id=job_id, error=str(e))
            return []

    async def delete_traces_older_than(self, cutoff: float) -> int:
        """Delete traces that started before ``cutoff``.

        Returns:
            Number of rows deleted (0 on failure).
        """
        try:
            async with aiosqlite.connect(self.db_path) as db:
                cursor = await db.execute(
                    "DELETE FROM traces WHERE started_at < ?",
                    (cutoff,),
                )
                await db.commit()
                deleted = cursor.rowcount or 0
            logger.info("traces_cleaned_up", deleted=deleted, cutoff=cutoff)
            return deleted
        except Exception as e:
            logger.error("trace_cleanup_failed", error=str(e))
            return 0


def _decode_job(row: dict[str, Any]) -> dict[str, Any]:
    raw = row.get("artifacts")
    if raw:
        try:
            row["artifacts"] = json.loads(raw)
        except json.JSONDecodeError:
            row["artifacts"] = {}
    else:
        row["artifacts"] = {}
    return row
