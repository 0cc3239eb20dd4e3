"""SQLite backed job store used by the delivery queue.

Every state transition is a single conditional ``UPDATE`` whose ``WHERE``
clause names the state the caller expects; ``rowcount`` tells whether the
transition happened. This is the only arbitration between workers.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import aiosqlite

from .errors import RetriesExhaustedError
from .models import JobStatus

JOB_COLUMNS = (
    "seq",
    "id",
    "parent_ref",
    "sub_ref",
    "recipient",
    "subject",
    "body",
    "status",
    "attempt_count",
    "max_attempts",
    "next_attempt_at",
    "last_error",
    "provider",
    "provider_message_id",
    "dedupe_key",
    "priority",
    "lease_owner",
    "lease_at",
    "queued_at",
    "last_tried_at",
    "sent_at",
    "updated_at",
)

DELIVERY_FIELDS = (
    "status",
    "queued_at",
    "sent_at",
    "last_tried_at",
    "next_attempt_at",
    "attempt_count",
    "max_attempts",
    "provider",
    "provider_message_id",
    "error_message",
)

_SELECT_JOB = f"SELECT {', '.join(JOB_COLUMNS)} FROM jobs"


def _plain(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


class Persistence:
    """Read and write jobs, delivery projections and suppressions."""

    def __init__(self, db_path: str = "/data/delivery_queue.db"):
        """Persist data to the given database path (``:memory:`` allowed)."""
        self.db_path = db_path or ":memory:"

    async def init_db(self) -> None:
        """Create the database schema if missing."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS jobs (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT NOT NULL UNIQUE,
                    parent_ref TEXT NOT NULL,
                    sub_ref TEXT NOT NULL,
                    recipient TEXT NOT NULL,
                    subject TEXT NOT NULL,
                    body TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'queued',
                    attempt_count INTEGER NOT NULL DEFAULT 0,
                    max_attempts INTEGER NOT NULL DEFAULT 5,
                    next_attempt_at REAL,
                    last_error TEXT,
                    provider TEXT,
                    provider_message_id TEXT,
                    dedupe_key TEXT NOT NULL UNIQUE,
                    priority INTEGER NOT NULL DEFAULT 100,
                    lease_owner TEXT,
                    lease_at REAL,
                    queued_at REAL NOT NULL,
                    last_tried_at REAL,
                    sent_at REAL,
                    updated_at REAL
                )
                """
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_jobs_poll ON jobs(status, priority, queued_at)"
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_jobs_next_attempt ON jobs(next_attempt_at)"
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_jobs_lease ON jobs(status, lease_at)"
            )

            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS deliveries (
                    parent_ref TEXT NOT NULL,
                    sub_ref TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'queued',
                    queued_at REAL,
                    sent_at REAL,
                    last_tried_at REAL,
                    next_attempt_at REAL,
                    attempt_count INTEGER NOT NULL DEFAULT 0,
                    max_attempts INTEGER,
                    provider TEXT,
                    provider_message_id TEXT,
                    error_message TEXT,
                    updated_at REAL,
                    PRIMARY KEY (parent_ref, sub_ref)
                )
                """
            )

            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS suppressed_recipients (
                    email TEXT PRIMARY KEY,
                    reason TEXT,
                    source TEXT NOT NULL DEFAULT 'other',
                    manual INTEGER NOT NULL DEFAULT 0,
                    hit_count INTEGER NOT NULL DEFAULT 1,
                    suppressed_at REAL NOT NULL,
                    expires_at REAL
                )
                """
            )
            await db.commit()

    @staticmethod
    def _decode_rows(rows: Sequence[Tuple[Any, ...]], columns: Sequence[str]) -> List[Dict[str, Any]]:
        return [dict(zip(columns, row)) for row in rows]

    # Jobs ---------------------------------------------------------------------
    async def insert_job(self, entry: Mapping[str, Any]) -> Tuple[Dict[str, Any], bool]:
        """Insert a queued job unless one with the same dedupe key exists.

        Returns the stored row and ``True`` when it was created by this call,
        or the pre-existing row and ``False`` for a duplicate request.
        """
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                INSERT INTO jobs (
                    id, parent_ref, sub_ref, recipient, subject, body, status,
                    attempt_count, max_attempts, next_attempt_at, dedupe_key,
                    priority, queued_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, 'queued', 0, ?, NULL, ?, ?, ?, ?)
                ON CONFLICT(dedupe_key) DO NOTHING
                """,
                (
                    entry["id"],
                    entry["parent_ref"],
                    entry["sub_ref"],
                    entry["recipient"],
                    entry["subject"],
                    entry["body"],
                    int(entry["max_attempts"]),
                    entry["dedupe_key"],
                    int(entry["priority"]),
                    float(entry["queued_at"]),
                    float(entry["queued_at"]),
                ),
            )
            created = bool(cursor.rowcount)
            await db.commit()
            async with db.execute(f"{_SELECT_JOB} WHERE dedupe_key=?", (entry["dedupe_key"],)) as cur:
                row = await cur.fetchone()
                cols = [c[0] for c in cur.description]
        return dict(zip(cols, row)), created

    async def get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        """Fetch a single job, ``None`` when unknown."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(f"{_SELECT_JOB} WHERE id=?", (job_id,)) as cur:
                row = await cur.fetchone()
                if not row:
                    return None
                cols = [c[0] for c in cur.description]
        return dict(zip(cols, row))

    async def list_jobs(self, *, status: Optional[str] = None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Return jobs in dispatch order for inspection purposes."""
        query = _SELECT_JOB
        params: List[Any] = []
        if status is not None:
            query += " WHERE status=?"
            params.append(_plain(status))
        query += " ORDER BY priority ASC, queued_at ASC, seq ASC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(int(limit))
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(query, params) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return self._decode_rows(rows, cols)

    async def fetch_eligible(self, *, limit: int, now: float) -> List[Dict[str, Any]]:
        """Return queued jobs whose retry time has passed, in dispatch order."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                f"""
                {_SELECT_JOB}
                WHERE status='queued'
                  AND (next_attempt_at IS NULL OR next_attempt_at <= ?)
                ORDER BY priority ASC, queued_at ASC, seq ASC
                LIMIT ?
                """,
                (now, int(limit)),
            ) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return self._decode_rows(rows, cols)

    async def try_lease(self, job_id: str, worker_id: str, now: float) -> bool:
        """Atomically move a queued job to ``sending`` under ``worker_id``.

        The attempt is counted here, before the transport is called, so a
        worker that dies mid-send still consumes one attempt.
        ``False`` means another worker got there first.
        """
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                UPDATE jobs
                SET status='sending', attempt_count=attempt_count + 1, last_tried_at=?,
                    lease_owner=?, lease_at=?, updated_at=?
                WHERE id=? AND status='queued'
                """,
                (now, worker_id, now, now, job_id),
            )
            await db.commit()
            return cursor.rowcount == 1

    async def reclaim_expired(self, *, lease_before: float, now: float) -> List[str]:
        """Return abandoned ``sending`` jobs to ``queued``; attempt counts are kept.

        A job is abandoned when its lease was acquired before ``lease_before``.
        Jobs that already used their last attempt are left to
        :meth:`fail_exhausted_leases`. Returns the ids that were reclaimed.
        """
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                "SELECT id FROM jobs WHERE status='sending' AND lease_at < ? AND attempt_count < max_attempts",
                (lease_before,),
            ) as cur:
                candidates = [row[0] for row in await cur.fetchall()]
            reclaimed: List[str] = []
            for job_id in candidates:
                cursor = await db.execute(
                    """
                    UPDATE jobs
                    SET status='queued', lease_owner=NULL, lease_at=NULL, updated_at=?
                    WHERE id=? AND status='sending' AND lease_at < ?
                    """,
                    (now, job_id, lease_before),
                )
                if cursor.rowcount:
                    reclaimed.append(job_id)
            await db.commit()
        return reclaimed

    async def fail_exhausted_leases(self, *, lease_before: float, now: float, reason: str) -> List[Dict[str, Any]]:
        """Move abandoned jobs with no attempts left to ``permanent_failure``.

        Returns the updated rows.
        """
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                "SELECT id, max_attempts FROM jobs "
                "WHERE status='sending' AND lease_at < ? AND attempt_count >= max_attempts",
                (lease_before,),
            ) as cur:
                candidates = list(await cur.fetchall())
            failed: List[str] = []
            for job_id, max_attempts in candidates:
                error = str(RetriesExhaustedError(max_attempts, reason))
                cursor = await db.execute(
                    """
                    UPDATE jobs
                    SET status='permanent_failure', last_error=?, next_attempt_at=NULL,
                        lease_owner=NULL, lease_at=NULL, updated_at=?
                    WHERE id=? AND status='sending' AND lease_at < ?
                    """,
                    (error, now, job_id, lease_before),
                )
                if cursor.rowcount:
                    failed.append(job_id)
            await db.commit()
        rows = []
        for job_id in failed:
            row = await self.get_job(job_id)
            if row is not None:
                rows.append(row)
        return rows

    async def _update_leased(self, job_id: str, worker_id: str, assignments: str, params: Sequence[Any]) -> bool:
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                f"""
                UPDATE jobs
                SET {assignments}
                WHERE id=? AND status='sending' AND lease_owner=?
                """,
                (*params, job_id, worker_id),
            )
            await db.commit()
            return cursor.rowcount == 1

    async def mark_sent(
        self,
        job_id: str,
        worker_id: str,
        *,
        attempt_count: int,
        provider: str,
        provider_message_id: Optional[str],
        now: float,
    ) -> bool:
        """Record a successful attempt. ``False`` when the lease was lost."""
        return await self._update_leased(
            job_id,
            worker_id,
            """
            status='sent', attempt_count=?, provider=?, provider_message_id=?,
            sent_at=?, last_tried_at=?, next_attempt_at=NULL, last_error=NULL,
            lease_owner=NULL, lease_at=NULL, updated_at=?
            """,
            (attempt_count, provider, provider_message_id, now, now, now),
        )

    async def schedule_retry(
        self,
        job_id: str,
        worker_id: str,
        *,
        attempt_count: int,
        error: str,
        next_attempt_at: float,
        now: float,
    ) -> bool:
        """Return a failed job to the eligible pool at ``next_attempt_at``."""
        return await self._update_leased(
            job_id,
            worker_id,
            """
            status='queued', attempt_count=?, last_error=?, next_attempt_at=?,
            last_tried_at=?, lease_owner=NULL, lease_at=NULL, updated_at=?
            """,
            (attempt_count, error, next_attempt_at, now, now),
        )

    async def mark_permanent_failure(
        self,
        job_id: str,
        worker_id: str,
        *,
        attempt_count: int,
        error: str,
        now: float,
    ) -> bool:
        """Move a job to ``permanent_failure``."""
        return await self._update_leased(
            job_id,
            worker_id,
            """
            status='permanent_failure', attempt_count=?, last_error=?,
            next_attempt_at=NULL, last_tried_at=?, lease_owner=NULL,
            lease_at=NULL, updated_at=?
            """,
            (attempt_count, error, now, now),
        )

    async def reset_for_retry(
        self,
        job_id: str,
        *,
        expected_status: str,
        attempt_count: int,
        now: float,
    ) -> bool:
        """Requeue a terminally failed job if it is still in ``expected_status``."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                UPDATE jobs
                SET status='queued', attempt_count=?, next_attempt_at=?,
                    last_error=NULL, lease_owner=NULL, lease_at=NULL, updated_at=?
                WHERE id=? AND status=?
                """,
                (attempt_count, now, now, job_id, _plain(expected_status)),
            )
            await db.commit()
            return cursor.rowcount == 1

    async def count_by_status(self) -> Dict[str, int]:
        """Return the number of jobs per status, with zero for absent states."""
        counts = {status.value: 0 for status in JobStatus}
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute("SELECT status, COUNT(*) FROM jobs GROUP BY status") as cur:
                for status, count in await cur.fetchall():
                    counts[status] = int(count)
        return counts

    # Deliveries ---------------------------------------------------------------
    async def upsert_delivery(self, parent_ref: str, sub_ref: str, fields: Mapping[str, Any], now: float) -> None:
        """Merge ``fields`` into the delivery projection of a parent record.

        Only the keys present in ``fields`` are written; unknown keys are
        rejected so callers cannot touch other parts of the record.
        """
        unknown = set(fields) - set(DELIVERY_FIELDS)
        if unknown:
            raise ValueError(f"Unknown delivery fields: {', '.join(sorted(unknown))}")
        columns = [name for name in DELIVERY_FIELDS if name in fields]
        values = [_plain(fields[name]) for name in columns]
        insert_cols = ["parent_ref", "sub_ref", *columns, "updated_at"]
        placeholders = ", ".join("?" for _ in insert_cols)
        updates = ", ".join(f"{name}=excluded.{name}" for name in [*columns, "updated_at"])
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                f"""
                INSERT INTO deliveries ({', '.join(insert_cols)})
                VALUES ({placeholders})
                ON CONFLICT(parent_ref, sub_ref) DO UPDATE SET {updates}
                """,
                (parent_ref, sub_ref, *values, now),
            )
            await db.commit()

    async def get_delivery(self, parent_ref: str, sub_ref: str) -> Optional[Dict[str, Any]]:
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                "SELECT * FROM deliveries WHERE parent_ref=? AND sub_ref=?",
                (parent_ref, sub_ref),
            ) as cur:
                row = await cur.fetchone()
                if not row:
                    return None
                cols = [c[0] for c in cur.description]
        return dict(zip(cols, row))

    # Suppressions -------------------------------------------------------------
    async def add_suppression(
        self,
        email: str,
        *,
        reason: Optional[str],
        source: str,
        manual: bool,
        expires_at: Optional[float],
        now: float,
    ) -> Dict[str, Any]:
        """Suppress ``email`` or bump the hit count of an existing entry."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO suppressed_recipients (email, reason, source, manual, hit_count, suppressed_at, expires_at)
                VALUES (?, ?, ?, ?, 1, ?, ?)
                ON CONFLICT(email) DO UPDATE SET
                    reason = COALESCE(excluded.reason, reason),
                    source = excluded.source,
                    manual = MAX(manual, excluded.manual),
                    hit_count = hit_count + 1,
                    expires_at = COALESCE(excluded.expires_at, expires_at)
                """,
                (email, reason, _plain(source), 1 if manual else 0, now, expires_at),
            )
            await db.commit()
            async with db.execute("SELECT * FROM suppressed_recipients WHERE email=?", (email,)) as cur:
                row = await cur.fetchone()
                cols = [c[0] for c in cur.description]
        entry = dict(zip(cols, row))
        entry["manual"] = bool(entry["manual"])
        return entry

    async def is_suppressed(self, email: str, now: float) -> bool:
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                """
                SELECT 1 FROM suppressed_recipients
                WHERE email=? AND (expires_at IS NULL OR expires_at > ?)
                """,
                (email, now),
            ) as cur:
                row = await cur.fetchone()
        return row is not None

    async def remove_suppression(self, email: str) -> bool:
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute("DELETE FROM suppressed_recipients WHERE email=?", (email,))
            await db.commit()
            return cursor.rowcount > 0

    async def list_suppressions(self) -> List[Dict[str, Any]]:
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute("SELECT * FROM suppressed_recipients ORDER BY suppressed_at ASC, email ASC") as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        result = self._decode_rows(rows, cols)
        for entry in result:
            entry["manual"] = bool(entry["manual"])
        return result
