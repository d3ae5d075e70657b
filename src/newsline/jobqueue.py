from __future__ import annotations

import json
import logging
import uuid
from typing import Any, Iterable

from .models import Job, JobPayload, PayloadError, parse_payload, payload_to_dict
from .utils import json_dumps, log_event, utc_now_iso, utc_now_iso_offset, utc_today

DEFAULT_PRIORITY = 1
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_LEASE_SECONDS = 300

_JOB_COLUMNS = """
    id, job_type, status, payload_json, article_id, attempts, max_attempts,
    priority, created_at, started_at, completed_at, assigned_worker, error
"""

logger = logging.getLogger("newsline.jobqueue")


def new_worker_id(job_type: str) -> str:
    return f"worker-{job_type}-{uuid.uuid4().hex[:8]}"


def create_job(
    conn: Any,
    job_type: str,
    payload: JobPayload | dict[str, Any],
    priority: int | None = None,
    max_attempts: int | None = None,
) -> str:
    typed = parse_payload(job_type, payload)
    if max_attempts is None:
        max_attempts = DEFAULT_MAX_ATTEMPTS
    if max_attempts < 1:
        raise PayloadError("max_attempts must be at least 1")
    if priority is None:
        priority = DEFAULT_PRIORITY
    job_id = _new_job_id()
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO jobs
            (id, job_type, payload_json, article_id, status, attempts, max_attempts,
             priority, created_at, updated_at)
        VALUES (?, ?, ?, ?, 'pending', 0, ?, ?, ?, ?)
        """,
        (
            job_id,
            job_type,
            json_dumps(payload_to_dict(typed)),
            typed.article_id,
            max_attempts,
            priority,
            now,
            now,
        ),
    )
    conn.commit()
    log_event(
        logger,
        logging.INFO,
        "job_created",
        job_id=job_id,
        job_type=job_type,
        article_id=typed.article_id,
        priority=priority,
    )
    return job_id


def claim_jobs_for_worker(
    conn: Any,
    job_type: str,
    limit: int = 5,
    worker_id: str | None = None,
) -> list[Job]:
    """Claim up to ``limit`` pending jobs of one type for ``worker_id``.

    Each candidate is taken with a conditional update that only matches
    while the row is still pending, so two pollers can never both win the
    same job. Lost races are skipped and further candidates fetched.
    """
    worker_id = worker_id or new_worker_id(job_type)
    claimed: list[Job] = []
    seen: set[str] = set()
    while len(claimed) < limit:
        rows = conn.execute(
            """
            SELECT id FROM jobs
            WHERE job_type = ? AND status = 'pending'
            ORDER BY priority DESC, created_at ASC, id ASC
            LIMIT ?
            """,
            (job_type, limit - len(claimed) + len(seen)),
        ).fetchall()
        candidates = [row[0] for row in rows if row[0] not in seen]
        if not candidates:
            break
        for job_id in candidates:
            seen.add(job_id)
            job = claim_job(conn, job_id, worker_id)
            if job is not None:
                claimed.append(job)
                if len(claimed) >= limit:
                    break
    return claimed


def claim_job(conn: Any, job_id: str, worker_id: str) -> Job | None:
    now = utc_now_iso()
    cursor = conn.execute(
        """
        UPDATE jobs
        SET status = 'processing', started_at = ?, assigned_worker = ?, updated_at = ?
        WHERE id = ? AND status = 'pending'
        """,
        (now, worker_id, now, job_id),
    )
    conn.commit()
    if cursor.rowcount != 1:
        return None
    job = get_job(conn, job_id)
    if job is not None:
        log_event(
            logger,
            logging.INFO,
            "job_claimed",
            job_id=job_id,
            job_type=job.job_type,
            worker_id=worker_id,
            attempts=job.attempts,
        )
    return job


def claim_failed_job(conn: Any, job_id: str, worker_id: str) -> Job | None:
    now = utc_now_iso()
    cursor = conn.execute(
        """
        UPDATE jobs
        SET status = 'processing', started_at = ?, assigned_worker = ?, updated_at = ?
        WHERE id = ? AND status = 'failed' AND attempts < max_attempts
        """,
        (now, worker_id, now, job_id),
    )
    conn.commit()
    if cursor.rowcount != 1:
        return None
    return get_job(conn, job_id)


def complete_job(conn: Any, job_id: str) -> bool:
    now = utc_now_iso()
    cursor = conn.execute(
        """
        UPDATE jobs
        SET status = 'completed', completed_at = ?, assigned_worker = NULL, updated_at = ?
        WHERE id = ? AND status != 'completed'
        """,
        (now, now, job_id),
    )
    conn.commit()
    if cursor.rowcount == 1:
        log_event(logger, logging.INFO, "job_completed", job_id=job_id)
        return True
    row = conn.execute("SELECT status FROM jobs WHERE id = ?", (job_id,)).fetchone()
    return bool(row and row[0] == "completed")


def fail_job(conn: Any, job_id: str, error: str, permanent: bool = False) -> Job | None:
    """Record a failed attempt.

    The job returns to ``pending`` while attempts remain, otherwise it
    becomes terminal ``failed``. ``permanent`` skips the remaining attempts.
    Completed jobs are left untouched. Returns the updated job, or None for
    an unknown id.
    """
    for _ in range(10):
        row = conn.execute(
            "SELECT status, attempts, max_attempts FROM jobs WHERE id = ?",
            (job_id,),
        ).fetchone()
        if not row:
            return None
        status, attempts, max_attempts = row[0], int(row[1]), int(row[2])
        if status == "completed":
            return get_job(conn, job_id)
        next_attempts = min(attempts + 1, max_attempts)
        terminal = permanent or next_attempts >= max_attempts
        now = utc_now_iso()
        if terminal:
            cursor = conn.execute(
                """
                UPDATE jobs
                SET status = 'failed', attempts = ?, error = ?, assigned_worker = NULL,
                    updated_at = ?
                WHERE id = ? AND attempts = ? AND status != 'completed'
                """,
                (next_attempts, error, now, job_id, attempts),
            )
        else:
            cursor = conn.execute(
                """
                UPDATE jobs
                SET status = 'pending', attempts = ?, error = ?, assigned_worker = NULL,
                    started_at = NULL, updated_at = ?
                WHERE id = ? AND attempts = ? AND status != 'completed'
                """,
                (next_attempts, error, now, job_id, attempts),
            )
        conn.commit()
        if cursor.rowcount != 1:
            continue
        if terminal:
            log_event(
                logger,
                logging.WARNING,
                "job_failed_permanently",
                job_id=job_id,
                attempts=next_attempts,
                permanent=permanent,
                error=error,
            )
        else:
            log_event(
                logger,
                logging.INFO,
                "job_retry_scheduled",
                job_id=job_id,
                attempts=next_attempts,
                error=error,
            )
        return get_job(conn, job_id)
    return get_job(conn, job_id)


def retry_job(conn: Any, job_id: str) -> bool:
    cursor = conn.execute(
        """
        UPDATE jobs
        SET status = 'pending', attempts = 0, assigned_worker = NULL, started_at = NULL,
            completed_at = NULL, updated_at = ?
        WHERE id = ?
        """,
        (utc_now_iso(), job_id),
    )
    conn.commit()
    if cursor.rowcount == 1:
        log_event(logger, logging.INFO, "job_retry_requested", job_id=job_id)
        return True
    return False


def cleanup_stale_jobs(conn: Any, lease_seconds: int | None = None) -> int:
    """Return expired ``processing`` jobs to ``pending``; safe to repeat."""
    if lease_seconds is None:
        lease_seconds = DEFAULT_LEASE_SECONDS
    cutoff = utc_now_iso_offset(seconds=-lease_seconds)
    cursor = conn.execute(
        """
        UPDATE jobs
        SET status = 'pending', assigned_worker = NULL, started_at = NULL, updated_at = ?
        WHERE status = 'processing' AND started_at IS NOT NULL AND started_at < ?
        """,
        (utc_now_iso(), cutoff),
    )
    conn.commit()
    reset = max(cursor.rowcount, 0)
    if reset:
        log_event(logger, logging.WARNING, "stale_jobs_reset", count=reset, lease_seconds=lease_seconds)
    return reset


def get_queue_stats(conn: Any) -> dict[str, Any]:
    today = utc_today()
    pending = _count(conn, "SELECT COUNT(*) FROM jobs WHERE status = 'pending'")
    processing = _count(conn, "SELECT COUNT(*) FROM jobs WHERE status = 'processing'")
    completed_today = _count(
        conn,
        "SELECT COUNT(*) FROM jobs WHERE status = 'completed' AND substr(completed_at, 1, 10) = ?",
        (today,),
    )
    failed_today = _count(
        conn,
        "SELECT COUNT(*) FROM jobs WHERE status = 'failed' AND substr(created_at, 1, 10) = ?",
        (today,),
    )
    by_type: dict[str, dict[str, int]] = {}
    rows = conn.execute(
        "SELECT job_type, status, COUNT(*) FROM jobs GROUP BY job_type, status"
    ).fetchall()
    for job_type, status, count in rows:
        by_type.setdefault(job_type, {})[status] = int(count)
    return {
        "pending": pending,
        "processing": processing,
        "completed_today": completed_today,
        "failed_today": failed_today,
        "by_type": by_type,
    }


def get_job(conn: Any, job_id: str) -> Job | None:
    row = conn.execute(
        f"SELECT {_JOB_COLUMNS} FROM jobs WHERE id = ?",
        (job_id,),
    ).fetchone()
    return _row_to_job(row) if row else None


def list_jobs(
    conn: Any,
    status: str | None = None,
    job_type: str | None = None,
    limit: int = 50,
) -> list[Job]:
    clauses: list[str] = []
    params: list[Any] = []
    if status:
        clauses.append("status = ?")
        params.append(status)
    if job_type:
        clauses.append("job_type = ?")
        params.append(job_type)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    params.append(limit)
    cursor = conn.execute(
        f"""
        SELECT {_JOB_COLUMNS} FROM jobs
        {where}
        ORDER BY created_at DESC
        LIMIT ?
        """,
        tuple(params),
    )
    return [_row_to_job(row) for row in cursor.fetchall()]


def list_jobs_for_article(
    conn: Any, article_id: int, job_type: str | None = None
) -> list[Job]:
    if job_type:
        cursor = conn.execute(
            f"""
            SELECT {_JOB_COLUMNS} FROM jobs
            WHERE article_id = ? AND job_type = ?
            ORDER BY created_at ASC
            """,
            (article_id, job_type),
        )
    else:
        cursor = conn.execute(
            f"""
            SELECT {_JOB_COLUMNS} FROM jobs
            WHERE article_id = ?
            ORDER BY created_at ASC
            """,
            (article_id,),
        )
    return [_row_to_job(row) for row in cursor.fetchall()]


def has_job_for_article(
    conn: Any,
    job_type: str,
    article_id: int,
    statuses: Iterable[str] | None = None,
) -> bool:
    params: list[Any] = [job_type, article_id]
    status_clause = ""
    wanted = list(statuses) if statuses is not None else []
    if wanted:
        status_clause = f" AND status IN ({', '.join('?' for _ in wanted)})"
        params.extend(wanted)
    row = conn.execute(
        f"SELECT 1 FROM jobs WHERE job_type = ? AND article_id = ?{status_clause} LIMIT 1",
        tuple(params),
    ).fetchone()
    return row is not None


def list_sweepable_failed_jobs(conn: Any, window_hours: int = 24, limit: int = 10) -> list[Job]:
    cutoff = utc_now_iso_offset(seconds=-window_hours * 3600)
    cursor = conn.execute(
        f"""
        SELECT {_JOB_COLUMNS} FROM jobs
        WHERE status = 'failed' AND attempts < max_attempts AND created_at > ?
        ORDER BY created_at ASC
        LIMIT ?
        """,
        (cutoff, limit),
    )
    return [_row_to_job(row) for row in cursor.fetchall()]


def _count(conn: Any, sql: str, params: tuple = ()) -> int:
    row = conn.execute(sql, params).fetchone()
    return int(row[0]) if row else 0


def _row_to_job(row: tuple) -> Job:
    (
        job_id,
        job_type,
        status,
        payload_json,
        article_id,
        attempts,
        max_attempts,
        priority,
        created_at,
        started_at,
        completed_at,
        assigned_worker,
        error,
    ) = row
    try:
        payload = json.loads(payload_json) if payload_json else {}
    except json.JSONDecodeError:
        payload = {}
    return Job(
        id=job_id,
        job_type=job_type,
        status=status,
        payload=payload,
        article_id=int(article_id) if article_id is not None else None,
        attempts=int(attempts),
        max_attempts=int(max_attempts),
        priority=int(priority),
        created_at=created_at,
        started_at=started_at,
        completed_at=completed_at,
        assigned_worker=assigned_worker,
        error=error,
    )


def _new_job_id() -> str:
    return f"job_{uuid.uuid4().hex}"
