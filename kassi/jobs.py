"""A persistent job queue stored in the payment database."""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator

from kassi.database import Database
from kassi.errors import (
    DbError,
    JobDatabaseError,
    JobPoolError,
    PoolError,
    RecordNotFound,
    SerializationError,
)
from kassi.models import Job, NewJob, from_row
from kassi.queries import insert_job

__all__ = [
    "Job",
    "complete",
    "dead_letter",
    "enqueue",
    "enqueue_scheduled",
    "fail",
    "poll",
    "recover_stale",
]


def _now() -> datetime:
    return datetime.now(timezone.utc)


@contextmanager
def _guard() -> Iterator[None]:
    """Turn storage failures into job queue errors."""
    try:
        yield
    except PoolError as exc:
        raise JobPoolError(exc.detail) from exc
    except DbError as exc:
        raise JobDatabaseError(exc.detail) from exc
    except sqlite3.Error as exc:
        raise JobDatabaseError(exc) from exc


def _check_serializable(payload: Any) -> None:
    try:
        json.dumps(payload, allow_nan=False)
    except (TypeError, ValueError) as exc:
        raise SerializationError(exc) from exc


def _load(conn: sqlite3.Connection, job_id: int) -> Job:
    row = conn.execute("SELECT * FROM jobs WHERE id = ?", [job_id]).fetchone()
    if row is None:
        raise RecordNotFound()
    return from_row(Job, row)


def _update(pool: Database, job_id: int, assignments: str, params: list[Any]) -> Job:
    with _guard(), pool.transaction() as conn:
        cursor = conn.execute(
            f"UPDATE jobs SET {assignments} WHERE id = ?", [*params, job_id]
        )
        if cursor.rowcount == 0:
            raise RecordNotFound()
        return _load(conn, job_id)


def _insert(
    pool: Database,
    queue: str,
    payload: Any,
    max_attempts: int,
    scheduled_at: datetime | None,
) -> Job:
    _check_serializable(payload)
    new_job = NewJob(
        queue=queue,
        payload=payload,
        max_attempts=max_attempts,
        scheduled_at=scheduled_at,
    )
    with _guard(), pool.connection() as conn:
        return insert_job(conn, new_job)


def enqueue(pool: Database, queue: str, payload: Any, max_attempts: int) -> Job:
    """Add a job to a queue, runnable immediately."""
    return _insert(pool, queue, payload, max_attempts, None)


def enqueue_scheduled(
    pool: Database,
    queue: str,
    payload: Any,
    max_attempts: int,
    scheduled_at: datetime,
) -> Job:
    """Add a job to a queue that becomes runnable at `scheduled_at`."""
    return _insert(pool, queue, payload, max_attempts, scheduled_at)


def poll(pool: Database, queue: str) -> Job | None:
    """Claim the earliest due pending job of a queue, or return None.

    The claim runs under a write lock, so concurrent workers never
    receive the same job.
    """
    with _guard(), pool.connection() as conn:
        conn.execute("BEGIN IMMEDIATE")
        now = _now()
        row = conn.execute(
            "SELECT id FROM jobs "
            "WHERE queue = ? AND status = 'pending' AND scheduled_at <= ? "
            "ORDER BY scheduled_at ASC LIMIT 1",
            [queue, now],
        ).fetchone()
        if row is None:
            conn.execute("COMMIT")
            return None
        job_id = row[0]
        conn.execute(
            "UPDATE jobs SET status = 'running', started_at = ?, "
            "attempts = attempts + 1 WHERE id = ?",
            [now, job_id],
        )
        job = _load(conn, job_id)
        conn.execute("COMMIT")
        return job


def complete(pool: Database, job_id: int) -> Job:
    """Mark a job as completed."""
    return _update(
        pool, job_id, "status = 'completed', completed_at = ?", [_now()]
    )


def fail(pool: Database, job_id: int, error: str, retry_at: datetime) -> Job:
    """Record a failure and put the job back in the queue for `retry_at`."""
    return _update(
        pool,
        job_id,
        "status = 'pending', failed_at = ?, last_error = ?, scheduled_at = ?",
        [_now(), error, retry_at],
    )


def dead_letter(pool: Database, job_id: int, error: str) -> Job:
    """Mark a job as dead after it has used up its attempts."""
    return _update(
        pool,
        job_id,
        "status = 'dead', failed_at = ?, last_error = ?",
        [_now(), error],
    )


def recover_stale(pool: Database, queue: str) -> int:
    """Return running jobs of a queue to pending; gives how many were reset."""
    with _guard(), pool.connection() as conn:
        cursor = conn.execute(
            "UPDATE jobs SET status = 'pending', started_at = NULL "
            "WHERE queue = ? AND status = 'running'",
            [queue],
        )
        return cursor.rowcount