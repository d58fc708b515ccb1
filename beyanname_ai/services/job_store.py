"""
job_store.py
~~~~~~~~~~~~
Durable analysis job table and its append-only failure log.

Every read and write is scoped to ``owner_id``. A job that exists but belongs
to someone else is reported exactly like a missing job. Status writes are
conditional updates (``WHERE status = <expected>``), which is the only
concurrency guard between workers.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Optional

from beyanname_ai.db import get_db_connection

logger = logging.getLogger(__name__)


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class FailureKind(str, Enum):
    TIMEOUT = "Timeout"
    PROVIDER_ERROR = "ProviderError"
    EMPTY_RESPONSE = "EmptyResponse"
    CANCELLED = "Cancelled"
    STALE = "Stale"
    INTERNAL_ERROR = "InternalError"


# Legal transitions; failed → pending is reserved for Retry.
ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.PROCESSING}),
    JobStatus.PROCESSING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset({JobStatus.PENDING}),
}


# ─── Custom Exceptions ───────────────────────────────────────────────────────
class JobNotFoundError(LookupError):
    """Raised when a job does not exist or is owned by another principal."""

    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class DuplicateJobError(ValueError):
    """Raised when a job id is already taken."""

    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} already exists")
        self.job_id = job_id


class InvalidTransitionError(RuntimeError):
    """Raised for a status change the state machine does not allow."""

    def __init__(self, job_id: str, current: Optional[JobStatus], target: JobStatus):
        current_label = current.value if current else "?"
        super().__init__(f"Job {job_id}: illegal transition {current_label} -> {target.value}")
        self.job_id = job_id
        self.current = current
        self.target = target


class JobValidationError(ValueError):
    """Raised when a job cannot be created from the given input."""


# ─── Records ─────────────────────────────────────────────────────────────────
@dataclass(frozen=True)
class BatchProgress:
    completed_parts: int
    total_parts: int

    def to_dict(self) -> dict[str, int]:
        return {"completed_parts": self.completed_parts, "total_parts": self.total_parts}


@dataclass
class Job:
    job_id: str
    owner_id: str
    input_refs: list[str]
    input_payload: Any
    status: JobStatus = JobStatus.PENDING
    batch_progress: Optional[BatchProgress] = None
    result_text: Optional[str] = None
    artifact_url: Optional[str] = None
    cancel_requested: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class FailureLogEntry:
    id: int
    job_id: str
    error_kind: FailureKind
    error_message: str
    error_detail: Optional[str] = None
    created_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "job_id": self.job_id,
            "kind": self.error_kind.value,
            "error_message": self.error_message,
            "error_detail": self.error_detail,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


# ─── Helpers ─────────────────────────────────────────────────────────────────
def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def _parse_ts(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def _row_to_job(row: Any) -> Job:
    progress = None
    if row["batch_total"] is not None:
        progress = BatchProgress(row["batch_completed"] or 0, row["batch_total"])
    return Job(
        job_id=row["job_id"],
        owner_id=row["owner_id"],
        input_refs=json.loads(row["input_refs"]),
        input_payload=json.loads(row["input_payload"]),
        status=JobStatus(row["status"]),
        batch_progress=progress,
        result_text=row["result_text"],
        artifact_url=row["artifact_url"],
        cancel_requested=bool(row["cancel_requested"]),
        created_at=_parse_ts(row["created_at"]),
        updated_at=_parse_ts(row["updated_at"]),
    )


def _row_to_failure(row: Any) -> FailureLogEntry:
    return FailureLogEntry(
        id=row["id"],
        job_id=row["job_id"],
        error_kind=FailureKind(row["error_kind"]),
        error_message=row["error_message"],
        error_detail=row["error_detail"],
        created_at=_parse_ts(row["created_at"]),
    )


def _field_columns(fields: dict[str, Any]) -> dict[str, Any]:
    """Translate Job attribute updates into column assignments."""
    columns: dict[str, Any] = {}
    for name, value in fields.items():
        if name == "result_text":
            columns["result_text"] = value
        elif name == "cancel_requested":
            columns["cancel_requested"] = 1 if value else 0
        elif name == "batch_progress":
            columns["batch_completed"] = value.completed_parts if value else None
            columns["batch_total"] = value.total_parts if value else None
        else:
            raise TypeError(f"update_status() got an unexpected field '{name}'")
    return columns


class JobStore:
    """
    Owner-scoped persistence for analysis jobs.
    Works on SQLite (local) and PostgreSQL (DATABASE_URL) through ``get_db_connection``.
    """

    def __init__(self, connection_factory: Callable = get_db_connection):
        self._connect = connection_factory

    # ─── Create / Read ───────────────────────────────────────────────────────

    def create(self, job: Job) -> Job:
        now = _utcnow()
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO analysis_jobs
                    (job_id, owner_id, status, input_refs, input_payload, cancel_requested, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, 0, ?, ?)
                ON CONFLICT (job_id) DO NOTHING
                """,
                (
                    job.job_id,
                    job.owner_id,
                    JobStatus.PENDING.value,
                    json.dumps(job.input_refs, ensure_ascii=False),
                    json.dumps(job.input_payload, ensure_ascii=False),
                    now,
                    now,
                ),
            )
            inserted = cursor.rowcount
            conn.commit()

        if inserted != 1:
            raise DuplicateJobError(job.job_id)

        logger.info(f"Job {job.job_id} created for owner {job.owner_id}.")
        return self.get_by_id(job.job_id, job.owner_id)

    def get_by_id(self, job_id: str, owner_id: str) -> Job:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM analysis_jobs WHERE job_id = ? AND owner_id = ?",
                (job_id, owner_id),
            ).fetchone()
        if not row:
            raise JobNotFoundError(job_id)
        return _row_to_job(row)

    def list_by_owner(self, owner_id: str, limit: int = 100) -> list[Job]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM analysis_jobs
                WHERE owner_id = ?
                ORDER BY created_at DESC, job_id DESC
                LIMIT ?
                """,
                (owner_id, limit),
            ).fetchall()
        return [_row_to_job(r) for r in rows]

    # ─── Status Writes ───────────────────────────────────────────────────────

    def update_status(
        self,
        job_id: str,
        owner_id: str,
        new_status: JobStatus,
        *,
        expected: JobStatus,
        **fields: Any,
    ) -> bool:
        """
        Conditionally move a job from ``expected`` to ``new_status``.

        Returns True when the row changed and False for an idempotent repeat
        (row already in ``new_status`` with the same field values).

        Raises:
            InvalidTransitionError: transition not allowed, or the row is in another state.
            JobNotFoundError:       job missing or owned by someone else.
            JobValidationError:     completing without a non-empty result_text.
        """
        if new_status not in ALLOWED_TRANSITIONS[expected]:
            raise InvalidTransitionError(job_id, expected, new_status)
        if new_status == JobStatus.COMPLETED and not (fields.get("result_text") or "").strip():
            raise JobValidationError("A completed job needs a non-empty result_text.")

        columns = _field_columns(fields)
        assignments = "".join(f", {col} = ?" for col in columns)
        with self._connect() as conn:
            cursor = conn.execute(
                f"""
                UPDATE analysis_jobs
                SET status = ?, updated_at = ?{assignments}
                WHERE job_id = ? AND owner_id = ? AND status = ?
                """,
                (new_status.value, _utcnow(), *columns.values(), job_id, owner_id, expected.value),
            )
            changed = cursor.rowcount == 1
            conn.commit()

        if changed:
            logger.info(f"Job {job_id}: {expected.value} -> {new_status.value}")
            return True
        return self._check_idempotent(job_id, owner_id, new_status, fields)

    def _check_idempotent(
        self, job_id: str, owner_id: str, new_status: JobStatus, fields: dict[str, Any]
    ) -> bool:
        current = self.get_by_id(job_id, owner_id)
        same_fields = all(getattr(current, name) == value for name, value in fields.items())
        if current.status == new_status and same_fields:
            logger.info(f"Job {job_id}: already {new_status.value}, repeat ignored.")
            return False
        raise InvalidTransitionError(job_id, current.status, new_status)

    def mark_failed(
        self,
        job_id: str,
        owner_id: str,
        kind: FailureKind,
        message: str,
        detail: Optional[str] = None,
    ) -> bool:
        """
        processing → failed together with its Failure Log entry, in one transaction.
        Returns False if the job is already failed (no second log entry is written).
        """
        now = _utcnow()
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE analysis_jobs
                SET status = ?, updated_at = ?
                WHERE job_id = ? AND owner_id = ? AND status = ?
                """,
                (JobStatus.FAILED.value, now, job_id, owner_id, JobStatus.PROCESSING.value),
            )
            changed = cursor.rowcount == 1
            if changed:
                conn.execute(
                    """
                    INSERT INTO analysis_failure_logs (job_id, error_kind, error_message, error_detail, created_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (job_id, kind.value, message, detail, now),
                )
            conn.commit()

        if changed:
            logger.error(f"Job {job_id} marked as FAILED ({kind.value}): {message}")
            return True

        current = self.get_by_id(job_id, owner_id)
        if current.status == JobStatus.FAILED:
            logger.info(f"Job {job_id}: already failed, repeat ignored.")
            return False
        raise InvalidTransitionError(job_id, current.status, JobStatus.FAILED)

    def update_progress(self, job_id: str, owner_id: str, completed: int, total: int) -> None:
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE analysis_jobs
                SET batch_completed = ?, batch_total = ?, updated_at = ?
                WHERE job_id = ? AND owner_id = ? AND status = ?
                """,
                (completed, total, _utcnow(), job_id, owner_id, JobStatus.PROCESSING.value),
            )
            changed = cursor.rowcount == 1
            conn.commit()
        if not changed:
            current = self.get_by_id(job_id, owner_id)
            raise InvalidTransitionError(job_id, current.status, JobStatus.PROCESSING)

    def set_artifact_url(self, job_id: str, owner_id: str, artifact_url: str) -> None:
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE analysis_jobs SET artifact_url = ?
                WHERE job_id = ? AND owner_id = ? AND status = ?
                """,
                (artifact_url, job_id, owner_id, JobStatus.COMPLETED.value),
            )
            changed = cursor.rowcount == 1
            conn.commit()
        if not changed:
            current = self.get_by_id(job_id, owner_id)
            raise InvalidTransitionError(job_id, current.status, JobStatus.COMPLETED)

    def request_cancel(self, job_id: str, owner_id: str) -> None:
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE analysis_jobs SET cancel_requested = 1
                WHERE job_id = ? AND owner_id = ? AND status IN (?, ?)
                """,
                (job_id, owner_id, JobStatus.PENDING.value, JobStatus.PROCESSING.value),
            )
            changed = cursor.rowcount == 1
            conn.commit()
        if not changed:
            current = self.get_by_id(job_id, owner_id)
            raise InvalidTransitionError(job_id, current.status, JobStatus.FAILED)
        logger.info(f"Job {job_id}: cancellation requested.")

    # ─── Failure Log ─────────────────────────────────────────────────────────

    def latest_failure(self, job_id: str, owner_id: str) -> Optional[FailureLogEntry]:
        failures = self.list_failures(job_id, owner_id, limit=1)
        return failures[0] if failures else None

    def list_failures(self, job_id: str, owner_id: str, limit: int = 50) -> list[FailureLogEntry]:
        """Failure Log entries for one job, newest first."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT f.* FROM analysis_failure_logs f
                JOIN analysis_jobs j ON j.job_id = f.job_id
                WHERE f.job_id = ? AND j.owner_id = ?
                ORDER BY f.id DESC
                LIMIT ?
                """,
                (job_id, owner_id, limit),
            ).fetchall()
        return [_row_to_failure(r) for r in rows]

    # ─── System Scans (sweep adapters) ───────────────────────────────────────

    def claimable_jobs(self, limit: int) -> list[tuple[str, str]]:
        """(job_id, owner_id) of the oldest pending jobs."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT job_id, owner_id FROM analysis_jobs
                WHERE status = ?
                ORDER BY created_at ASC
                LIMIT ?
                """,
                (JobStatus.PENDING.value, limit),
            ).fetchall()
        return [(r["job_id"], r["owner_id"]) for r in rows]

    def stale_processing_jobs(self, older_than_seconds: float) -> list[tuple[str, str]]:
        """(job_id, owner_id) of processing jobs whose last write is older than the threshold."""
        cutoff = (datetime.now(timezone.utc) - timedelta(seconds=older_than_seconds)).isoformat(
            timespec="microseconds"
        )
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT job_id, owner_id FROM analysis_jobs
                WHERE status = ? AND updated_at < ?
                ORDER BY updated_at ASC
                """,
                (JobStatus.PROCESSING.value, cutoff),
            ).fetchall()
        return [(r["job_id"], r["owner_id"]) for r in rows]
