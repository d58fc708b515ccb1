"""
Read-only status view for clients polling a job.
Owner scoping comes from the JobStore: another owner's job raises JobNotFoundError.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from beyanname_ai.services.job_store import (
    BatchProgress,
    FailureKind,
    FailureLogEntry,
    JobStatus,
    JobStore,
)

# Short user-facing messages (Turkish UI); the raw provider text stays in the Failure Log.
FAILURE_SUMMARIES: dict[FailureKind, str] = {
    FailureKind.TIMEOUT: "Analiz zaman aşımına uğradı. Lütfen tekrar deneyin.",
    FailureKind.PROVIDER_ERROR: "Yapay zeka servisi isteği tamamlayamadı. Lütfen tekrar deneyin.",
    FailureKind.EMPTY_RESPONSE: "Yapay zeka servisi boş bir yanıt döndürdü. Lütfen tekrar deneyin.",
    FailureKind.CANCELLED: "Analiz kullanıcı isteğiyle iptal edildi.",
    FailureKind.STALE: "Analiz yarıda kaldı. Lütfen tekrar deneyin.",
    FailureKind.INTERNAL_ERROR: "Beklenmeyen bir hata oluştu. Lütfen tekrar deneyin.",
}


@dataclass
class FailureView:
    kind: FailureKind
    message: str
    created_at: Optional[datetime]
    error_message: Optional[str] = None
    error_detail: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "kind": self.kind.value,
            "message": self.message,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
        if self.error_message is not None:
            data["error_message"] = self.error_message
            data["error_detail"] = self.error_detail
        return data


@dataclass
class StatusView:
    job_id: str
    status: JobStatus
    updated_at: Optional[datetime]
    artifact_available: bool
    batch_progress: Optional[BatchProgress] = None
    failure: Optional[FailureView] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "job_id": self.job_id,
            "status": self.status.value,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "artifact_available": self.artifact_available,
        }
        if self.batch_progress is not None:
            data["batch_progress"] = self.batch_progress.to_dict()
        if self.failure is not None:
            data["failure"] = self.failure.to_dict()
        return data


def _failure_view(entry: FailureLogEntry, include_detail: bool) -> FailureView:
    return FailureView(
        kind=entry.error_kind,
        message=FAILURE_SUMMARIES[entry.error_kind],
        created_at=entry.created_at,
        error_message=entry.error_message if include_detail else None,
        error_detail=entry.error_detail if include_detail else None,
    )


class StatusService:
    def __init__(self, store: JobStore):
        self.store = store

    def get_status(self, job_id: str, owner_id: str, include_detail: bool = False) -> StatusView:
        """
        Raises:
            JobNotFoundError: job missing or owned by someone else.
        """
        job = self.store.get_by_id(job_id, owner_id)
        failure = None
        if job.status == JobStatus.FAILED:
            entry = self.store.latest_failure(job_id, owner_id)
            if entry is not None:
                failure = _failure_view(entry, include_detail)
        return StatusView(
            job_id=job.job_id,
            status=job.status,
            updated_at=job.updated_at,
            artifact_available=bool(job.artifact_url),
            batch_progress=job.batch_progress,
            failure=failure,
        )

    def list_failures(self, job_id: str, owner_id: str, limit: int = 50) -> list[FailureLogEntry]:
        """
        Every Failure Log entry of the job, newest first. A job retried
        several times keeps one entry per failed attempt.

        Raises:
            JobNotFoundError: job missing or owned by someone else.
        """
        self.store.get_by_id(job_id, owner_id)
        return self.store.list_failures(job_id, owner_id, limit)
