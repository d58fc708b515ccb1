"""
scheduler.py
~~~~~~~~~~~~
The analysis job state machine.

Every dispatch path (HTTP route, Celery task, periodic sweep) ends up in
``JobScheduler.pickup_and_process``. The only state the scheduler keeps is
the working set of the single job it is processing; everything durable lives
in the JobStore so a crashed worker leaves a ``processing`` row behind that
``recover_stale`` later resolves.
"""
from __future__ import annotations

import json
import logging
import time
import traceback
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from beyanname_ai.core.config import Settings, settings
from beyanname_ai.services.analysis_client import (
    AnalysisClient,
    AnalysisTimeout,
    BatchRequest,
    BatchState,
    EmptyResponse,
    ProviderError,
    get_analysis_client,
)
from beyanname_ai.services.artifact_renderer import ArtifactRenderer, RenderError
from beyanname_ai.services.chunker import requires_chunking, serialize_payload, split_payload
from beyanname_ai.services.job_store import (
    BatchProgress,
    FailureKind,
    InvalidTransitionError,
    Job,
    JobNotFoundError,
    JobStatus,
    JobStore,
    JobValidationError,
)
from beyanname_ai.services.prompts import build_prompt
from beyanname_ai.services.storage import StorageProvider, get_storage_provider

logger = logging.getLogger(__name__)

MAX_ID_LENGTH = 128
RESULT_SEPARATOR = "\n\n"

Dispatcher = Callable[[str, str], Any]


# ─── Custom Exceptions ───────────────────────────────────────────────────────
class JobCancelled(RuntimeError):
    """Raised inside a run when the owner asked for cancellation."""


class BatchPartError(ProviderError):
    """Raised when the provider reports one or more batch parts as errored."""

    def __init__(self, message: str, part_indexes: list[int]):
        super().__init__(message)
        self.part_indexes = part_indexes


# ─── Working State ───────────────────────────────────────────────────────────
class PartStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    ERRORED = "errored"


@dataclass
class Chunk:
    """One slice of an oversized payload; lives only while its job is processed."""
    part_index: int
    text_content: str
    remote_batch_ref: Optional[str] = None
    part_status: PartStatus = PartStatus.PENDING
    result_text: Optional[str] = None
    error: Optional[str] = None


@dataclass
class SchedulerConfig:
    chunk_token_budget: int = 50000
    batch_mode: str = "individual"
    poll_interval_seconds: float = 60.0
    deadline_seconds: float = 1800.0
    max_output_tokens: int = 8192
    temperature: float = 0.2

    @classmethod
    def from_settings(cls, config: Settings) -> "SchedulerConfig":
        return cls(
            chunk_token_budget=config.CHUNK_TOKEN_BUDGET,
            batch_mode=config.BATCH_MODE,
            poll_interval_seconds=config.BATCH_POLL_INTERVAL_SECONDS,
            deadline_seconds=config.BATCH_DEADLINE_SECONDS,
            max_output_tokens=config.ANALYSIS_MAX_OUTPUT_TOKENS,
            temperature=config.ANALYSIS_TEMPERATURE,
        )


def aggregate_parts(chunks: list[Chunk]) -> str:
    """Join part results in part_index order, whatever order they finished in."""
    ordered = sorted(chunks, key=lambda c: c.part_index)
    return RESULT_SEPARATOR.join(c.result_text or "" for c in ordered)


def _failure_kind(exc: BaseException) -> FailureKind:
    if isinstance(exc, JobCancelled):
        return FailureKind.CANCELLED
    if isinstance(exc, AnalysisTimeout):
        return FailureKind.TIMEOUT
    if isinstance(exc, EmptyResponse):
        return FailureKind.EMPTY_RESPONSE
    if isinstance(exc, ProviderError):
        return FailureKind.PROVIDER_ERROR
    return FailureKind.INTERNAL_ERROR


class JobScheduler:
    """
    Owns the job lifecycle: pending → processing → completed | failed,
    plus failed → pending through ``retry``.

    Args:
        store:      JobStore holding all durable state.
        client:     AnalysisClient used for every generation call.
        renderer:   optional ArtifactRenderer; with ``storage`` enables PDFs.
        storage:    optional StorageProvider for rendered PDFs.
        config:     pipeline tunables.
        dispatcher: ``f(job_id, owner_id)`` used by enqueue/retry to schedule
                    pickup (a Celery ``.delay``). None runs pickup inline.
        clock:      monotonic seconds, for the batch deadline.
        sleep:      blocking wait between batch polls.
    """

    def __init__(
        self,
        store: JobStore,
        client: AnalysisClient,
        renderer: Optional[ArtifactRenderer] = None,
        storage: Optional[StorageProvider] = None,
        config: Optional[SchedulerConfig] = None,
        dispatcher: Optional[Dispatcher] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.client = client
        self.renderer = renderer
        self.storage = storage
        self.config = config or SchedulerConfig()
        self.dispatcher = dispatcher
        self.clock = clock
        self.sleep = sleep

    # ─── Entry Points ────────────────────────────────────────────────────────

    def enqueue(
        self,
        owner_id: str,
        input_refs: list[str],
        input_payload: Any,
        job_id: Optional[str] = None,
    ) -> Job:
        """
        Validate and persist a new pending job, then dispatch its pickup.

        Raises:
            JobValidationError: bad ids, refs or an empty payload (no row is written).
            DuplicateJobError:  job_id already taken.
        """
        job_id = job_id if job_id is not None else str(uuid.uuid4())
        _validate_id("job_id", job_id)
        if job_id in (".", "..") or any(sep in job_id for sep in ("/", "\\")):
            raise JobValidationError("job_id must not contain path separators or be a dot segment.")
        _validate_id("owner_id", owner_id)
        if not isinstance(input_refs, list) or not all(isinstance(r, str) and r.strip() for r in input_refs):
            raise JobValidationError("input_refs must be a list of non-empty strings.")
        _validate_payload(input_payload)

        job = self.store.create(
            Job(job_id=job_id, owner_id=owner_id, input_refs=input_refs, input_payload=input_payload)
        )
        self._dispatch(job.job_id, job.owner_id)
        return job

    def retry(self, job_id: str, owner_id: str) -> Job:
        """
        failed → pending, keeping payload and refs, then re-dispatch pickup.

        Raises:
            InvalidTransitionError: job is not failed (a second retry included).
            JobNotFoundError:       job missing or owned by someone else.
        """
        changed = self.store.update_status(
            job_id, owner_id, JobStatus.PENDING, expected=JobStatus.FAILED, cancel_requested=False
        )
        if not changed:
            raise InvalidTransitionError(job_id, JobStatus.PENDING, JobStatus.PENDING)
        logger.info(f"Job {job_id}: retry accepted.")
        self._dispatch(job_id, owner_id)
        return self.store.get_by_id(job_id, owner_id)

    def cancel(self, job_id: str, owner_id: str) -> None:
        """Flag a pending or processing job; the worker fails it with kind Cancelled."""
        self.store.request_cancel(job_id, owner_id)

    def sweep(self, limit: int) -> int:
        """Pick up to ``limit`` of the oldest pending jobs. Returns how many were processed."""
        processed = 0
        for job_id, owner_id in self.store.claimable_jobs(limit):
            if self.pickup_and_process(job_id, owner_id) is not None:
                processed += 1
        if processed:
            logger.info(f"Sweep processed {processed} pending job(s).")
        return processed

    def recover_stale(self, older_than_seconds: float) -> int:
        """Fail processing jobs whose worker stopped writing. Returns how many were failed."""
        recovered = 0
        for job_id, owner_id in self.store.stale_processing_jobs(older_than_seconds):
            message = f"No progress for more than {older_than_seconds:.0f} s; worker presumed lost."
            try:
                if self.store.mark_failed(job_id, owner_id, FailureKind.STALE, message):
                    recovered += 1
            except InvalidTransitionError:
                # Finished between the scan and the write
                logger.info(f"Job {job_id}: no longer processing, stale recovery skipped.")
        if recovered:
            logger.warning(f"Stale recovery failed {recovered} job(s).")
        return recovered

    # ─── Pickup ──────────────────────────────────────────────────────────────

    def pickup_and_process(self, job_id: str, owner_id: str) -> Optional[Job]:
        """
        Claim a pending job and run it to a terminal state.

        Returns the final job, or None when another worker already claimed it
        (or it does not exist). Never raises: every failure after the claim is
        written to the Failure Log and the job ends ``failed``.
        """
        try:
            claimed = self.store.update_status(
                job_id, owner_id, JobStatus.PROCESSING, expected=JobStatus.PENDING, batch_progress=None
            )
        except (InvalidTransitionError, JobNotFoundError) as e:
            logger.info(f"Job {job_id}: not claimable ({e}).")
            return None
        if not claimed:
            logger.info(f"Job {job_id}: already claimed by another worker.")
            return None

        start_time = time.perf_counter()
        try:
            job = self.store.get_by_id(job_id, owner_id)
            self._check_cancel(job_id, owner_id)
            result_text = self._run(job)
            self.store.update_status(
                job_id, owner_id, JobStatus.COMPLETED, expected=JobStatus.PROCESSING, result_text=result_text
            )
        except Exception as e:
            self._fail(job_id, owner_id, e, traceback.format_exc())
        else:
            logger.info(f"Job {job_id} completed in {time.perf_counter() - start_time:.2f} s.")
            self._render_after_completion(job_id, owner_id)

        try:
            return self.store.get_by_id(job_id, owner_id)
        except Exception as e:
            logger.error(f"Job {job_id}: could not reload final state: {e}")
            return None

    def _fail(self, job_id: str, owner_id: str, exc: Exception, detail: str) -> None:
        kind = _failure_kind(exc)
        if kind == FailureKind.INTERNAL_ERROR:
            logger.exception(f"Job {job_id}: unexpected error")
        try:
            self.store.mark_failed(job_id, owner_id, kind, str(exc) or type(exc).__name__, detail)
        except InvalidTransitionError as e:
            # Already terminal (e.g. stale recovery won the race)
            logger.warning(f"Job {job_id}: failure not recorded, {e}")
        except Exception:
            logger.exception(f"Job {job_id}: could not record failure")

    def _check_cancel(self, job_id: str, owner_id: str) -> None:
        if self.store.get_by_id(job_id, owner_id).cancel_requested:
            raise JobCancelled("Cancelled at the owner's request.")

    # ─── Analysis Run ────────────────────────────────────────────────────────

    def _run(self, job: Job) -> str:
        payload_text = serialize_payload(job.input_payload)
        budget = self.config.chunk_token_budget

        if not requires_chunking(payload_text, budget):
            prompt = build_prompt(payload_text, job.input_refs)
            logger.info(f"Job {job.job_id}: single-part analysis.")
            return self._generate(prompt)

        chunks = [Chunk(part_index=i, text_content=text) for i, text in enumerate(split_payload(payload_text, budget))]
        self.store.update_progress(job.job_id, job.owner_id, 0, len(chunks))

        if self.config.batch_mode == "provider_batch" and self.client.supports_batch:
            logger.info(f"Job {job.job_id}: {len(chunks)} parts via provider batch.")
            self._run_provider_batch(job, chunks)
        else:
            if self.config.batch_mode == "provider_batch":
                logger.warning(f"{type(self.client).__name__} has no batch support; sending parts individually.")
            logger.info(f"Job {job.job_id}: {len(chunks)} parts via individual calls.")
            self._run_individual(job, chunks)
        return aggregate_parts(chunks)

    def _generate(self, prompt) -> str:
        return self.client.generate(
            prompt.prompt_text,
            prompt.system_instructions,
            self.config.max_output_tokens,
            self.config.temperature,
        )

    def _run_individual(self, job: Job, chunks: list[Chunk]) -> None:
        total = len(chunks)
        deadline = self.clock() + self.config.deadline_seconds
        for done, chunk in enumerate(chunks, start=1):
            self._check_cancel(job.job_id, job.owner_id)
            if self.clock() >= deadline:
                raise AnalysisTimeout(
                    f"Deadline of {self.config.deadline_seconds:.0f} s elapsed after {done - 1}/{total} parts"
                )
            prompt = build_prompt(chunk.text_content, job.input_refs, chunk.part_index + 1, total)
            chunk.result_text = self._generate(prompt)
            chunk.part_status = PartStatus.SUCCEEDED
            self.store.update_progress(job.job_id, job.owner_id, done, total)

    def _run_provider_batch(self, job: Job, chunks: list[Chunk]) -> None:
        total = len(chunks)
        by_custom_id: dict[str, Chunk] = {}
        requests: list[BatchRequest] = []
        for chunk in chunks:
            custom_id = f"{job.job_id}-part-{chunk.part_index}"
            prompt = build_prompt(chunk.text_content, job.input_refs, chunk.part_index + 1, total)
            by_custom_id[custom_id] = chunk
            requests.append(
                BatchRequest(
                    custom_id=custom_id,
                    prompt_text=prompt.prompt_text,
                    system_instructions=prompt.system_instructions,
                    max_output_tokens=self.config.max_output_tokens,
                    temperature=self.config.temperature,
                )
            )

        batch_ref = self.client.submit_batch(requests)
        for chunk in chunks:
            chunk.remote_batch_ref = batch_ref

        deadline = self.clock() + self.config.deadline_seconds
        while True:
            self._check_cancel(job.job_id, job.owner_id)
            poll = self.client.poll_batch(batch_ref)
            self.store.update_progress(job.job_id, job.owner_id, min(poll.completed, total), total)

            if poll.state == BatchState.ERRORED:
                raise BatchPartError(
                    f"Batch {batch_ref} errored: {poll.error or 'unknown reason'}",
                    [c.part_index for c in chunks],
                )
            if poll.state == BatchState.ENDED:
                break
            if self.clock() >= deadline:
                raise AnalysisTimeout(
                    f"Batch {batch_ref} not finished within {self.config.deadline_seconds:.0f} s"
                )
            self.sleep(self.config.poll_interval_seconds)

        for item in poll.results:
            chunk = by_custom_id.get(item.custom_id)
            if chunk is None:
                logger.warning(f"Batch {batch_ref}: ignoring unknown result '{item.custom_id}'.")
                continue
            if item.succeeded:
                chunk.result_text = item.text
                chunk.part_status = PartStatus.SUCCEEDED
            else:
                chunk.error = item.error or "empty response"
                chunk.part_status = PartStatus.ERRORED

        unfinished = [c for c in chunks if c.part_status != PartStatus.SUCCEEDED]
        if unfinished:
            # One errored part fails the whole job; partial results are not kept
            indexes = [c.part_index for c in unfinished]
            reasons = "; ".join(f"part {c.part_index}: {c.error or 'no result'}" for c in unfinished)
            raise BatchPartError(f"Batch {batch_ref}: parts {indexes} did not succeed ({reasons})", indexes)
        self.store.update_progress(job.job_id, job.owner_id, total, total)

    # ─── Artifacts ───────────────────────────────────────────────────────────

    def render_artifact(self, job_id: str, owner_id: str) -> Optional[str]:
        """
        Render the PDF for a completed job and store its reference.

        Returns the artifact reference, or None when rendering or storage
        failed (logged; the job's status is never touched).

        Raises:
            InvalidTransitionError: job is not completed.
            JobNotFoundError:       job missing or owned by someone else.
        """
        job = self.store.get_by_id(job_id, owner_id)
        if job.status != JobStatus.COMPLETED:
            raise InvalidTransitionError(job_id, job.status, JobStatus.COMPLETED)
        if self.renderer is None or self.storage is None:
            logger.info(f"Job {job_id}: no renderer configured, artifact skipped.")
            return None

        try:
            pdf_bytes = self.renderer.render(job.result_text)
            artifact_ref = self.storage.save_artifact(pdf_bytes, owner_id, job_id)
        except RenderError as e:
            logger.error(f"Job {job_id}: PDF render failed: {e}")
            return None
        except Exception as e:
            logger.error(f"Job {job_id}: artifact storage failed: {e}")
            return None

        self.store.set_artifact_url(job_id, owner_id, artifact_ref)
        logger.info(f"Job {job_id}: artifact stored at {artifact_ref}.")
        return artifact_ref

    def _render_after_completion(self, job_id: str, owner_id: str) -> None:
        try:
            self.render_artifact(job_id, owner_id)
        except Exception as e:
            logger.error(f"Job {job_id}: artifact step failed: {e}")

    # ─── Dispatch ────────────────────────────────────────────────────────────

    def _dispatch(self, job_id: str, owner_id: str) -> None:
        if self.dispatcher is None:
            self.pickup_and_process(job_id, owner_id)
            return
        try:
            self.dispatcher(job_id, owner_id)
        except Exception as e:
            # Row stays pending; the periodic sweep will pick it up
            logger.error(f"Job {job_id}: dispatch failed, left for sweep: {e}")


# ─── Validation ──────────────────────────────────────────────────────────────
def _validate_id(name: str, value: Any) -> None:
    if not isinstance(value, str) or not value.strip():
        raise JobValidationError(f"{name} must be a non-empty string.")
    if len(value) > MAX_ID_LENGTH:
        raise JobValidationError(f"{name} must be at most {MAX_ID_LENGTH} characters.")


def _validate_payload(payload: Any) -> None:
    if payload is None:
        raise JobValidationError("input_payload is required.")
    try:
        text = serialize_payload(payload)
    except (TypeError, ValueError) as e:
        raise JobValidationError(f"input_payload is not JSON-serializable: {e}") from e
    if isinstance(payload, (dict, list)) and not payload:
        raise JobValidationError("input_payload is empty.")
    if not text.split():
        raise JobValidationError("input_payload is empty.")
    # Reject NaN/Infinity, which the JSON column cannot round-trip portably
    try:
        json.dumps(payload, allow_nan=False)
    except ValueError as e:
        raise JobValidationError(f"input_payload contains a non-finite number: {e}") from e


# ─── Factory ─────────────────────────────────────────────────────────────────
def build_scheduler(config: Settings = settings, dispatcher: Optional[Dispatcher] = None) -> JobScheduler:
    return JobScheduler(
        store=JobStore(),
        client=get_analysis_client(config),
        renderer=ArtifactRenderer(config.PDF_FONT_PATH),
        storage=get_storage_provider(config),
        config=SchedulerConfig.from_settings(config),
        dispatcher=dispatcher,
    )
