from __future__ import annotations

import abc
import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from openai import (
    OpenAI,
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    OpenAIError,
)
from beyanname_ai.core.config import Settings, settings

# ─── Logger ──────────────────────────────────────────────────────────────────
logger = logging.getLogger(__name__)

# ─── Constants ───────────────────────────────────────────────────────────────
BATCH_ENDPOINT: str          = "/v1/chat/completions"
BATCH_COMPLETION_WINDOW: str = "24h"

# OpenAI batch lifecycle → our three-state view
_BATCH_IN_PROGRESS = {"validating", "in_progress", "finalizing"}
_BATCH_ERRORED     = {"failed", "expired", "cancelling", "cancelled"}


# ─── Custom Exceptions ───────────────────────────────────────────────────────
class AnalysisError(RuntimeError):
    """Base class for generation-layer failures."""


class AnalysisTimeout(AnalysisError):
    """Raised when the provider does not answer within the hard timeout."""


class ProviderError(AnalysisError):
    """Raised for 4xx/5xx responses, connection failures or a missing API key."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class EmptyResponse(AnalysisError):
    """Raised when the call succeeded but produced no usable text."""


# ─── Batch Types ─────────────────────────────────────────────────────────────
class BatchState(str, Enum):
    IN_PROGRESS = "in_progress"
    ENDED = "ended"
    ERRORED = "errored"


@dataclass
class BatchRequest:
    custom_id: str
    prompt_text: str
    system_instructions: str
    max_output_tokens: int
    temperature: float


@dataclass
class BatchItemResult:
    custom_id: str
    text: Optional[str] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None and bool(self.text and self.text.strip())


@dataclass
class BatchPoll:
    """
    Snapshot of a provider batch.

    Attributes:
        state:     in_progress | ended | errored.
        completed: requests the provider reports as finished so far.
        total:     requests in the batch.
        results:   per-request outcomes, filled once the batch has ended.
        error:     provider reason when the whole batch errored.
    """
    state:     BatchState
    completed: int = 0
    total:     int = 0
    results:   list[BatchItemResult] = field(default_factory=list)
    error:     Optional[str] = None


# ─── Client Interface ────────────────────────────────────────────────────────
class AnalysisClient(abc.ABC):
    """
    One generation request per call; never retries on its own.
    Retry policy belongs to the job scheduler.
    """

    supports_batch: bool = False

    @abc.abstractmethod
    def generate(
        self,
        prompt_text: str,
        system_instructions: str,
        max_output_tokens: int,
        temperature: float,
    ) -> str:
        """
        Return the generated text.

        Raises:
            AnalysisTimeout, ProviderError, EmptyResponse
        """

    def submit_batch(self, requests: list[BatchRequest]) -> str:
        raise NotImplementedError(f"{type(self).__name__} has no batch support")

    def poll_batch(self, batch_ref: str) -> BatchPoll:
        raise NotImplementedError(f"{type(self).__name__} has no batch support")


class OpenAIAnalysisClient(AnalysisClient):
    """
    Chat-completions client for OpenAI or any OpenAI-compatible gateway
    (set ``base_url`` to e.g. OpenRouter to reach Claude models).
    """

    supports_batch = True

    def __init__(
        self,
        api_key: Optional[str],
        model: str,
        timeout_seconds: float = 120.0,
        base_url: Optional[str] = None,
        sdk_client: Any = None,
    ):
        self.model = model
        self.timeout_seconds = timeout_seconds
        self._client = sdk_client
        if self._client is None and api_key:
            # max_retries=0: the SDK must not retry behind the scheduler's back
            self._client = OpenAI(
                api_key=api_key,
                base_url=base_url,
                timeout=timeout_seconds,
                max_retries=0,
            )
        # Else: client remains None, every call fails with ProviderError

    def _require_client(self) -> Any:
        if self._client is None:
            raise ProviderError("OPENAI_API_KEY is not configured.")
        return self._client

    def generate(
        self,
        prompt_text: str,
        system_instructions: str,
        max_output_tokens: int,
        temperature: float,
    ) -> str:
        client = self._require_client()
        start = time.perf_counter()
        try:
            response = client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system_instructions},
                    {"role": "user",   "content": prompt_text},
                ],
                max_tokens=max_output_tokens,
                temperature=temperature,
                timeout=self.timeout_seconds,
            )
        except APITimeoutError as e:
            logger.error("Provider call timed out after %.0f s.", self.timeout_seconds)
            raise AnalysisTimeout(f"Provider did not respond within {self.timeout_seconds:.0f} s") from e
        except APIStatusError as e:
            logger.error("Provider returned HTTP %s: %s", e.status_code, str(e))
            raise ProviderError(f"Provider returned HTTP {e.status_code}: {e.message}", e.status_code) from e
        except APIConnectionError as e:
            logger.error("Provider connection failed: %s", str(e))
            raise ProviderError(f"Provider connection failed: {e}") from e
        except OpenAIError as e:
            raise ProviderError(str(e)) from e

        text = _extract_text(response)
        elapsed_ms = (time.perf_counter() - start) * 1000
        usage = getattr(response, "usage", None)
        logger.info(
            "Provider call succeeded: %d characters, %s tokens, %.2f ms.",
            len(text),
            usage.total_tokens if usage else "?",
            elapsed_ms,
        )
        return text

    # ─── Batch API ───────────────────────────────────────────────────────────

    def submit_batch(self, requests: list[BatchRequest]) -> str:
        client = self._require_client()
        lines = [
            json.dumps(
                {
                    "custom_id": r.custom_id,
                    "method": "POST",
                    "url": BATCH_ENDPOINT,
                    "body": {
                        "model": self.model,
                        "messages": [
                            {"role": "system", "content": r.system_instructions},
                            {"role": "user",   "content": r.prompt_text},
                        ],
                        "max_tokens": r.max_output_tokens,
                        "temperature": r.temperature,
                    },
                },
                ensure_ascii=False,
            )
            for r in requests
        ]
        try:
            uploaded = client.files.create(
                file=("analysis_batch.jsonl", "\n".join(lines).encode("utf-8")),
                purpose="batch",
            )
            batch = client.batches.create(
                input_file_id=uploaded.id,
                endpoint=BATCH_ENDPOINT,
                completion_window=BATCH_COMPLETION_WINDOW,
            )
        except APITimeoutError as e:
            raise AnalysisTimeout("Batch submission timed out") from e
        except APIStatusError as e:
            raise ProviderError(f"Batch submission failed with HTTP {e.status_code}: {e.message}", e.status_code) from e
        except OpenAIError as e:
            raise ProviderError(f"Batch submission failed: {e}") from e

        logger.info("Submitted batch %s with %d requests.", batch.id, len(requests))
        return batch.id

    def poll_batch(self, batch_ref: str) -> BatchPoll:
        client = self._require_client()
        try:
            batch = client.batches.retrieve(batch_ref)
        except APITimeoutError as e:
            raise AnalysisTimeout(f"Polling batch {batch_ref} timed out") from e
        except APIStatusError as e:
            raise ProviderError(f"Polling batch {batch_ref} failed with HTTP {e.status_code}", e.status_code) from e
        except OpenAIError as e:
            raise ProviderError(f"Polling batch {batch_ref} failed: {e}") from e

        counts = batch.request_counts
        completed = counts.completed if counts else 0
        total = counts.total if counts else 0

        if batch.status in _BATCH_IN_PROGRESS:
            return BatchPoll(BatchState.IN_PROGRESS, completed=completed, total=total)

        if batch.status in _BATCH_ERRORED:
            reason = batch.status
            if batch.errors and batch.errors.data:
                reason = "; ".join(err.message or err.code or "" for err in batch.errors.data)
            return BatchPoll(BatchState.ERRORED, completed=completed, total=total, error=reason)

        results: list[BatchItemResult] = []
        for file_id in (batch.output_file_id, batch.error_file_id):
            if file_id:
                results.extend(_parse_batch_lines(client.files.content(file_id).text))
        return BatchPoll(BatchState.ENDED, completed=completed, total=total, results=results)


# ─── Response Helpers ────────────────────────────────────────────────────────
def _extract_text(response: Any) -> str:
    if not response.choices:
        raise EmptyResponse("Provider returned a response with no choices.")
    content = response.choices[0].message.content
    if not content or content.strip() == "":
        raise EmptyResponse("Provider returned an empty response body.")
    return content.strip()


def _parse_batch_lines(raw: str) -> list[BatchItemResult]:
    results: list[BatchItemResult] = []
    for line in raw.splitlines():
        if not line.strip():
            continue
        item = json.loads(line)
        custom_id = item.get("custom_id", "")
        error = item.get("error")
        response = item.get("response") or {}
        if error:
            results.append(BatchItemResult(custom_id, error=error.get("message") or str(error)))
            continue
        if response.get("status_code") != 200:
            results.append(BatchItemResult(custom_id, error=f"HTTP {response.get('status_code')}"))
            continue
        choices = (response.get("body") or {}).get("choices") or []
        text = (choices[0].get("message") or {}).get("content") if choices else None
        if not text or not text.strip():
            results.append(BatchItemResult(custom_id, error="empty response"))
        else:
            results.append(BatchItemResult(custom_id, text=text.strip()))
    return results


# ─── Factory ─────────────────────────────────────────────────────────────────
def get_analysis_client(config: Settings = settings) -> AnalysisClient:
    return OpenAIAnalysisClient(
        api_key=config.OPENAI_API_KEY,
        model=config.ANALYSIS_MODEL,
        timeout_seconds=config.ANALYSIS_TIMEOUT_SECONDS,
        base_url=config.OPENAI_BASE_URL,
    )
