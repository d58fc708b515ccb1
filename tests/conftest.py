"""
Shared fixtures: a throwaway SQLite database per test, stub analysis
clients, a fake clock and a TestClient wired to them.
"""
from __future__ import annotations

import re
from typing import Callable, Optional, Union

import pytest

from beyanname_ai.core.config import settings
from beyanname_ai.db import init_db
from beyanname_ai.services.analysis_client import AnalysisClient, BatchPoll, BatchRequest
from beyanname_ai.services.job_store import JobStore
from beyanname_ai.services.scheduler import JobScheduler, SchedulerConfig

PART_RE = re.compile(r"(\d+) parçasından (\d+)\. parçasıdır")


# ─── Stubs ───────────────────────────────────────────────────────────────────

class StubClient(AnalysisClient):
    """
    Records every generate() call. ``reply`` is a fixed string, a callable
    taking the prompt text, or an exception instance to raise.
    """

    def __init__(self, reply: Union[str, Callable[[str], str], Exception] = "OK"):
        self.reply = reply
        self.prompts: list[str] = []

    def generate(self, prompt_text, system_instructions, max_output_tokens, temperature):
        self.prompts.append(prompt_text)
        if isinstance(self.reply, Exception):
            raise self.reply
        if callable(self.reply):
            return self.reply(prompt_text)
        return self.reply


class StubBatchClient(AnalysisClient):
    """Batch-capable stub; ``polls`` is consumed one entry per poll_batch() call."""

    supports_batch = True

    def __init__(self, polls: Callable[[list[BatchRequest]], list[BatchPoll]]):
        self._build_polls = polls
        self._polls: list[BatchPoll] = []
        self.submitted: list[BatchRequest] = []
        self.poll_count = 0

    def generate(self, prompt_text, system_instructions, max_output_tokens, temperature):
        raise AssertionError("batch client must not receive individual calls")

    def submit_batch(self, requests):
        self.submitted = list(requests)
        self._polls = self._build_polls(self.submitted)
        return "batch_test_1"

    def poll_batch(self, batch_ref):
        self.poll_count += 1
        if len(self._polls) > 1:
            return self._polls.pop(0)
        return self._polls[0]


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def part_number(prompt_text: str) -> Optional[int]:
    """1-based part number embedded in a multi-part prompt."""
    match = PART_RE.search(prompt_text)
    return int(match.group(2)) if match else None


# ─── Fixtures ────────────────────────────────────────────────────────────────

@pytest.fixture(autouse=True)
def temp_database(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "DATABASE_URL", "")
    monkeypatch.setattr(settings, "SQLITE_PATH", str(tmp_path / "jobs.db"))
    monkeypatch.setattr(settings, "ARTIFACT_DIR", str(tmp_path / "artifacts"))
    init_db()
    yield


@pytest.fixture
def store() -> JobStore:
    return JobStore()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_scheduler(store, clock):
    """Factory: scheduler over the temp store with a stub client and fake clock."""
    def _make(client: Optional[AnalysisClient] = None, dispatcher=None, **config) -> JobScheduler:
        return JobScheduler(
            store=store,
            client=client or StubClient(),
            config=SchedulerConfig(**config),
            dispatcher=dispatcher,
            clock=clock,
            sleep=clock.sleep,
        )
    return _make


@pytest.fixture
def no_dispatch():
    """Dispatcher that only records; jobs stay pending until picked up explicitly."""
    calls: list[tuple[str, str]] = []

    def _dispatch(job_id, owner_id):
        calls.append((job_id, owner_id))

    _dispatch.calls = calls
    return _dispatch
