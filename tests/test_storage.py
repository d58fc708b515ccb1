"""
test_storage.py
~~~~~~~~~~~~~~~
Local artifact storage: per-owner keys, overwrite on re-render, lookups.
"""
from __future__ import annotations

import os

import pytest

from beyanname_ai.services.artifact_renderer import ArtifactRenderer
from beyanname_ai.services.storage import (
    ArtifactNotFoundError,
    LocalStorageProvider,
    artifact_key,
)
from tests.conftest import StubClient


@pytest.fixture
def storage(tmp_path):
    return LocalStorageProvider(str(tmp_path / "art"))


class TestArtifactKey:
    def test_owner_is_part_of_the_key(self):
        assert artifact_key("A", "J1") != artifact_key("B", "J1")

    def test_shared_basename_does_not_collide(self):
        assert artifact_key("A", "J1") != artifact_key("B", "evil/J1")

    def test_separator_cannot_be_forged(self):
        assert artifact_key("A", "B\0J1") != artifact_key("A\0B", "J1")

    def test_key_is_a_plain_file_stem(self):
        key = artifact_key("../A", "../../J1")
        assert "/" not in key and "\\" not in key and "." not in key


class TestLocalStorage:
    def test_two_owners_same_job_id_keep_separate_files(self, storage):
        ref_a = storage.save_artifact(b"%PDF-A", "A", "J1")
        ref_b = storage.save_artifact(b"%PDF-B", "B", "J1")

        assert ref_a != ref_b
        with open(storage.get_absolute_path(ref_a), "rb") as f:
            assert f.read() == b"%PDF-A"
        with open(storage.get_absolute_path(ref_b), "rb") as f:
            assert f.read() == b"%PDF-B"

    def test_files_stay_inside_base_dir(self, storage):
        ref = storage.save_artifact(b"%PDF", "../A", "../../J1")
        assert os.path.dirname(os.path.realpath(ref)) == os.path.realpath(storage.base_dir)

    def test_rerender_overwrites(self, storage):
        first = storage.save_artifact(b"%PDF-1", "A", "J1")
        second = storage.save_artifact(b"%PDF-2", "A", "J1")
        assert first == second
        with open(storage.get_absolute_path(second), "rb") as f:
            assert f.read() == b"%PDF-2"
        assert not os.path.exists(second + ".tmp")

    def test_missing_artifact(self, storage, tmp_path):
        with pytest.raises(ArtifactNotFoundError):
            storage.get_absolute_path(str(tmp_path / "art" / "yok.pdf"))

    def test_streams_without_presigned_url(self, storage):
        ref = storage.save_artifact(b"%PDF", "A", "J1")
        assert storage.presigned_url(ref) is None


class TestSchedulerArtifacts:
    def test_each_owner_downloads_own_report(self, make_scheduler, store, storage):
        scheduler_a = make_scheduler(StubClient("A firmasının raporu"))
        scheduler_b = make_scheduler(StubClient("B firmasının raporu"))
        for scheduler in (scheduler_a, scheduler_b):
            scheduler.renderer, scheduler.storage = ArtifactRenderer(), storage

        scheduler_a.enqueue("A", [], "veri", job_id="J1")
        scheduler_b.enqueue("B", [], "veri", job_id="J1-b")

        ref_a = store.get_by_id("J1", "A").artifact_url
        ref_b = store.get_by_id("J1-b", "B").artifact_url
        assert ref_a and ref_b and ref_a != ref_b
        with open(ref_a, "rb") as fa, open(ref_b, "rb") as fb:
            assert fa.read() != fb.read()
