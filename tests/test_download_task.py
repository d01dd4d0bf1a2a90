"""
Tests for DownloadTask — connection check, transfer, extraction, registration.
"""

import threading
import urllib.error
from pathlib import Path

import pytest

from deken.core.errors import ArchiveCorrupt, NetworkUnreachable
from deken.core.models.package import DownloadState, PackageRecord
from deken.core.persistence.install_state import InstallStateStore
from deken.core.services.archive import extract_archive
from deken.core.services.download_task import DownloadTask
from registry_fakes import FakeOpener, make_tar_gz, make_zip

ARTIFACT_URL = "https://registry.test/files/cyclone-v0.6-Linux-amd64-32.dek"


@pytest.fixture
def record() -> PackageRecord:
    return PackageRecord(
        name="cyclone",
        version="0.6",
        author="porres",
        timestamp="2022:01:01 00:00:00",
        url=ARTIFACT_URL,
    )


@pytest.fixture
def store(library_dir: Path) -> InstallStateStore:
    return InstallStateStore(library_dir / ".pkg_info.json")


def _task(record, library_dir, store, opener, **kw) -> DownloadTask:
    return DownloadTask(
        record,
        library_dir / record.filename,
        store,
        connect_timeout=1.0,
        chunk_size=kw.get("chunk_size", 16),
        opener=opener,
    )


def _archive() -> bytes:
    return make_zip({
        "cyclone/counter.pd": b"#N canvas 0 0 450 300 12;",
        "cyclone/cyclone-meta.pd": b"#N canvas;",
    })


class TestSuccess:
    def test_zip_installs_and_registers(self, record, library_dir, store, fake_http: FakeOpener):
        fake_http.add(ARTIFACT_URL, _archive())
        outcomes = []

        task = _task(record, library_dir, store, fake_http)
        task.on_finish(outcomes.append)
        assert task.wait(5)

        assert task.state == DownloadState.SUCCEEDED
        assert len(outcomes) == 1
        assert outcomes[0].success
        assert outcomes[0].entry.path == str(library_dir / "cyclone")
        assert (library_dir / "cyclone" / "counter.pd").is_file()
        assert store.contains(record.id)

    def test_tar_gz_installs(self, record, library_dir, store, fake_http: FakeOpener):
        fake_http.add(ARTIFACT_URL, make_tar_gz({"cyclone/counter.pd": b"#N canvas;"}))

        task = _task(record, library_dir, store, fake_http)
        task.wait(5)

        assert task.state == DownloadState.SUCCEEDED
        assert (library_dir / "cyclone" / "counter.pd").is_file()

    def test_progress_monotonic_and_complete(self, record, library_dir, store, fake_http: FakeOpener):
        gate = fake_http.add_gated(ARTIFACT_URL, _archive())
        seen: list[float] = []
        done = threading.Event()

        task = _task(record, library_dir, store, fake_http, chunk_size=8)
        task.on_progress(seen.append)
        task.on_finish(lambda outcome: done.set())
        gate.set()
        assert done.wait(5)

        assert seen
        assert seen == sorted(seen)
        assert all(0.0 <= p <= 1.0 for p in seen)
        assert seen[-1] == 1.0
        assert task.progress == 1.0

    def test_unknown_length_reports_none(self, record, library_dir, store, fake_http: FakeOpener):
        gate = fake_http.add_gated(ARTIFACT_URL, _archive(), headers={})
        seen = []

        task = _task(record, library_dir, store, fake_http)
        assert task.progress is None
        task.on_progress(seen.append)
        gate.set()
        task.wait(5)

        assert task.state == DownloadState.SUCCEEDED
        assert None in seen
        assert all(p is None for p in seen)

    def test_late_finish_observer_gets_outcome(self, record, library_dir, store, fake_http: FakeOpener):
        fake_http.add(ARTIFACT_URL, _archive())
        task = _task(record, library_dir, store, fake_http)
        task.wait(5)

        outcomes = []
        task.on_finish(outcomes.append)
        assert len(outcomes) == 1
        assert outcomes[0].success

    def test_registration_happens_before_completion(self, record, library_dir, store, fake_http: FakeOpener):
        fake_http.add(ARTIFACT_URL, _archive())
        registered = []
        done = threading.Event()

        def _on_finish(outcome):
            registered.append(store.contains(record.id))
            done.set()

        task = _task(record, library_dir, store, fake_http)
        task.on_finish(_on_finish)
        assert done.wait(5)
        assert registered == [True]


class TestFailure:
    def test_connect_failure_never_starts(self, record, library_dir, store, fake_http: FakeOpener):
        fake_http.add_error(ARTIFACT_URL, urllib.error.URLError("unreachable"))

        task = _task(record, library_dir, store, fake_http)

        assert task.state == DownloadState.FAILED
        assert task.wait(0) is True
        assert isinstance(task.outcome.error, NetworkUnreachable)
        assert task.outcome.error_kind == "network_unreachable"
        assert not store.contains(record.id)

    def test_connect_failure_outcome_replayed(self, record, library_dir, store, fake_http: FakeOpener):
        fake_http.add(ARTIFACT_URL, b"", status=404)
        task = _task(record, library_dir, store, fake_http)

        outcomes = []
        task.on_finish(outcomes.append)
        assert len(outcomes) == 1
        assert not outcomes[0].success

    def test_corrupt_archive(self, record, library_dir, store, fake_http: FakeOpener):
        fake_http.add(ARTIFACT_URL, b"this is not an archive at all")
        outcomes = []

        task = _task(record, library_dir, store, fake_http)
        task.on_finish(outcomes.append)
        task.wait(5)

        assert task.state == DownloadState.FAILED
        assert isinstance(outcomes[0].error, ArchiveCorrupt)
        assert outcomes[0].error_kind == "archive_corrupt"
        assert not store.contains(record.id)


class TestCancel:
    def test_cancel_mid_transfer(self, record, library_dir, store, fake_http: FakeOpener):
        gate = fake_http.add_gated(ARTIFACT_URL, _archive())
        outcomes = []
        cancelled = []

        task = _task(record, library_dir, store, fake_http, chunk_size=4)
        task.on_finish(outcomes.append)
        task.on_cancel(lambda: cancelled.append(True))
        assert task.cancel() is True
        gate.set()
        assert task.wait(5)

        assert task.state == DownloadState.CANCELLED
        assert outcomes == []
        assert cancelled == [True]
        assert not store.contains(record.id)
        assert not (library_dir / "cyclone").exists()

    def test_late_cancel_observer_replayed(self, record, library_dir, store, fake_http: FakeOpener):
        gate = fake_http.add_gated(ARTIFACT_URL, _archive())
        task = _task(record, library_dir, store, fake_http, chunk_size=4)
        task.cancel()
        gate.set()
        task.wait(5)

        cancelled = []
        task.on_cancel(lambda: cancelled.append(True))
        assert cancelled == [True]

    def test_cancel_refused_once_transferred(self, record, library_dir, store, fake_http: FakeOpener, monkeypatch):
        extracting = threading.Event()
        release = threading.Event()

        def _blocking_extract(data, target_dir):
            extracting.set()
            release.wait(5)
            return extract_archive(data, target_dir)

        monkeypatch.setattr("deken.core.services.download_task.extract_archive", _blocking_extract)
        fake_http.add(ARTIFACT_URL, _archive())
        outcomes = []
        cancelled = []

        task = _task(record, library_dir, store, fake_http)
        task.on_finish(outcomes.append)
        task.on_cancel(lambda: cancelled.append(True))
        assert extracting.wait(5)

        assert task.cancel() is False
        release.set()
        assert task.wait(5)

        assert task.state == DownloadState.SUCCEEDED
        assert [o.success for o in outcomes] == [True]
        assert cancelled == []
        assert store.contains(record.id)

    def test_cancel_after_finish_is_noop(self, record, library_dir, store, fake_http: FakeOpener):
        fake_http.add(ARTIFACT_URL, _archive())
        task = _task(record, library_dir, store, fake_http)
        task.wait(5)

        assert task.cancel() is False
        assert task.state == DownloadState.SUCCEEDED


class TestExtractArchive:
    def test_rejects_garbage(self, tmp_path: Path):
        with pytest.raises(ArchiveCorrupt):
            extract_archive(b"\x00\x01garbage", tmp_path)

    def test_returns_member_names(self, tmp_path: Path):
        names = extract_archive(make_zip({"lib/a.pd": b"a", "lib/b.pd": b"b"}), tmp_path)
        assert sorted(names) == ["lib/a.pd", "lib/b.pd"]
        assert (tmp_path / "lib" / "a.pd").read_bytes() == b"a"
