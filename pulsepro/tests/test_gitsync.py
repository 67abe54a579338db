from __future__ import annotations

import subprocess
import threading
import time
from pathlib import Path
from typing import Any
from unittest.mock import patch

import pytest

from pulsepro.src.errors import CommandError, NotARepositoryError, SyncError
from pulsepro.src.gitsync import RepositorySync

REPO_URL = "https://github.com/example/gitops-config.git"


def _completed(
    returncode: int = 0, stdout: str = "", stderr: str = ""
) -> subprocess.CompletedProcess[str]:
    return subprocess.CompletedProcess(
        args=["git"], returncode=returncode, stdout=stdout, stderr=stderr
    )


def test_working_copy_path_is_stable_and_readable(tmp_path: Path) -> None:
    sync = RepositorySync(repo_root=tmp_path)

    first = sync.working_copy_path(REPO_URL)
    second = sync.working_copy_path(REPO_URL)

    assert first == second
    assert first.parent == tmp_path
    assert first.name.startswith("gitops-config-")


def test_working_copy_path_differs_per_url(tmp_path: Path) -> None:
    sync = RepositorySync(repo_root=tmp_path)

    assert sync.working_copy_path(REPO_URL) != sync.working_copy_path(
        "https://github.com/other/gitops-config.git"
    )


def test_sync_clones_when_working_copy_missing(tmp_path: Path) -> None:
    sync = RepositorySync(repo_root=tmp_path, timeout_seconds=30)
    local_path = tmp_path / "nested" / "checkout"

    with patch("pulsepro.src.gitsync.run_command", return_value=_completed()) as mock_run:
        sync.sync(REPO_URL, local_path)

    mock_run.assert_called_once()
    args = mock_run.call_args.args[0]
    assert args == ["git", "clone", REPO_URL, str(local_path)]
    assert mock_run.call_args.kwargs["timeout"] == 30
    assert local_path.parent.is_dir()


def test_sync_pulls_existing_working_copy(tmp_path: Path) -> None:
    local_path = tmp_path / "checkout"
    (local_path / ".git").mkdir(parents=True)
    sync = RepositorySync(repo_root=tmp_path)

    with patch(
        "pulsepro.src.gitsync.run_command",
        return_value=_completed(stdout="Already up to date.\n"),
    ) as mock_run:
        sync.sync(REPO_URL, local_path)

    args = mock_run.call_args.args[0]
    assert args == ["git", "pull", "--ff-only", "origin"]
    assert mock_run.call_args.kwargs["cwd"] == local_path


def test_sync_rejects_directory_without_git_metadata(tmp_path: Path) -> None:
    local_path = tmp_path / "checkout"
    local_path.mkdir()
    sync = RepositorySync(repo_root=tmp_path)

    with (
        patch("pulsepro.src.gitsync.run_command") as mock_run,
        pytest.raises(NotARepositoryError, match="does not have a .git directory"),
    ):
        sync.sync(REPO_URL, local_path)

    mock_run.assert_not_called()


def test_sync_raises_sync_error_on_git_failure(tmp_path: Path) -> None:
    sync = RepositorySync(repo_root=tmp_path)

    with (
        patch(
            "pulsepro.src.gitsync.run_command",
            return_value=_completed(returncode=128, stderr="fatal: repository not found"),
        ),
        pytest.raises(SyncError, match="repository not found"),
    ):
        sync.sync(REPO_URL, tmp_path / "checkout")


def test_sync_wraps_missing_git_binary(tmp_path: Path) -> None:
    sync = RepositorySync(repo_root=tmp_path)

    with (
        patch(
            "pulsepro.src.gitsync.run_command",
            side_effect=CommandError("git is not installed or not on PATH"),
        ),
        pytest.raises(SyncError, match="not installed"),
    ):
        sync.sync(REPO_URL, tmp_path / "checkout")


def test_sync_requires_repository_url(tmp_path: Path) -> None:
    with pytest.raises(SyncError, match="gitRepoURL"):
        RepositorySync(repo_root=tmp_path).sync("", tmp_path / "checkout")


def test_sync_second_call_pulls_after_clone(tmp_path: Path) -> None:
    local_path = tmp_path / "checkout"
    calls: list[list[str]] = []

    def fake_run(args: list[str], **kwargs: Any) -> subprocess.CompletedProcess[str]:
        calls.append(list(args))
        if args[1] == "clone":
            (local_path / ".git").mkdir(parents=True)
        return _completed()

    sync = RepositorySync(repo_root=tmp_path)
    with patch("pulsepro.src.gitsync.run_command", side_effect=fake_run):
        sync.sync(REPO_URL, local_path)
        sync.sync(REPO_URL, local_path)

    assert [call[1] for call in calls] == ["clone", "pull"]


class TrackingGit:
    """Stand-in for ``run_command`` that records how many git calls overlap."""

    def __init__(self, barrier: threading.Barrier | None = None) -> None:
        self.barrier = barrier
        self.active = 0
        self.max_active = 0
        self.cwds: list[Path | None] = []
        self.entered = threading.Event()
        self.release = threading.Event()
        self._lock = threading.Lock()

    def __call__(self, args: list[str], **kwargs: Any) -> subprocess.CompletedProcess[str]:
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
            self.cwds.append(kwargs.get("cwd"))
        self.entered.set()
        try:
            if self.barrier is not None:
                self.barrier.wait()
            else:
                self.release.wait(timeout=5)
        finally:
            with self._lock:
                self.active -= 1
        return _completed(stdout="Already up to date.\n")


def _sync_in_threads(
    sync: RepositorySync, paths: list[Path]
) -> tuple[list[threading.Thread], list[BaseException]]:
    errors: list[BaseException] = []

    def worker(path: Path) -> None:
        try:
            sync.sync(REPO_URL, path)
        except Exception as exc:
            errors.append(exc)

    threads = [threading.Thread(target=worker, args=(path,), daemon=True) for path in paths]
    for thread in threads:
        thread.start()
    return threads, errors


def test_sync_serialises_git_for_the_same_working_copy(tmp_path: Path) -> None:
    local_path = tmp_path / "checkout"
    (local_path / ".git").mkdir(parents=True)
    sync = RepositorySync(repo_root=tmp_path)
    git = TrackingGit()

    with patch("pulsepro.src.gitsync.run_command", new=git):
        threads, errors = _sync_in_threads(sync, [local_path, local_path])
        assert git.entered.wait(timeout=5)
        time.sleep(0.1)
        assert len(git.cwds) == 1
        git.release.set()
        for thread in threads:
            thread.join(timeout=5)

    assert errors == []
    assert git.max_active == 1
    assert git.cwds == [local_path, local_path]


def test_sync_runs_git_concurrently_for_different_working_copies(tmp_path: Path) -> None:
    first = tmp_path / "first"
    second = tmp_path / "second"
    for path in (first, second):
        (path / ".git").mkdir(parents=True)
    sync = RepositorySync(repo_root=tmp_path)
    # Each call waits for the other, so serialised git would break the barrier.
    git = TrackingGit(barrier=threading.Barrier(2, timeout=5))

    with patch("pulsepro.src.gitsync.run_command", new=git):
        threads, errors = _sync_in_threads(sync, [first, second])
        for thread in threads:
            thread.join(timeout=10)

    assert errors == []
    assert git.max_active == 2
    assert sorted(git.cwds) == [first, second]
