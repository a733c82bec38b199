import shutil
import subprocess
from pathlib import Path

import pytest

from conveyor.errors import RevisionNotFound, SourceUnavailable
from conveyor.sandbox import CommandRunner
from conveyor.source import DirectorySourceProvider, GitSourceProvider


def test_directory_revision_is_stable_until_content_changes(tmp_path: Path):
    repo = tmp_path / "repo"
    repo.mkdir()
    (repo / "main.txt").write_text("one\n", encoding="utf-8")
    provider = DirectorySourceProvider(repo, tmp_path / "snapshots")

    first = provider.latest_revision("demo")
    assert provider.latest_revision("demo").id == first.id

    (repo / "main.txt").write_text("two\n", encoding="utf-8")
    second = provider.latest_revision("demo")
    assert second.id != first.id
    assert second.parent_id == first.id


def test_directory_snapshot_is_frozen_at_observation(tmp_path: Path):
    repo = tmp_path / "repo"
    repo.mkdir()
    (repo / "main.txt").write_text("one\n", encoding="utf-8")
    provider = DirectorySourceProvider(repo, tmp_path / "snapshots")
    revision = provider.latest_revision("demo")

    (repo / "main.txt").write_text("changed\n", encoding="utf-8")
    snapshot = provider.fetch_snapshot(revision.id)

    assert (snapshot.path / "main.txt").read_text(encoding="utf-8") == "one\n"


def test_directory_errors(tmp_path: Path):
    provider = DirectorySourceProvider(tmp_path / "missing", tmp_path / "snapshots")
    with pytest.raises(SourceUnavailable):
        provider.latest_revision("demo")
    with pytest.raises(RevisionNotFound):
        provider.fetch_snapshot("deadbeef")


@pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")
def test_git_provider_reads_branch_head(tmp_path: Path):
    repo = tmp_path / "repo"
    repo.mkdir()

    def git(*args):
        subprocess.run(
            ["git", "-c", "user.name=ci", "-c", "user.email=ci@example.com", *args],
            cwd=repo,
            check=True,
            capture_output=True,
        )

    git("init", "-b", "main")
    (repo / "app.txt").write_text("v1\n", encoding="utf-8")
    git("add", "app.txt")
    git("commit", "-m", "first")

    provider = GitSourceProvider(str(repo), "main", tmp_path / "snapshots", CommandRunner(tmp_path / "logs"))
    revision = provider.latest_revision("demo")
    snapshot = provider.fetch_snapshot(revision.id)

    assert len(revision.id) == 40
    assert (snapshot.path / "app.txt").read_text(encoding="utf-8") == "v1\n"
    with pytest.raises(RevisionNotFound):
        provider.fetch_snapshot("0" * 40)
