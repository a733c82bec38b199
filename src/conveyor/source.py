"""Source providers: resolve the latest revision and materialise snapshots."""
from __future__ import annotations

import abc
import logging
import shutil
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from .archive import copy_tree, extract_tarball, hash_tree
from .config import Settings
from .errors import RevisionNotFound, SourceUnavailable
from .models import Revision, SourceSpec, utcnow
from .sandbox import CommandRunner

LOGGER = logging.getLogger("conveyor.source")


@dataclass
class Snapshot:
    """Read-only checkout of one revision."""

    revision_id: str
    path: Path


class SourceProvider(abc.ABC):
    """Contract implemented by every source provider."""

    @abc.abstractmethod
    def latest_revision(self, pipeline: str) -> Revision:
        """Return the newest revision, raising :class:`SourceUnavailable` on transient errors."""

    @abc.abstractmethod
    def fetch_snapshot(self, revision_id: str) -> Snapshot:
        """Materialise *revision_id*, raising :class:`RevisionNotFound` if it is gone."""


class DirectorySourceProvider(SourceProvider):
    """
    Treat a plain directory as a repository.

    The revision id is the tree's content hash. The tree is copied into the
    snapshot store when a revision is first observed, so fetching an id later
    returns exactly what was hashed even if the directory has moved on.
    """

    def __init__(self, location: Path, snapshots_dir: Path) -> None:
        self._location = Path(location)
        self._snapshots_dir = Path(snapshots_dir)
        self._snapshots_dir.mkdir(parents=True, exist_ok=True)
        self._last: Optional[Revision] = None

    def latest_revision(self, pipeline: str) -> Revision:
        if not self._location.is_dir():
            raise SourceUnavailable(f"Source directory {self._location} is not available")
        digest = hash_tree(self._location)
        revision_id = digest.split(":", 1)[1][:40]
        if self._last is not None and self._last.id == revision_id:
            return self._last
        target = self._snapshot_path(revision_id)
        if not target.exists():
            self._capture(target)
        revision = Revision(id=revision_id, timestamp=utcnow(), parent_id=self._last.id if self._last else None)
        self._last = revision
        return revision

    def fetch_snapshot(self, revision_id: str) -> Snapshot:
        target = self._snapshot_path(revision_id)
        if not target.is_dir():
            raise RevisionNotFound(f"Revision {revision_id} was never captured from {self._location}")
        return Snapshot(revision_id=revision_id, path=target)

    def _capture(self, target: Path) -> None:
        staging = Path(tempfile.mkdtemp(prefix=".capture-", dir=self._snapshots_dir))
        try:
            copy_tree(self._location, staging)
            staging.rename(target)
        except FileExistsError:
            shutil.rmtree(staging, ignore_errors=True)
        except OSError as exc:
            shutil.rmtree(staging, ignore_errors=True)
            raise SourceUnavailable(f"Could not snapshot {self._location}: {exc}") from exc

    def _snapshot_path(self, revision_id: str) -> Path:
        return self._snapshots_dir / revision_id


class GitSourceProvider(SourceProvider):
    """Resolve revisions of one branch of a git repository via the git CLI."""

    def __init__(self, location: str, branch: str, snapshots_dir: Path, runner: CommandRunner) -> None:
        self._location = location
        self._branch = branch
        self._snapshots_dir = Path(snapshots_dir)
        self._snapshots_dir.mkdir(parents=True, exist_ok=True)
        self._runner = runner

    def latest_revision(self, pipeline: str) -> Revision:
        self._fetch()
        resolved = self._git("rev-parse", "--verify", f"{self._branch}^{{commit}}")
        if not resolved.succeeded:
            raise SourceUnavailable(
                f"Could not resolve branch {self._branch} in {self._location}: {resolved.tail(5)}"
            )
        revision_id = resolved.stdout.strip()
        details = self._git("log", "-1", "--format=%ct %P", revision_id)
        timestamp = utcnow()
        parent_id = None
        if details.succeeded and details.stdout.strip():
            parts = details.stdout.split()
            timestamp = datetime.fromtimestamp(int(parts[0]), tz=timezone.utc)
            parent_id = parts[1] if len(parts) > 1 else None
        return Revision(id=revision_id, timestamp=timestamp, parent_id=parent_id)

    def fetch_snapshot(self, revision_id: str) -> Snapshot:
        target = self._snapshots_dir / revision_id
        if target.is_dir():
            return Snapshot(revision_id=revision_id, path=target)
        exists = self._git("cat-file", "-e", f"{revision_id}^{{commit}}")
        if exists.reason == "missing-executable":
            raise SourceUnavailable("git executable is not available")
        if not exists.succeeded:
            raise RevisionNotFound(f"Revision {revision_id} no longer exists in {self._location}")

        with tempfile.TemporaryDirectory(dir=self._snapshots_dir) as tmpdir:
            archive_path = Path(tmpdir) / "source.tar.gz"
            archived = self._git("archive", "--format=tar.gz", "-o", str(archive_path), revision_id)
            if not archived.succeeded:
                raise SourceUnavailable(f"git archive failed for {revision_id}: {archived.tail(5)}")
            staging = Path(tmpdir) / "tree"
            extract_tarball(archive_path, staging)
            try:
                staging.rename(target)
            except OSError:
                if not target.is_dir():
                    raise
        LOGGER.info("Materialised revision %s at %s", revision_id[:12], target)
        return Snapshot(revision_id=revision_id, path=target)

    def _fetch(self) -> None:
        # Local working copies need no fetch; remotes are updated in a bare mirror.
        if not self._is_remote:
            return
        mirror = self._mirror_path
        if not mirror.exists():
            cloned = self._runner.run(
                ["git", "clone", "--mirror", self._location, str(mirror)], cwd=self._snapshots_dir, timeout=300
            )
            if not cloned.succeeded:
                raise SourceUnavailable(f"git clone of {self._location} failed: {cloned.tail(5)}")
            return
        fetched = self._runner.run(["git", "remote", "update", "--prune"], cwd=mirror, timeout=300)
        if not fetched.succeeded:
            raise SourceUnavailable(f"git fetch of {self._location} failed: {fetched.tail(5)}")

    @property
    def _is_remote(self) -> bool:
        return "://" in self._location or self._location.startswith("git@")

    @property
    def _mirror_path(self) -> Path:
        return self._snapshots_dir / ".mirror.git"

    def _git(self, *args: str):
        cwd = self._mirror_path if self._is_remote else Path(self._location)
        if not cwd.exists():
            raise SourceUnavailable(f"Repository {self._location} is not available")
        return self._runner.run(["git", *args], cwd=cwd, timeout=120)


def build_source_provider(spec: SourceSpec, pipeline: str, settings: Settings) -> SourceProvider:
    """Factory returning the provider configured by a pipeline's ``source`` block."""
    snapshots_dir = settings.paths.data_dir / "snapshots" / pipeline
    if spec.kind == "git":
        runner = CommandRunner(settings.paths.data_dir / "logs" / "source" / pipeline, policy=settings.sandbox)
        return GitSourceProvider(spec.location, spec.branch, snapshots_dir, runner)
    return DirectorySourceProvider(Path(spec.location), snapshots_dir)


__all__ = [
    "DirectorySourceProvider",
    "GitSourceProvider",
    "Snapshot",
    "SourceProvider",
    "build_source_provider",
]
