"""Image builder: run a recipe against a snapshot in a disposable build root."""
from __future__ import annotations

import hashlib
import logging
import os
import tempfile
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from .archive import copy_tree, hash_tree, replace_tree, write_tarball
from .config import SandboxPolicy
from .errors import BuildError, RunAborted
from .models import RecipeStep
from .sandbox import CommandRunner
from .source import Snapshot

LOGGER = logging.getLogger("conveyor.builder")

BASE_LAYER_KEY = hashlib.sha256(b"conveyor/base-layer/v1").hexdigest()


@dataclass
class BuildOutput:
    """Artifact tarball produced by a successful build."""

    digest: str
    size_bytes: int
    path: Path
    layer_keys: List[str] = field(default_factory=list)
    cached_steps: List[int] = field(default_factory=list)
    duration_seconds: float = 0.0


class LayerCache:
    """Layer tarballs keyed by ``sha256(parent key, step definition, copied content)``."""

    def __init__(self, cache_dir: Path) -> None:
        self._cache_dir = Path(cache_dir)
        self._cache_dir.mkdir(parents=True, exist_ok=True)

    def get(self, key: str) -> Optional[Path]:
        path = self._path(key)
        return path if path.exists() else None

    def put(self, key: str, root: Path) -> Path:
        path = self._path(key)
        if path.exists():
            return path
        fd, tmp_name = tempfile.mkstemp(prefix=".layer-", suffix=".tar.gz", dir=self._cache_dir)
        os.close(fd)
        tmp_path = Path(tmp_name)
        try:
            write_tarball(root, tmp_path)
            os.replace(tmp_path, path)
        finally:
            if tmp_path.exists():
                tmp_path.unlink()
        return path

    def _path(self, key: str) -> Path:
        return self._cache_dir / f"{key}.tar.gz"


class ImageBuilder:
    """
    Turns a snapshot plus a recipe into an immutable, content-addressed tarball.

    Every step runs in a temporary build root that is discarded whatever the
    outcome, so a failing step can never leave a half-built artifact behind.
    Steps whose layer key is already cached are restored instead of executed.
    """

    def __init__(self, cache: LayerCache, policy: Optional[SandboxPolicy] = None) -> None:
        self._cache = cache
        self._policy = policy or SandboxPolicy()

    def build(
        self,
        snapshot: Snapshot,
        recipe: Sequence[RecipeStep],
        *,
        output_path: Path,
        logs_dir: Path,
        abort: Optional[threading.Event] = None,
        step_timeout: Optional[float] = None,
    ) -> BuildOutput:
        started = time.monotonic()
        runner = CommandRunner(logs_dir, policy=self._policy)
        env: Dict[str, str] = {}
        key = BASE_LAYER_KEY
        layer_keys: List[str] = []
        cached_steps: List[int] = []

        with tempfile.TemporaryDirectory(prefix="conveyor-build-") as tmpdir:
            root = Path(tmpdir) / "root"
            root.mkdir()
            pending_restore: Optional[Path] = None

            for index, step in enumerate(recipe):
                if abort is not None and abort.is_set():
                    raise RunAborted(f"Build aborted before step {index}")
                key = self._layer_key(key, step, snapshot, index)
                layer_keys.append(key)
                if step.kind == "env":
                    env[step.name or ""] = step.value or ""
                    continue

                cached = self._cache.get(key)
                if cached is not None:
                    LOGGER.debug("Step %s cache hit (%s)", index, key[:12])
                    cached_steps.append(index)
                    pending_restore = cached
                    continue

                if pending_restore is not None:
                    replace_tree(pending_restore, root)
                    pending_restore = None
                self._execute(index, step, snapshot, root, runner, env, abort, step_timeout)
                self._cache.put(key, root)

            if pending_restore is not None:
                replace_tree(pending_restore, root)

            output_path = Path(output_path)
            output_path.parent.mkdir(parents=True, exist_ok=True)
            staging = output_path.with_name(f".{output_path.name}.partial")
            digest, size = write_tarball(root, staging)
            os.replace(staging, output_path)

        duration = time.monotonic() - started
        LOGGER.info(
            "Built %s (%d bytes, %d/%d steps cached) in %.2fs",
            digest[:19],
            size,
            len(cached_steps),
            len(recipe),
            duration,
        )
        return BuildOutput(
            digest=digest,
            size_bytes=size,
            path=output_path,
            layer_keys=layer_keys,
            cached_steps=cached_steps,
            duration_seconds=duration,
        )

    def _execute(
        self,
        index: int,
        step: RecipeStep,
        snapshot: Snapshot,
        root: Path,
        runner: CommandRunner,
        env: Dict[str, str],
        abort: Optional[threading.Event],
        step_timeout: Optional[float],
    ) -> None:
        if step.kind == "copy":
            source = _contained(snapshot.path, step.source, index)
            destination = _contained(root, step.destination, index)
            if not source.exists():
                raise BuildError(f"copy source {step.source!r} does not exist", step_index=index, exit_code=1)
            if source.is_file() and (step.destination.endswith("/") or destination.is_dir()):
                destination = destination / source.name
            copy_tree(source, destination)
            return

        result = runner.run(step.command or [], cwd=root, env=env, timeout=step_timeout, cancel=abort)
        if result.reason == "cancelled":
            raise RunAborted(f"Build step {index} cancelled")
        if not result.succeeded:
            raise BuildError(
                f"step {index} ({' '.join(step.command or [])}) exited with {result.return_code}",
                step_index=index,
                exit_code=result.return_code,
                log_tail=result.tail(),
            )

    @staticmethod
    def _layer_key(parent: str, step: RecipeStep, snapshot: Snapshot, index: int) -> str:
        digest = hashlib.sha256()
        digest.update(parent.encode("utf-8"))
        digest.update(step.canonical().encode("utf-8"))
        if step.kind == "copy":
            source = _contained(snapshot.path, step.source, index)
            content = hash_tree(source) if source.is_dir() else _file_digest(source)
            digest.update(content.encode("utf-8"))
        return digest.hexdigest()


def _contained(base: Path, relative: str, index: int) -> Path:
    base = Path(base).resolve()
    candidate = (base / relative).resolve()
    if candidate != base and base not in candidate.parents:
        raise BuildError(f"path {relative!r} escapes the build context", step_index=index, exit_code=1)
    return candidate


def _file_digest(path: Path) -> str:
    if not path.exists():
        return "missing"
    return hashlib.sha256(path.read_bytes()).hexdigest()


__all__ = ["BuildOutput", "ImageBuilder", "LayerCache"]
