"""Deploy target that runs each instance as a local process."""
from __future__ import annotations

import json
import logging
import os
import shlex
import shutil
import signal
import socket
import subprocess
import threading
import time
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

import httpx

from ..archive import extract_tarball
from ..config import Settings
from ..errors import DefinitionError
from ..models import Artifact, utcnow
from .base import DeployTarget, InstanceHandle

LOGGER = logging.getLogger("conveyor.deploy.process")

HANDLE_FILE = "instance.json"


class ProcessDeployTarget(DeployTarget):
    """
    Unpack the artifact and launch ``command`` inside it with a free ``PORT``.

    Handles are written to ``instance.json`` next to the unpacked tree, so a
    second process (the CLI, a restarted server) can list and stop instances
    it did not start itself.
    """

    def __init__(
        self,
        instances_dir: Path,
        command: Union[str, Sequence[str]],
        readiness_url: Optional[str] = None,
        readiness_command: Union[str, Sequence[str], None] = None,
        env: Optional[Dict[str, str]] = None,
        probe_timeout: float = 2.0,
        stop_timeout: float = 10.0,
    ) -> None:
        self._instances_dir = Path(instances_dir)
        self._instances_dir.mkdir(parents=True, exist_ok=True)
        self._command = _as_argv(command)
        if not self._command:
            raise DefinitionError("process deploy target requires a command")
        self._readiness_url = readiness_url
        self._readiness_command = _as_argv(readiness_command) if readiness_command else None
        self._env = {key: str(value) for key, value in (env or {}).items()}
        self._probe_timeout = probe_timeout
        self._stop_timeout = stop_timeout
        self._processes: Dict[str, subprocess.Popen] = {}
        self._lock = threading.Lock()

    def start_instance(self, slot_id: str, artifact: Artifact) -> InstanceHandle:
        if artifact.blob_path is None:
            raise FileNotFoundError(f"Artifact {artifact.digest} has no blob on disk")
        instance_id = f"{utcnow():%Y%m%d%H%M%S}-{uuid.uuid4().hex[:8]}"
        workdir = self._instances_dir / slot_id / instance_id
        app_dir = workdir / "app"
        extract_tarball(artifact.blob_path, app_dir)

        port = _free_port()
        env = self._environment(slot_id, artifact.digest, port)
        argv = [part.replace("{port}", str(port)) for part in self._command]
        with (workdir / "instance.log").open("ab") as log:
            process = subprocess.Popen(
                argv,
                cwd=app_dir,
                env=env,
                stdout=log,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
        with self._lock:
            self._processes[instance_id] = process

        handle = InstanceHandle(
            slot_id=slot_id,
            instance_id=instance_id,
            digest=artifact.digest,
            pid=process.pid,
            port=port,
            workdir=workdir,
            metadata={"command": argv, "started_at": utcnow().isoformat()},
        )
        (workdir / HANDLE_FILE).write_text(json.dumps(handle.to_dict(), indent=2), encoding="utf-8")
        LOGGER.info("Started instance %s (pid %s, port %s) in slot %s", instance_id, process.pid, port, slot_id)
        return handle

    def readiness_check(self, handle: InstanceHandle) -> bool:
        if not self._alive(handle):
            return False
        if self._readiness_url:
            url = self._readiness_url.replace("{port}", str(handle.port))
            try:
                response = httpx.get(url, timeout=self._probe_timeout)
            except httpx.HTTPError as exc:
                LOGGER.debug("Readiness probe %s failed: %s", url, exc)
                return False
            return 200 <= response.status_code < 400
        if self._readiness_command:
            env = self._environment(handle.slot_id, handle.digest, handle.port or 0)
            cwd = handle.workdir / "app" if handle.workdir else None
            try:
                completed = subprocess.run(
                    self._readiness_command,
                    cwd=cwd,
                    env=env,
                    capture_output=True,
                    timeout=self._probe_timeout,
                )
            except (subprocess.TimeoutExpired, OSError) as exc:
                LOGGER.debug("Readiness command failed: %s", exc)
                return False
            return completed.returncode == 0
        return True

    def stop_instance(self, handle: InstanceHandle) -> None:
        with self._lock:
            process = self._processes.pop(handle.instance_id, None)
        if process is not None:
            if process.poll() is None:
                process.terminate()
                try:
                    process.wait(timeout=self._stop_timeout)
                except subprocess.TimeoutExpired:
                    process.kill()
                    process.wait()
        elif handle.pid and _pid_alive(handle.pid):
            self._signal_external(handle.pid)
        if handle.workdir and handle.workdir.exists():
            shutil.rmtree(handle.workdir)
        LOGGER.info("Stopped instance %s in slot %s", handle.instance_id, handle.slot_id)

    def list_instances(self, slot_id: str) -> List[InstanceHandle]:
        slot_dir = self._instances_dir / slot_id
        if not slot_dir.is_dir():
            return []
        handles = []
        for marker in sorted(slot_dir.glob(f"*/{HANDLE_FILE}")):
            handle = InstanceHandle.from_dict(json.loads(marker.read_text(encoding="utf-8")))
            if self._alive(handle):
                handles.append(handle)
        return handles

    def _alive(self, handle: InstanceHandle) -> bool:
        with self._lock:
            process = self._processes.get(handle.instance_id)
        if process is not None:
            return process.poll() is None
        return bool(handle.pid) and _pid_alive(handle.pid)

    def _environment(self, slot_id: str, digest: str, port: int) -> Dict[str, str]:
        env = dict(os.environ)
        env.update(self._env)
        env.update({"PORT": str(port), "CONVEYOR_SLOT": slot_id, "CONVEYOR_DIGEST": digest})
        return env

    def _signal_external(self, pid: int) -> None:
        os.kill(pid, signal.SIGTERM)
        deadline = time.monotonic() + self._stop_timeout
        while time.monotonic() < deadline:
            if not _pid_alive(pid):
                return
            time.sleep(0.1)
        if _pid_alive(pid):
            os.kill(pid, signal.SIGKILL)


def _as_argv(command: Union[str, Sequence[str], None]) -> List[str]:
    if command is None:
        return []
    if isinstance(command, str):
        return shlex.split(command)
    return [str(part) for part in command]


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def build_deploy_target(parameters: Dict[str, Any], settings: Settings) -> DeployTarget:
    """Create the deploy target described by a deploy stage's ``target`` block."""
    kind = parameters.get("kind", "process")
    if kind != "process":
        raise DefinitionError(f"Unknown deploy target kind {kind!r}")
    if "command" not in parameters:
        raise DefinitionError("process deploy target requires a command")
    return ProcessDeployTarget(
        settings.paths.data_dir / "instances",
        command=parameters["command"],
        readiness_url=parameters.get("readiness_url"),
        readiness_command=parameters.get("readiness_command"),
        env=parameters.get("env"),
        probe_timeout=float(parameters.get("probe_timeout_seconds", 2.0)),
        stop_timeout=float(parameters.get("stop_timeout_seconds", 10.0)),
    )


__all__ = ["ProcessDeployTarget", "build_deploy_target"]
