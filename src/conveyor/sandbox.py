from __future__ import annotations

import os
import re
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from shutil import which
from typing import Dict, Iterable, List, Optional

from .config import SandboxPolicy


PACKAGE_INSTALL_PREFIXES = [
    ("pip", "install"),
    ("python", "-m", "pip", "install"),
    ("npm", "install"),
    ("apt-get", "install"),
]

TIMEOUT_RETURN_CODE = 124
CANCELLED_RETURN_CODE = 130
MISSING_EXECUTABLE_RETURN_CODE = 127
_POLL_SECONDS = 0.2
_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass
class CommandResult:
    command: List[str]
    cwd: Path
    return_code: int
    stdout: str
    stderr: str
    skipped: bool = False
    log_path: Optional[Path] = None
    reason: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.return_code == 0 and not self.skipped

    def tail(self, lines: int = 20) -> str:
        text = "\n".join(part for part in (self.stdout, self.stderr) if part)
        return "\n".join(text.splitlines()[-lines:])


class CommandRunner:
    """
    Command runner used by build and shell stages.

    Commands run with the given working directory, an optional timeout and an
    optional cancel event; output is captured and persisted per command under
    ``logs_dir``. Blocked or missing commands are reported, never raised.
    """

    def __init__(self, logs_dir: Path, policy: Optional[SandboxPolicy] = None, dry_run: bool = False) -> None:
        self._logs_dir = Path(logs_dir)
        self._policy = policy or SandboxPolicy()
        self._dry_run = dry_run
        self._logs_dir.mkdir(parents=True, exist_ok=True)
        self._counter = len(list(self._logs_dir.glob("*.log")))
        self._counter_lock = threading.Lock()

    @property
    def logs_dir(self) -> Path:
        return self._logs_dir

    def run(
        self,
        command: Iterable[str],
        cwd: Path,
        env: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> CommandResult:
        command_list = list(command)
        cwd = Path(cwd)
        log_path = self._create_log_path(command_list)

        skip_reason = self._skip_reason(command_list, cwd)
        if skip_reason:
            log_path.write_text(
                f"[skipped:{skip_reason}] command not executed: {' '.join(command_list)}\n",
                encoding="utf-8",
            )
            return_code = MISSING_EXECUTABLE_RETURN_CODE if skip_reason == "missing-executable" else 1
            return CommandResult(
                command=command_list,
                cwd=cwd,
                return_code=return_code,
                stdout="",
                stderr=skip_reason,
                skipped=True,
                log_path=log_path,
                reason=skip_reason,
            )

        if self._dry_run:
            log_path.write_text(f"[dry-run] command skipped: {' '.join(command_list)}\n", encoding="utf-8")
            return CommandResult(
                command=command_list,
                cwd=cwd,
                return_code=0,
                stdout="",
                stderr="",
                skipped=True,
                log_path=log_path,
                reason="dry-run",
            )

        full_env = dict(os.environ)
        if env:
            full_env.update(env)
        try:
            process = subprocess.Popen(
                command_list,
                cwd=cwd,
                env=full_env,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
            )
        except FileNotFoundError as exc:
            log_path.write_text(
                f"[missing-executable] command failed: {' '.join(command_list)}\n{exc}\n",
                encoding="utf-8",
            )
            return CommandResult(
                command=command_list,
                cwd=cwd,
                return_code=MISSING_EXECUTABLE_RETURN_CODE,
                stdout="",
                stderr=str(exc),
                skipped=True,
                log_path=log_path,
                reason="missing-executable",
            )
        except OSError as exc:
            log_path.write_text(f"[os-error] command failed: {' '.join(command_list)}\n{exc}\n", encoding="utf-8")
            return CommandResult(
                command=command_list,
                cwd=cwd,
                return_code=getattr(exc, "errno", 1) or 1,
                stdout="",
                stderr=str(exc),
                log_path=log_path,
                reason="os-error",
            )

        stdout, stderr, return_code, reason = self._wait(process, timeout, cancel)
        log_path.write_text(
            f"$ {' '.join(command_list)}\n\nSTDOUT:\n{stdout}\n\nSTDERR:\n{stderr}"
            + (f"\n\n[{reason}]" if reason else ""),
            encoding="utf-8",
        )
        return CommandResult(
            command=command_list,
            cwd=cwd,
            return_code=return_code,
            stdout=stdout,
            stderr=stderr,
            log_path=log_path,
            reason=reason,
        )

    @staticmethod
    def _wait(
        process: subprocess.Popen,
        timeout: Optional[float],
        cancel: Optional[threading.Event],
    ) -> tuple:
        deadline = time.monotonic() + timeout if timeout else None
        while True:
            try:
                stdout, stderr = process.communicate(timeout=_POLL_SECONDS)
                return stdout or "", stderr or "", process.returncode, None
            except subprocess.TimeoutExpired:
                reason = None
                if cancel is not None and cancel.is_set():
                    reason, code = "cancelled", CANCELLED_RETURN_CODE
                elif deadline is not None and time.monotonic() >= deadline:
                    reason, code = "timeout", TIMEOUT_RETURN_CODE
                if reason:
                    process.kill()
                    stdout, stderr = process.communicate()
                    return stdout or "", stderr or "", code, reason

    def _skip_reason(self, command: List[str], cwd: Path) -> Optional[str]:
        if not command:
            return "empty-command"
        if not self._policy.allow_package_installs:
            if any(_matches_prefix(command, prefix) for prefix in PACKAGE_INSTALL_PREFIXES):
                return "blocked-package-install"
        executable = command[0]
        allowed = self._policy.allowed_executables
        if allowed is not None and Path(executable).name not in allowed and executable not in allowed:
            return "blocked-executable"
        if "/" in executable:
            if not (cwd / executable).exists():
                return "missing-executable"
        elif which(executable) is None:
            return "missing-executable"
        return None

    def _create_log_path(self, command: List[str]) -> Path:
        safe = "-".join(_UNSAFE.sub("_", Path(part).name) for part in command[:3] if part)
        if len(safe) > 60:
            safe = safe[:57] + "..."
        with self._counter_lock:
            self._counter += 1
            index = self._counter
        return self._logs_dir / f"{index:02d}-{safe}.log"


def _matches_prefix(command: List[str], prefix: tuple) -> bool:
    if len(command) < len(prefix):
        return False
    executable = Path(command[0]).name
    if executable != prefix[0] and not (prefix[0] == "python" and executable.startswith("python")):
        return False
    return all(a == b for a, b in zip(command[1:], prefix[1:]))
