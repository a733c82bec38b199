"""Run executor: sequential stages with retries, timeouts and abort."""
from __future__ import annotations

import concurrent.futures
import logging
import threading
import time
from typing import Any, Dict, Optional

from tenacity import RetryCallState, Retrying, retry_if_exception, stop_after_attempt, wait_exponential

from .config import Settings
from .errors import ConveyorError, RevisionNotFound, RunAborted, StageTimeout
from .models import Run, RunStatus, StageResult, StageSpec, StageStatus
from .persistence.store import RunStore
from .stages import RunContext, StageActionRegistry

LOGGER = logging.getLogger("conveyor.executor")


def is_transient(exc: BaseException) -> bool:
    return isinstance(exc, ConveyorError) and exc.retryable


class RunExecutor:
    """
    Interpret a pipeline definition's stage list for one run.

    This is the only place that retries anything: components raise classified
    errors and the executor decides from the stage's ``retryable`` flag and the
    error's classification whether another attempt is made.
    """

    def __init__(self, store: RunStore, actions: StageActionRegistry, settings: Settings) -> None:
        self._store = store
        self._actions = actions
        self._settings = settings
        self._logger = LOGGER

    def execute(self, run: Run, context: RunContext) -> Run:
        started = time.monotonic()
        run_id = run.run_id
        self._store.mark_running(run_id)
        self._store.record_event(
            run_id,
            "run_started",
            f"Run {run_id} started for revision {run.revision_id[:12]}.",
            payload={"revision": run.revision_id, "definition_version": run.definition_version},
            pipeline=run.pipeline,
        )
        self._logger.info("Starting run %s of %s at %s", run_id, run.pipeline, run.revision_id[:12])

        status = RunStatus.SUCCEEDED
        error: Optional[str] = None
        halted = False

        for spec in context.definition.stages:
            result = run.stage(spec.name)
            if not halted and context.abort.is_set():
                status, error, halted = RunStatus.ABORTED, "aborted", True
            if halted:
                self._skip(run, result)
                continue

            result.transition(StageStatus.RUNNING)
            result.log_ref = str(context.logs_dir(spec.name))
            self._store.save_stage(run_id, result)
            self._store.record_event(
                run_id,
                "stage_started",
                f"{spec.name} started.",
                payload={"stage": spec.name, "action": spec.action},
                pipeline=run.pipeline,
            )

            try:
                output = self._run_with_retries(run, spec, result, context)
            except Exception as exc:
                self._fail_stage(run, spec, result, exc)
                if isinstance(exc, RevisionNotFound):
                    self._logger.error("Run %s: revision %s is gone: %s", run_id, run.revision_id[:12], exc)
                    self._store.record_event(
                        run_id,
                        "alert",
                        f"Revision {run.revision_id[:12]} can no longer be fetched.",
                        payload={"stage": spec.name, "revision": run.revision_id, "error": _error_payload(exc)},
                        pipeline=run.pipeline,
                    )
                if context.abort.is_set():
                    status, error, halted = RunStatus.ABORTED, "aborted", True
                elif spec.fatal:
                    status, error, halted = RunStatus.FAILED, f"stage {spec.name} failed: {exc}", True
                else:
                    self._logger.warning("Run %s: non-fatal stage %s failed, continuing", run_id, spec.name)
                continue

            result.output = output
            result.transition(StageStatus.SUCCEEDED)
            context.outputs[spec.name] = output
            self._store.save_stage(run_id, result)
            self._record_completion(run, result)

        self._store.finalize_run(run_id, status, error)
        duration = time.monotonic() - started
        self._store.record_event(
            run_id,
            "run_completed",
            f"Run {run_id} {status.value}.",
            payload={"status": status.value, "error": error, "duration_seconds": round(duration, 3)},
            pipeline=run.pipeline,
        )
        self._logger.info("Run %s finished with status %s in %.2fs", run_id, status.value, duration)
        return self._store.load_run(run_id)

    def _run_with_retries(
        self, run: Run, spec: StageSpec, result: StageResult, context: RunContext
    ) -> Dict[str, Any]:
        retry_config = self._settings.retry
        max_attempts = retry_config.max_attempts if spec.retryable else 1
        retrying = Retrying(
            stop=stop_after_attempt(max_attempts),
            wait=wait_exponential(multiplier=retry_config.base_seconds, max=retry_config.cap_seconds),
            retry=retry_if_exception(is_transient),
            sleep=context.abort.wait,
            before_sleep=lambda state: self._before_retry(run, spec, state),
            reraise=True,
        )
        output: Dict[str, Any] = {}
        for attempt in retrying:
            with attempt:
                if context.abort.is_set():
                    raise RunAborted(f"Run {run.run_id} was aborted")
                result.attempts = attempt.retry_state.attempt_number
                self._store.save_stage(run.run_id, result)
                try:
                    output = self._attempt(spec, context)
                except Exception as exc:
                    self._record_attempt_failure(run, spec, result.attempts, max_attempts, exc)
                    raise
        return output

    def _attempt(self, spec: StageSpec, context: RunContext) -> Dict[str, Any]:
        action = self._actions.get(spec.action)
        cancel = threading.Event()
        context.cancel = cancel
        if context.abort.is_set():
            cancel.set()
        pool = concurrent.futures.ThreadPoolExecutor(
            max_workers=1, thread_name_prefix=f"run{context.run.run_id}-{spec.name}"
        )
        try:
            future = pool.submit(action.execute, context, spec)
            try:
                return future.result(timeout=spec.timeout_seconds) or {}
            except concurrent.futures.TimeoutError:
                cancel.set()
                grace = self._settings.scheduler.cancel_grace_seconds
                done, _ = concurrent.futures.wait([future], timeout=grace)
                if not done:
                    self._logger.error(
                        "Run %s stage %s still running %.0fs after cancel", context.run.run_id, spec.name, grace
                    )
                raise StageTimeout(f"stage {spec.name} timed out after {spec.timeout_seconds:g}s") from None
        finally:
            pool.shutdown(wait=False)

    def _before_retry(self, run: Run, spec: StageSpec, state: RetryCallState) -> None:
        delay = state.next_action.sleep if state.next_action else 0.0
        self._logger.info(
            "Run %s stage %s: retrying in %.2fs (attempt %d failed)",
            run.run_id,
            spec.name,
            delay,
            state.attempt_number,
        )

    def _record_attempt_failure(
        self, run: Run, spec: StageSpec, attempt: int, max_attempts: int, exc: Exception
    ) -> None:
        if isinstance(exc, ConveyorError):
            self._logger.warning(
                "Run %s stage %s attempt %d/%d failed: %s", run.run_id, spec.name, attempt, max_attempts, exc
            )
        else:
            self._logger.exception(
                "Run %s stage %s attempt %d/%d raised an unexpected error", run.run_id, spec.name, attempt, max_attempts
            )
        self._store.record_event(
            run.run_id,
            "stage_attempt_failed",
            f"{spec.name} attempt {attempt} failed.",
            payload={
                "stage": spec.name,
                "attempt": attempt,
                "error": _error_payload(exc),
                "will_retry": spec.retryable and is_transient(exc) and attempt < max_attempts,
            },
            pipeline=run.pipeline,
        )

    def _fail_stage(self, run: Run, spec: StageSpec, result: StageResult, exc: Exception) -> None:
        result.error = str(exc) or type(exc).__name__
        result.output = _error_payload(exc)
        result.transition(StageStatus.FAILED)
        self._store.save_stage(run.run_id, result)
        self._record_completion(run, result)

    def _skip(self, run: Run, result: StageResult) -> None:
        result.transition(StageStatus.SKIPPED)
        self._store.save_stage(run.run_id, result)
        self._store.record_event(
            run.run_id,
            "stage_skipped",
            f"{result.stage_name} skipped.",
            payload={"stage": result.stage_name, "status": result.status.value},
            pipeline=run.pipeline,
        )

    def _record_completion(self, run: Run, result: StageResult) -> None:
        duration = result.duration_seconds
        self._store.record_event(
            run.run_id,
            "stage_completed",
            f"{result.stage_name} {result.status.value}.",
            payload={
                "stage": result.stage_name,
                "status": result.status.value,
                "attempts": result.attempts,
                "duration_seconds": round(duration, 3) if duration is not None else None,
                "error": result.error,
            },
            pipeline=run.pipeline,
        )
        self._logger.info(
            "Run %s stage %s %s after %d attempt(s)", run.run_id, result.stage_name, result.status.value, result.attempts
        )


def _error_payload(exc: BaseException) -> Dict[str, Any]:
    if isinstance(exc, ConveyorError):
        return exc.to_dict()
    return {"type": type(exc).__name__, "message": str(exc), "retryable": False}


__all__ = ["RunExecutor", "is_transient"]
