"""Pipeline scheduler: revision detection, coalescing, worker pool and cleanup."""
from __future__ import annotations

import concurrent.futures
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Union

from sqlalchemy.exc import SQLAlchemyError

from .config import Settings
from .errors import CleanupError, ConveyorError, SourceUnavailable, UnknownPipeline
from .executor import RunExecutor
from .models import PipelineDefinition, Revision, Run, RunStatus
from .persistence.store import RunStore
from .services import PipelineServices
from .stages import RunContext, StageActionRegistry, build_stage_actions

LOGGER = logging.getLogger("conveyor.scheduler")

ServicesFactory = Callable[[PipelineDefinition], PipelineServices]


@dataclass
class _PipelineState:
    active_run: Optional[int] = None
    pending_revision: Optional[str] = None


class PipelineScheduler:
    """
    Start runs for new revisions, at most one active run per pipeline.

    While a pipeline is busy, newly observed revisions overwrite a single
    pending slot, so when the active run finishes only the latest revision is
    built. Runs for different pipelines execute in parallel on a thread pool.
    """

    def __init__(
        self,
        settings: Settings,
        store: RunStore,
        definitions: Iterable[PipelineDefinition],
        services_factory: ServicesFactory,
        actions: Optional[StageActionRegistry] = None,
    ) -> None:
        self._settings = settings
        self._store = store
        self._services_factory = services_factory
        self._actions = actions or build_stage_actions()
        self._executor = RunExecutor(store, self._actions, settings)
        self._definitions: Dict[str, PipelineDefinition] = {}
        self._services: Dict[str, PipelineServices] = {}
        self._states: Dict[str, _PipelineState] = {}
        self._contexts: Dict[int, RunContext] = {}
        self._pending_cleanups = 0
        self._lock = threading.RLock()
        self._changed = threading.Condition(self._lock)
        self._stopping = threading.Event()
        self._poller: Optional[threading.Thread] = None
        self._pool = concurrent.futures.ThreadPoolExecutor(
            max_workers=settings.scheduler.max_workers, thread_name_prefix="conveyor-run"
        )
        self._cleanup_pool = concurrent.futures.ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="conveyor-cleanup"
        )
        for definition in definitions:
            self.register(definition)

    def register(self, definition: PipelineDefinition) -> None:
        """Add or replace a pipeline definition; runs already started keep their version."""
        for stage in definition.stages:
            self._actions.get(stage.action)
        self._store.record_definition(definition)
        with self._lock:
            self._definitions[definition.name] = definition
            self._services.pop(definition.name, None)
            self._states.setdefault(definition.name, _PipelineState())

    def definition(self, pipeline: str) -> PipelineDefinition:
        try:
            return self._definitions[pipeline]
        except KeyError as exc:
            raise UnknownPipeline(f"Unknown pipeline {pipeline!r}") from exc

    def pipelines(self) -> List[str]:
        return sorted(self._definitions)

    def services(self, pipeline: str) -> PipelineServices:
        definition = self.definition(pipeline)
        with self._lock:
            services = self._services.get(pipeline)
            if services is None:
                services = self._services_factory(definition)
                self._services[pipeline] = services
            return services

    def notify(self, pipeline: str, revision: Union[Revision, str]) -> Optional[Run]:
        """
        Report a revision of *pipeline*.

        Returns the started run, or ``None`` when the pipeline is busy and the
        revision was parked as the pending one.
        """
        definition = self.definition(pipeline)
        revision_id = revision.id if isinstance(revision, Revision) else str(revision)
        with self._lock:
            state = self._states[pipeline]
            if state.active_run is None:
                run = self._start(definition, state, revision_id)
            else:
                if state.pending_revision and state.pending_revision != revision_id:
                    LOGGER.info(
                        "Pipeline %s busy: revision %s replaces pending %s",
                        pipeline,
                        revision_id[:12],
                        state.pending_revision[:12],
                    )
                state.pending_revision = revision_id
                run = None
                self._store.record_event(
                    None,
                    "revision_coalesced",
                    f"Revision {revision_id[:12]} queued behind run {state.active_run}.",
                    payload={"revision": revision_id, "active_run": state.active_run},
                    pipeline=pipeline,
                )
            # Only a started or parked revision counts as observed.
            self._store.record_observed_revision(pipeline, revision_id)
            return run

    def trigger(self, pipeline: str, revision_id: Optional[str] = None) -> Optional[Run]:
        """Manual run of *revision_id*, or of the source's latest revision."""
        if revision_id is None:
            revision_id = self.services(pipeline).source.latest_revision(pipeline).id
        return self.notify(pipeline, revision_id)

    def poll_once(self) -> Dict[str, Optional[str]]:
        """
        Ask every source for its latest revision and notify the new ones.

        A pipeline whose source is unavailable maps to ``None``. A revision
        that could not be started is left unobserved and retried next poll.
        """
        observed: Dict[str, Optional[str]] = {}
        for pipeline in self.pipelines():
            try:
                revision = self.services(pipeline).source.latest_revision(pipeline)
            except SourceUnavailable as exc:
                LOGGER.warning("Polling %s failed: %s", pipeline, exc)
                observed[pipeline] = None
                continue
            observed[pipeline] = revision.id
            if revision.id == self._store.last_observed_revision(pipeline):
                continue
            LOGGER.info("New revision %s for %s", revision.short_id, pipeline)
            try:
                self.notify(pipeline, revision)
            except ConveyorError as exc:
                LOGGER.warning("Could not start revision %s of %s: %s", revision.short_id, pipeline, exc)
        return observed

    def abort(self, run_id: int) -> bool:
        """Ask an active run to stop; returns ``False`` if it is not running here."""
        with self._lock:
            context = self._contexts.get(run_id)
        if context is None:
            return False
        LOGGER.info("Abort requested for run %s", run_id)
        context.request_abort()
        self._store.record_event(run_id, "abort_requested", f"Abort requested for run {run_id}.", pipeline=context.run.pipeline)
        return True

    def recover(self) -> List[int]:
        """Mark runs left active by a previous process as aborted."""
        orphaned = self._store.abort_orphaned_runs()
        for run_id in orphaned:
            LOGGER.warning("Run %s was left active by a previous process; marked aborted", run_id)
            self._store.record_event(run_id, "run_orphaned", f"Run {run_id} marked aborted at start-up.")
        return orphaned

    def start(self) -> None:
        """Recover orphans and poll sources in a background thread."""
        if self._poller is not None:
            return
        self.recover()
        self._stopping.clear()
        self._poller = threading.Thread(target=self._poll_loop, name="conveyor-poller", daemon=True)
        self._poller.start()

    def stop(self, wait: bool = True, abort_active: bool = False) -> None:
        self._stopping.set()
        if self._poller is not None:
            self._poller.join()
            self._poller = None
        if abort_active:
            with self._lock:
                contexts = list(self._contexts.values())
            for context in contexts:
                context.request_abort()
        if wait:
            self.wait_idle()
        self._pool.shutdown(wait=wait)
        self._cleanup_pool.shutdown(wait=wait)

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until no run is active or pending and cleanups have finished."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._changed:
            while self._busy():
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._changed.wait(remaining)
        return True

    def _busy(self) -> bool:
        if self._pending_cleanups:
            return True
        return any(state.active_run is not None or state.pending_revision for state in self._states.values())

    def _poll_loop(self) -> None:
        interval = self._settings.scheduler.poll_interval_seconds
        while not self._stopping.is_set():
            try:
                self.poll_once()
            except Exception:
                LOGGER.exception("Polling pass failed; retrying in %.0fs", interval)
            self._stopping.wait(interval)

    def _start(self, definition: PipelineDefinition, state: _PipelineState, revision_id: str) -> Run:
        services = self.services(definition.name)
        run = self._store.create_run(
            definition.name,
            revision_id,
            definition.version,
            [stage.name for stage in definition.stages],
            config=self._settings.to_dict(),
        )
        run_dir = self._settings.paths.data_dir / "runs" / str(run.run_id)
        run_dir.mkdir(parents=True, exist_ok=True)
        context = RunContext(
            run=run,
            definition=definition,
            services=services,
            settings=self._settings,
            run_dir=run_dir,
        )
        state.active_run = run.run_id
        self._contexts[run.run_id] = context
        self._pool.submit(self._execute, run, context)
        LOGGER.info("Queued run %s of %s at %s", run.run_id, definition.name, revision_id[:12])
        return run

    def _execute(self, run: Run, context: RunContext) -> None:
        try:
            self._executor.execute(run, context)
        except Exception as exc:
            LOGGER.exception("Run %s crashed", run.run_id)
            if not self._store.load_run(run.run_id).status.is_terminal:
                self._store.finalize_run(run.run_id, RunStatus.FAILED, f"internal error: {exc}")
        finally:
            self._submit_cleanup(run, context.services)
            self._finish(run)

    def _finish(self, run: Run) -> None:
        with self._lock:
            self._contexts.pop(run.run_id, None)
            state = self._states[run.pipeline]
            state.active_run = None
            pending, state.pending_revision = state.pending_revision, None
            if pending is not None and not self._stopping.is_set():
                try:
                    self._start(self._definitions[run.pipeline], state, pending)
                except Exception:
                    LOGGER.exception("Could not start pending revision %s of %s", pending[:12], run.pipeline)
                    self._store.record_event(
                        None,
                        "alert",
                        f"Pending revision {pending[:12]} could not be started.",
                        payload={"revision": pending},
                        pipeline=run.pipeline,
                    )
            self._changed.notify_all()

    def _submit_cleanup(self, run: Run, services: PipelineServices) -> None:
        with self._lock:
            self._pending_cleanups += 1
        try:
            self._cleanup_pool.submit(self._cleanup, run, services)
        except RuntimeError:
            # Pool already shut down.
            with self._lock:
                self._pending_cleanups -= 1
                self._changed.notify_all()

    def _cleanup(self, run: Run, services: PipelineServices) -> None:
        try:
            removed = _prune(services, self._settings)
            if removed:
                self._store.record_event(
                    run.run_id,
                    "cleanup_completed",
                    f"Pruned {len(removed)} artifact(s).",
                    payload={"removed": removed},
                    pipeline=run.pipeline,
                )
        except CleanupError as exc:
            LOGGER.error("Cleanup after run %s failed: %s", run.run_id, exc)
            self._store.record_event(
                run.run_id,
                "alert",
                f"Cleanup failed: {exc}",
                payload={"error": exc.to_dict()},
                pipeline=run.pipeline,
            )
        finally:
            with self._lock:
                self._pending_cleanups -= 1
                self._changed.notify_all()


def _prune(services: PipelineServices, settings: Settings) -> List[str]:
    try:
        return services.registry.prune(settings.retention)
    except (OSError, SQLAlchemyError) as exc:
        raise CleanupError(f"registry prune failed: {exc}") from exc


__all__ = ["PipelineScheduler", "ServicesFactory"]
