"""Deployment controller: non-destructive deploy and rollback of slots."""
from __future__ import annotations

import logging
import threading
import time
from typing import Dict, List, Optional, Set

from ..errors import ArtifactNotFound, DeployError, RollbackError, SlotBusy
from ..models import DeployResult, DeploymentSlot, HealthStatus, SlotState
from ..persistence.store import SlotStore
from ..registry import ArtifactRegistry
from .base import DeployTarget, InstanceHandle

LOGGER = logging.getLogger("conveyor.deploy")

READY = "ready"
TIMED_OUT = "timeout"
ABORTED = "aborted"


class SlotLocks:
    """One lock per slot id, shared by every controller of a process."""

    def __init__(self) -> None:
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def get(self, slot_id: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(slot_id, threading.Lock())


class DeploymentController:
    """
    Moves a slot between artifacts without taking the old instance down first.

    The new instance is started next to the running one and only becomes
    current after it passes readiness. If it never does, the new instance is
    stopped and the slot row is written back exactly as it was before the
    attempt.
    """

    def __init__(
        self,
        target: DeployTarget,
        slots: SlotStore,
        registry: ArtifactRegistry,
        readiness_interval: float = 1.0,
        locks: Optional[SlotLocks] = None,
    ) -> None:
        self._target = target
        self._slots = slots
        self._registry = registry
        self._interval = readiness_interval
        self._locks = locks or SlotLocks()

    @property
    def target(self) -> DeployTarget:
        return self._target

    def deploy(
        self,
        slot_id: str,
        digest: str,
        *,
        timeout_seconds: float,
        abort: Optional[threading.Event] = None,
    ) -> DeployResult:
        lock = self._locks.get(slot_id)
        if not lock.acquire(blocking=False):
            raise SlotBusy(f"Slot {slot_id} already has a deploy in progress")
        try:
            return self._deploy(slot_id, digest, timeout_seconds, abort)
        finally:
            lock.release()

    def rollback(self, slot_id: str, *, timeout_seconds: float) -> DeployResult:
        """Swap the slot back to its previous artifact."""
        lock = self._locks.get(slot_id)
        if not lock.acquire(blocking=False):
            raise SlotBusy(f"Slot {slot_id} already has a deploy in progress")
        try:
            return self._rollback(slot_id, timeout_seconds)
        finally:
            lock.release()

    def slot(self, slot_id: str) -> DeploymentSlot:
        return self._slots.get(slot_id)

    def referenced_digests(self) -> Set[str]:
        return self._slots.referenced_digests()

    def _deploy(
        self,
        slot_id: str,
        digest: str,
        timeout_seconds: float,
        abort: Optional[threading.Event],
    ) -> DeployResult:
        started = time.monotonic()
        artifact = self._registry.resolve(digest)
        before = self._slots.get(slot_id)
        running = self._target.list_instances(slot_id)

        # The rollback target is on disk before anything starts.
        self._slots.save(
            before.model_copy(update={"state": SlotState.DEPLOYING, "rollback_digest": before.current_artifact_digest})
        )
        LOGGER.info("Deploying %s into slot %s", digest[:19], slot_id)

        try:
            handle = self._target.start_instance(slot_id, artifact)
        except Exception as exc:
            self._restore(before)
            raise DeployError(f"instance failed to start: {exc}", slot_id=slot_id) from exc

        try:
            outcome = self._await_ready(handle, timeout_seconds, abort)
        except Exception as exc:
            LOGGER.error("Readiness check of %s in slot %s raised: %s", handle.instance_id, slot_id, exc)
            self._abandon(handle, before)
            raise DeployError("health check failed", slot_id=slot_id) from exc
        if outcome != READY:
            self._abandon(handle, before)
            reason = "aborted" if outcome == ABORTED else "health check failed"
            LOGGER.warning("Deploy of %s into slot %s rolled back: %s", digest[:19], slot_id, reason)
            raise DeployError(reason, slot_id=slot_id)

        self._stop_all(running, keep=handle)
        replaced = before.current_artifact_digest
        previous = replaced if replaced != digest else before.previous_artifact_digest
        self._slots.save(
            DeploymentSlot(
                slot_id=slot_id,
                current_artifact_digest=digest,
                previous_artifact_digest=previous,
                rollback_digest=None,
                health_status=HealthStatus.HEALTHY,
                state=SlotState.HEALTHY,
            )
        )
        duration = time.monotonic() - started
        LOGGER.info("Slot %s now serves %s (%.2fs)", slot_id, digest[:19], duration)
        return DeployResult(
            slot_id=slot_id,
            digest=digest,
            replaced_digest=replaced,
            instance_id=handle.instance_id,
            duration_seconds=duration,
        )

    def _rollback(self, slot_id: str, timeout_seconds: float) -> DeployResult:
        started = time.monotonic()
        before = self._slots.get(slot_id)
        previous = before.previous_artifact_digest
        if not previous:
            raise RollbackError(f"Slot {slot_id} has no previous artifact to roll back to")
        try:
            artifact = self._registry.resolve(previous)
        except ArtifactNotFound as exc:
            raise RollbackError(f"Previous artifact {previous} is no longer stored") from exc

        running = self._target.list_instances(slot_id)
        self._slots.save(
            before.model_copy(update={"state": SlotState.ROLLING_BACK, "rollback_digest": before.current_artifact_digest})
        )
        try:
            handle = self._target.start_instance(slot_id, artifact)
        except Exception as exc:
            self._restore(before)
            raise RollbackError(f"Previous artifact failed to start: {exc}") from exc

        try:
            outcome = self._await_ready(handle, timeout_seconds, None)
        except Exception as exc:
            self._abandon(handle, before)
            raise RollbackError(f"Readiness check of previous artifact {previous[:19]} raised: {exc}") from exc
        if outcome != READY:
            self._abandon(handle, before)
            raise RollbackError(f"Previous artifact {previous[:19]} failed its readiness check")

        self._stop_all(running, keep=handle)
        self._slots.save(
            DeploymentSlot(
                slot_id=slot_id,
                current_artifact_digest=previous,
                previous_artifact_digest=before.current_artifact_digest,
                rollback_digest=None,
                health_status=HealthStatus.HEALTHY,
                state=SlotState.HEALTHY,
            )
        )
        duration = time.monotonic() - started
        LOGGER.info("Slot %s rolled back to %s", slot_id, previous[:19])
        return DeployResult(
            slot_id=slot_id,
            digest=previous,
            replaced_digest=before.current_artifact_digest,
            instance_id=handle.instance_id,
            duration_seconds=duration,
        )

    def _await_ready(
        self,
        handle: InstanceHandle,
        timeout_seconds: float,
        abort: Optional[threading.Event],
    ) -> str:
        deadline = time.monotonic() + timeout_seconds
        while True:
            if abort is not None and abort.is_set():
                return ABORTED
            if self._target.readiness_check(handle):
                return READY
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return TIMED_OUT
            pause = min(self._interval, remaining)
            if abort is not None:
                if abort.wait(pause):
                    return ABORTED
            else:
                time.sleep(pause)

    def _stop_all(self, handles: List[InstanceHandle], keep: InstanceHandle) -> None:
        for handle in handles:
            if handle.instance_id == keep.instance_id:
                continue
            try:
                self._target.stop_instance(handle)
            except OSError as exc:
                LOGGER.warning("Could not stop old instance %s in slot %s: %s", handle.instance_id, handle.slot_id, exc)

    def _abandon(self, handle: InstanceHandle, before: DeploymentSlot) -> None:
        """Stop an instance that never became current and put the slot back."""
        self._slots.save(before.model_copy(update={"state": SlotState.ROLLING_BACK}))
        try:
            self._target.stop_instance(handle)
        except Exception:
            LOGGER.exception("Could not stop instance %s in slot %s", handle.instance_id, handle.slot_id)
        finally:
            self._restore(before)

    def _restore(self, before: DeploymentSlot) -> None:
        self._slots.save(before, touch=False)


__all__ = ["DeploymentController", "SlotLocks"]
