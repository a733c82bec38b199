"""Error taxonomy shared by every pipeline component.

Components raise these already classified; the run executor is the only place
that looks at ``retryable`` and decides whether to try a stage again.
"""
from __future__ import annotations

from typing import Optional


class ConveyorError(Exception):
    """Base class for all domain errors."""

    retryable: bool = False

    def __init__(self, message: str, *, retryable: Optional[bool] = None) -> None:
        super().__init__(message)
        self.message = message
        if retryable is not None:
            self.retryable = retryable

    def to_dict(self) -> dict:
        return {"type": type(self).__name__, "message": self.message, "retryable": self.retryable}


class DefinitionError(ConveyorError):
    """A pipeline definition file could not be loaded or validated."""


class UnknownPipeline(ConveyorError):
    pass


class UnknownAction(ConveyorError):
    pass


class PipelineBusy(ConveyorError):
    """A pipeline already has a queued or running run."""


class SourceUnavailable(ConveyorError):
    """Transient failure talking to the source (network, auth, missing checkout)."""

    retryable = True


class RevisionNotFound(ConveyorError):
    """A revision that was observed earlier can no longer be resolved."""


class BuildError(ConveyorError):
    def __init__(self, message: str, *, step_index: int, exit_code: int, log_tail: str = "") -> None:
        super().__init__(message)
        self.step_index = step_index
        self.exit_code = exit_code
        self.log_tail = log_tail

    def to_dict(self) -> dict:
        payload = super().to_dict()
        payload.update({"step_index": self.step_index, "exit_code": self.exit_code, "log_tail": self.log_tail})
        return payload


class PushError(ConveyorError):
    """Registry push failure; only network failures are worth retrying."""

    def __init__(self, message: str, *, kind: str = "network") -> None:
        super().__init__(message, retryable=kind == "network")
        self.kind = kind

    def to_dict(self) -> dict:
        payload = super().to_dict()
        payload["kind"] = self.kind
        return payload


class ArtifactNotFound(ConveyorError):
    pass


class DeployError(ConveyorError):
    def __init__(self, reason: str, *, slot_id: Optional[str] = None) -> None:
        super().__init__(f"deploy into slot {slot_id!r} failed: {reason}" if slot_id else reason)
        self.reason = reason
        self.slot_id = slot_id

    def to_dict(self) -> dict:
        payload = super().to_dict()
        payload["reason"] = self.reason
        return payload


class RollbackError(ConveyorError):
    pass


class SlotBusy(ConveyorError):
    """Another deploy or rollback holds the slot; it clears once that finishes."""

    retryable = True


class CommandFailed(ConveyorError):
    """A shell stage command exited non-zero."""

    def __init__(self, message: str, *, exit_code: int, log_tail: str = "") -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.log_tail = log_tail

    def to_dict(self) -> dict:
        payload = super().to_dict()
        payload.update({"exit_code": self.exit_code, "log_tail": self.log_tail})
        return payload


class StageTimeout(ConveyorError):
    retryable = True


class RunAborted(ConveyorError):
    pass


class CleanupError(ConveyorError):
    pass


class CredentialNotFound(ConveyorError):
    pass


__all__ = [
    "ArtifactNotFound",
    "BuildError",
    "CleanupError",
    "CommandFailed",
    "ConveyorError",
    "CredentialNotFound",
    "DefinitionError",
    "DeployError",
    "PipelineBusy",
    "PushError",
    "RevisionNotFound",
    "RollbackError",
    "RunAborted",
    "SlotBusy",
    "SourceUnavailable",
    "StageTimeout",
    "UnknownAction",
    "UnknownPipeline",
]
