"""Shared data models for pipelines, runs, artifacts and deployment slots."""
from __future__ import annotations

import hashlib
import json
import shlex
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RunStatus(str, Enum):
    """Lifecycle states tracked for a pipeline run."""

    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in {RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.ABORTED}


class StageStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in {StageStatus.SUCCEEDED, StageStatus.FAILED, StageStatus.SKIPPED}


class HealthStatus(str, Enum):
    UNKNOWN = "unknown"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


class SlotState(str, Enum):
    IDLE = "idle"
    DEPLOYING = "deploying"
    HEALTHY = "healthy"
    ROLLING_BACK = "rolling_back"


class Revision(BaseModel):
    """Immutable identifier of a source snapshot."""

    model_config = ConfigDict(frozen=True)

    id: str
    timestamp: datetime = Field(default_factory=utcnow)
    parent_id: Optional[str] = None

    @property
    def short_id(self) -> str:
        return self.id[:12]


class RecipeStep(BaseModel):
    """One layer-producing build step.

    Definitions may use the shorthand forms ``{"copy": "src"}``,
    ``{"run": "make build"}`` and ``{"env": {"NAME": "value"}}``.
    """

    model_config = ConfigDict(frozen=True)

    kind: Literal["copy", "run", "env"]
    source: str = "."
    destination: str = "."
    command: Optional[List[str]] = None
    name: Optional[str] = None
    value: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _expand_shorthand(cls, data: Any) -> Any:
        if not isinstance(data, dict) or "kind" in data:
            return data
        if "copy" in data:
            copy = data["copy"]
            if isinstance(copy, dict):
                return {"kind": "copy", **copy}
            return {"kind": "copy", "source": str(copy), "destination": data.get("destination", ".")}
        if "run" in data:
            return {"kind": "run", "command": data["run"]}
        if "env" in data and isinstance(data["env"], dict) and len(data["env"]) == 1:
            (name, value), = data["env"].items()
            return {"kind": "env", "name": name, "value": str(value)}
        return data

    @field_validator("command", mode="before")
    @classmethod
    def _split_command(cls, value: Any) -> Any:
        if isinstance(value, str):
            return shlex.split(value)
        return value

    @model_validator(mode="after")
    def _check_required(self) -> "RecipeStep":
        if self.kind == "run" and not self.command:
            raise ValueError("run steps require a non-empty command")
        if self.kind == "env" and not self.name:
            raise ValueError("env steps require a variable name")
        return self

    def canonical(self) -> str:
        return json.dumps(self.model_dump(mode="json"), sort_keys=True, separators=(",", ":"))


class SourceSpec(BaseModel):
    kind: Literal["git", "directory"] = "directory"
    location: str
    branch: str = "main"


class StageSpec(BaseModel):
    """Declarative description of one stage of a pipeline."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str
    action: str
    parameters: Dict[str, Any] = Field(default_factory=dict)
    retryable: bool = False
    timeout_seconds: float = Field(default=600.0, gt=0, validation_alias=AliasChoices("timeout_seconds", "timeoutSeconds"))
    fatal: bool = True


class PipelineDefinition(BaseModel):
    """A named, versioned, ordered sequence of stages."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1)
    version: str = ""
    source: SourceSpec
    stages: List[StageSpec] = Field(..., min_length=1)

    @field_validator("stages")
    @classmethod
    def _unique_stage_names(cls, stages: List[StageSpec]) -> List[StageSpec]:
        seen = set()
        for stage in stages:
            if stage.name in seen:
                raise ValueError(f"duplicate stage name {stage.name!r}")
            seen.add(stage.name)
        return stages

    @classmethod
    def from_mapping(cls, data: Dict[str, Any]) -> "PipelineDefinition":
        """Validate *data* and stamp it with a content-derived version."""
        body = {key: value for key, value in data.items() if key != "version"}
        draft = cls.model_validate(body)
        return draft.model_copy(update={"version": draft.content_hash()})

    def content_hash(self) -> str:
        body = self.model_dump(mode="json", exclude={"version"})
        encoded = json.dumps(body, sort_keys=True, separators=(",", ":")).encode("utf-8")
        return hashlib.sha256(encoded).hexdigest()[:16]

    def stage(self, name: str) -> StageSpec:
        for stage in self.stages:
            if stage.name == name:
                return stage
        raise KeyError(name)


class StageResult(BaseModel):
    """Outcome of one stage inside a run; terminal statuses are final."""

    stage_name: str
    status: StageStatus = StageStatus.PENDING
    attempts: int = 0
    log_ref: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error: Optional[str] = None
    output: Dict[str, Any] = Field(default_factory=dict)

    def transition(self, status: StageStatus) -> None:
        if self.status.is_terminal:
            raise ValueError(f"stage {self.stage_name} is already {self.status.value}")
        self.status = status
        if status is StageStatus.RUNNING and self.started_at is None:
            self.started_at = utcnow()
        if status.is_terminal:
            self.finished_at = utcnow()

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at is None or self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()


class Run(BaseModel):
    """One execution of a pipeline definition against one revision."""

    run_id: int
    pipeline: str
    revision_id: str
    definition_version: str
    status: RunStatus = RunStatus.QUEUED
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    stages: List[StageResult] = Field(default_factory=list)
    error: Optional[str] = None

    def stage(self, name: str) -> StageResult:
        for stage in self.stages:
            if stage.stage_name == name:
                return stage
        raise KeyError(name)


class Artifact(BaseModel):
    """Immutable build output identified by ``(pipeline, run_id)`` and its digest."""

    pipeline: str
    run_id: int
    digest: str
    size_bytes: int
    created_at: datetime = Field(default_factory=utcnow)
    aliases: List[str] = Field(default_factory=list)
    blob_path: Optional[Path] = None


class DeploymentSlot(BaseModel):
    slot_id: str
    current_artifact_digest: Optional[str] = None
    previous_artifact_digest: Optional[str] = None
    rollback_digest: Optional[str] = None
    health_status: HealthStatus = HealthStatus.UNKNOWN
    state: SlotState = SlotState.IDLE
    updated_at: datetime = Field(default_factory=utcnow)


class DeployResult(BaseModel):
    slot_id: str
    digest: str
    replaced_digest: Optional[str] = None
    instance_id: str
    duration_seconds: float


__all__ = [
    "Artifact",
    "DeployResult",
    "DeploymentSlot",
    "HealthStatus",
    "PipelineDefinition",
    "RecipeStep",
    "Revision",
    "Run",
    "RunStatus",
    "SlotState",
    "SourceSpec",
    "StageResult",
    "StageSpec",
    "StageStatus",
    "utcnow",
]
