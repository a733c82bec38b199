"""Stage actions: the interpreter for the ``action`` field of a stage."""
from __future__ import annotations

import logging
import shlex
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from pydantic import ValidationError

from .archive import copy_tree
from .builder import BuildOutput
from .config import Settings
from .errors import CommandFailed, DefinitionError, RunAborted, UnknownAction
from .models import Artifact, DeployResult, PipelineDefinition, RecipeStep, Run, StageSpec
from .sandbox import CommandRunner
from .services import PipelineServices
from .source import Snapshot

LOGGER = logging.getLogger("conveyor.stages")

DEFAULT_TAGS = ["{run_id}", "latest"]


@dataclass
class RunContext:
    """Mutable state shared by the stages of one run."""

    run: Run
    definition: PipelineDefinition
    services: PipelineServices
    settings: Settings
    run_dir: Path
    abort: threading.Event = field(default_factory=threading.Event)
    cancel: threading.Event = field(default_factory=threading.Event)
    snapshot: Optional[Snapshot] = None
    build: Optional[BuildOutput] = None
    artifact: Optional[Artifact] = None
    deploy: Optional[DeployResult] = None
    outputs: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    _workspace: Optional[Path] = field(default=None, repr=False)

    def request_abort(self) -> None:
        self.abort.set()
        self.cancel.set()

    def logs_dir(self, stage_name: str) -> Path:
        return self.run_dir / "logs" / stage_name

    def ensure_snapshot(self) -> Snapshot:
        if self.snapshot is None:
            self.snapshot = self.services.source.fetch_snapshot(self.run.revision_id)
        return self.snapshot

    def workspace(self) -> Path:
        """Writable copy of the snapshot, shared by the shell stages of this run."""
        if self._workspace is None:
            target = self.run_dir / "workspace"
            copy_tree(self.ensure_snapshot().path, target)
            self._workspace = target
        return self._workspace


class StageAction(ABC):
    """Base protocol for stage actions."""

    kind: str = ""

    @abstractmethod
    def execute(self, context: RunContext, spec: StageSpec) -> Dict[str, Any]:
        """Run the stage and return a JSON serialisable summary."""


class CheckoutAction(StageAction):
    kind = "checkout"

    def execute(self, context: RunContext, spec: StageSpec) -> Dict[str, Any]:
        snapshot = context.services.source.fetch_snapshot(context.run.revision_id)
        context.snapshot = snapshot
        return {"revision": snapshot.revision_id, "path": str(snapshot.path)}


class BuildAction(StageAction):
    """Build the run's snapshot with the ``recipe`` parameter."""

    kind = "build"

    def execute(self, context: RunContext, spec: StageSpec) -> Dict[str, Any]:
        recipe = parse_recipe(spec.parameters.get("recipe"))
        step_timeout = spec.parameters.get("step_timeout_seconds")
        output = context.services.builder.build(
            context.ensure_snapshot(),
            recipe,
            output_path=context.run_dir / "artifact.tar.gz",
            logs_dir=context.logs_dir(spec.name),
            abort=context.cancel,
            step_timeout=float(step_timeout) if step_timeout is not None else None,
        )
        context.build = output
        return {
            "digest": output.digest,
            "size_bytes": output.size_bytes,
            "cached_steps": output.cached_steps,
            "duration_seconds": round(output.duration_seconds, 3),
        }


class PushAction(StageAction):
    kind = "push"

    def execute(self, context: RunContext, spec: StageSpec) -> Dict[str, Any]:
        if context.build is None:
            raise DefinitionError(f"Stage {spec.name!r} needs a build stage before it")
        tags = render_tags(spec.parameters.get("tags") or DEFAULT_TAGS, context)
        artifact = Artifact(
            pipeline=context.run.pipeline,
            run_id=context.run.run_id,
            digest=context.build.digest,
            size_bytes=context.build.size_bytes,
            blob_path=context.build.path,
        )
        pushed = context.services.registry.push(artifact, tags)
        context.artifact = pushed
        if context.build.path.exists():
            context.build.path.unlink()
        return {"digest": pushed.digest, "tags": tags}


class DeployAction(StageAction):
    """Deploy the pushed artifact (or the ``tag`` parameter) into ``slot``."""

    kind = "deploy"

    def execute(self, context: RunContext, spec: StageSpec) -> Dict[str, Any]:
        parameters = spec.parameters
        if context.artifact is not None:
            digest = context.artifact.digest
        elif parameters.get("tag"):
            digest = context.services.registry.pull(str(parameters["tag"]), context.run.pipeline).digest
        else:
            raise DefinitionError(f"Stage {spec.name!r} has no artifact to deploy")
        slot_id = str(parameters.get("slot") or context.run.pipeline)
        timeout = float(
            parameters.get("readiness_timeout_seconds", context.settings.deploy.default_timeout_seconds)
        )
        controller = context.services.controller_for(parameters.get("target"))
        result = controller.deploy(slot_id, digest, timeout_seconds=timeout, abort=context.cancel)
        context.deploy = result
        return result.model_dump(mode="json")


class ShellAction(StageAction):
    """Run ``command`` inside a writable copy of the run's snapshot."""

    kind = "shell"

    def execute(self, context: RunContext, spec: StageSpec) -> Dict[str, Any]:
        command = spec.parameters.get("command")
        argv: List[str] = shlex.split(command) if isinstance(command, str) else [str(p) for p in command or []]
        if not argv:
            raise DefinitionError(f"Stage {spec.name!r} requires a command")
        workdir = context.workspace() / spec.parameters.get("workdir", ".")
        env = {key: str(value) for key, value in (spec.parameters.get("env") or {}).items()}
        runner = CommandRunner(context.logs_dir(spec.name), policy=context.settings.sandbox)
        result = runner.run(argv, cwd=workdir, env=env, timeout=spec.timeout_seconds, cancel=context.cancel)
        if result.reason == "cancelled":
            raise RunAborted(f"Stage {spec.name} was cancelled")
        if not result.succeeded:
            raise CommandFailed(
                f"{' '.join(argv)} exited with {result.return_code}"
                + (f" ({result.reason})" if result.reason else ""),
                exit_code=result.return_code,
                log_tail=result.tail(),
            )
        return {"exit_code": result.return_code, "log": str(result.log_path) if result.log_path else None}


class StageActionRegistry:
    """Maps action kinds to implementations; callers may register their own."""

    def __init__(self, actions: Optional[Iterable[StageAction]] = None) -> None:
        self._actions: Dict[str, StageAction] = {}
        for action in actions or []:
            self.register(action.kind, action)

    def register(self, kind: str, action: StageAction) -> None:
        self._actions[kind] = action

    def get(self, kind: str) -> StageAction:
        try:
            return self._actions[kind]
        except KeyError as exc:
            raise UnknownAction(f"No stage action registered for {kind!r}") from exc

    def kinds(self) -> List[str]:
        return sorted(self._actions)

    def __contains__(self, kind: object) -> bool:
        return kind in self._actions


def build_stage_actions() -> StageActionRegistry:
    """Factory returning the built-in stage actions."""

    return StageActionRegistry([CheckoutAction(), BuildAction(), PushAction(), DeployAction(), ShellAction()])


def parse_recipe(raw: Any) -> List[RecipeStep]:
    if not raw:
        raise DefinitionError("build stage requires a non-empty recipe")
    try:
        return [RecipeStep.model_validate(step) for step in raw]
    except ValidationError as exc:
        raise DefinitionError(f"Invalid recipe: {exc}") from exc


def render_tags(templates: Iterable[str], context: RunContext) -> List[str]:
    values = {
        "run_id": context.run.run_id,
        "revision": context.run.revision_id,
        "revision_short": context.run.revision_id[:12],
        "pipeline": context.run.pipeline,
    }
    tags = []
    for template in templates:
        try:
            tags.append(str(template).format(**values))
        except (KeyError, IndexError, ValueError) as exc:
            raise DefinitionError(f"Invalid tag template {template!r}") from exc
    return tags


__all__ = [
    "BuildAction",
    "CheckoutAction",
    "DeployAction",
    "PushAction",
    "RunContext",
    "ShellAction",
    "StageAction",
    "StageActionRegistry",
    "build_stage_actions",
    "parse_recipe",
    "render_tags",
]
