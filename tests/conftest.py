from __future__ import annotations

import itertools
import threading
import time
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set

import pytest

from conveyor.config import Settings, build_paths
from conveyor.credentials import StaticCredentialStore
from conveyor.deploy import DeployTarget, InstanceHandle
from conveyor.errors import RevisionNotFound, RunAborted, SourceUnavailable
from conveyor.models import Artifact, PipelineDefinition, Revision
from conveyor.persistence import RunStore, create_session_factory
from conveyor.scheduler import PipelineScheduler
from conveyor.services import PipelineServices, ServiceFactory
from conveyor.source import Snapshot, SourceProvider
from conveyor.stages import RunContext, StageAction, StageActionRegistry, build_stage_actions

DEFAULT_STAGES: List[Dict[str, Any]] = [
    {"name": "checkout", "action": "checkout"},
    {"name": "build", "action": "build", "parameters": {"recipe": [{"copy": "."}]}},
    {"name": "push", "action": "push"},
    {"name": "deploy", "action": "deploy", "parameters": {"slot": "prod", "readiness_timeout_seconds": 0.3}},
]


def make_definition(name: str = "demo", stages: Optional[List[Dict[str, Any]]] = None) -> PipelineDefinition:
    return PipelineDefinition.from_mapping(
        {
            "name": name,
            "source": {"kind": "directory", "location": "."},
            "stages": stages if stages is not None else DEFAULT_STAGES,
        }
    )


class FakeSource(SourceProvider):
    """In-memory source whose revisions are directories written by the test."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self.revisions: Dict[str, Path] = {}
        self.latest: Optional[str] = None
        self.fetch_failures = 0
        self.unavailable = False
        self.fetch_calls = 0

    def add_revision(self, revision_id: str, files: Dict[str, str]) -> Revision:
        path = self.root / revision_id
        for name, content in files.items():
            target = path / name
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")
        self.revisions[revision_id] = path
        self.latest = revision_id
        return Revision(id=revision_id)

    def latest_revision(self, pipeline: str) -> Revision:
        if self.unavailable or self.latest is None:
            raise SourceUnavailable("source offline")
        return Revision(id=self.latest)

    def fetch_snapshot(self, revision_id: str) -> Snapshot:
        self.fetch_calls += 1
        if self.fetch_failures > 0:
            self.fetch_failures -= 1
            raise SourceUnavailable("connection reset")
        if revision_id not in self.revisions:
            raise RevisionNotFound(f"{revision_id} is gone")
        return Snapshot(revision_id=revision_id, path=self.revisions[revision_id])


class FakeTarget(DeployTarget):
    """Deploy target that tracks instances in memory; readiness is controlled by the test."""

    def __init__(self) -> None:
        self.healthy = True
        self.unhealthy_digests: Set[str] = set()
        self.readiness_error: Optional[Exception] = None
        self.stop_error: Optional[OSError] = None
        self.instances: Dict[str, InstanceHandle] = {}
        self.started: List[InstanceHandle] = []
        self.stopped: List[str] = []
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def start_instance(self, slot_id: str, artifact: Artifact) -> InstanceHandle:
        with self._lock:
            handle = InstanceHandle(slot_id=slot_id, instance_id=f"i{next(self._ids)}", digest=artifact.digest)
            self.instances[handle.instance_id] = handle
            self.started.append(handle)
        return handle

    def readiness_check(self, handle: InstanceHandle) -> bool:
        if self.readiness_error is not None:
            raise self.readiness_error
        return self.healthy and handle.digest not in self.unhealthy_digests

    def stop_instance(self, handle: InstanceHandle) -> None:
        if self.stop_error is not None:
            raise self.stop_error
        with self._lock:
            self.instances.pop(handle.instance_id, None)
            self.stopped.append(handle.instance_id)

    def list_instances(self, slot_id: str) -> List[InstanceHandle]:
        with self._lock:
            return [handle for handle in self.instances.values() if handle.slot_id == slot_id]

    def running_digests(self, slot_id: str) -> List[str]:
        return [handle.digest for handle in self.list_instances(slot_id)]


class GateAction(StageAction):
    """Blocks until released so tests can observe a run while it is active."""

    kind = "gate"

    def __init__(self) -> None:
        self.release = threading.Event()
        self.entered = threading.Event()
        self.seen: List[str] = []

    def execute(self, context: RunContext, spec) -> Dict[str, Any]:
        self.seen.append(context.run.revision_id)
        self.entered.set()
        while not self.release.wait(0.01):
            if context.cancel.is_set():
                raise RunAborted("gate cancelled")
        return {"revision": context.run.revision_id}


class StallAction(StageAction):
    """Waits for its cancel event; used to exercise stage timeouts."""

    kind = "stall"

    def __init__(self) -> None:
        self.calls = 0
        self.cancelled = 0

    def execute(self, context: RunContext, spec) -> Dict[str, Any]:
        self.calls += 1
        if context.cancel.wait(5):
            self.cancelled += 1
            raise RunAborted("stall cancelled")
        return {}


class LingerAction(StageAction):
    """Keeps working for a while after being cancelled."""

    kind = "linger"

    def __init__(self) -> None:
        self.finished = threading.Event()

    def execute(self, context: RunContext, spec) -> Dict[str, Any]:
        context.cancel.wait(5)
        time.sleep(0.3)
        self.finished.set()
        raise RunAborted("linger cancelled")


class ExplodingAction(StageAction):
    kind = "explode"

    def execute(self, context: RunContext, spec) -> Dict[str, Any]:
        raise RuntimeError("boom")


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    config = Settings(paths=build_paths(tmp_path / "state"))
    config.retry.base_seconds = 0.01
    config.retry.cap_seconds = 0.05
    config.deploy.readiness_interval_seconds = 0.01
    config.deploy.default_timeout_seconds = 0.3
    config.ensure_directories()
    return config


@pytest.fixture
def session_factory(settings: Settings):
    return create_session_factory(settings.database_url)


@pytest.fixture
def store(session_factory) -> RunStore:
    return RunStore(session_factory)


@pytest.fixture
def source(tmp_path: Path) -> FakeSource:
    return FakeSource(tmp_path / "source")


@pytest.fixture
def target() -> FakeTarget:
    return FakeTarget()


@pytest.fixture
def service_factory(settings: Settings, session_factory, target: FakeTarget) -> ServiceFactory:
    return ServiceFactory(
        settings,
        session_factory,
        credentials=StaticCredentialStore(),
        target_factory=lambda parameters: target,
    )


@pytest.fixture
def services(service_factory: ServiceFactory, source: FakeSource):
    def _build(definition: PipelineDefinition) -> PipelineServices:
        built = service_factory(definition)
        built.source = source
        return built

    return _build


@pytest.fixture
def actions() -> StageActionRegistry:
    registry = build_stage_actions()
    registry.register("gate", GateAction())
    registry.register("stall", StallAction())
    registry.register("explode", ExplodingAction())
    registry.register("linger", LingerAction())
    return registry


@pytest.fixture
def make_scheduler(settings: Settings, store: RunStore, services, actions: StageActionRegistry):
    created: List[PipelineScheduler] = []

    def _make(definitions: Iterable[PipelineDefinition]) -> PipelineScheduler:
        scheduler = PipelineScheduler(settings, store, definitions, services, actions=actions)
        created.append(scheduler)
        return scheduler

    yield _make
    for scheduler in created:
        gate = actions.get("gate")
        gate.release.set()
        scheduler.stop(wait=True, abort_active=True)
