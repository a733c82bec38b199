import json
import sys
import threading
import time
from pathlib import Path

import pytest

from conveyor.archive import write_tarball
from conveyor.deploy import DeploymentController, ProcessDeployTarget, SlotLocks
from conveyor.errors import DeployError, RollbackError, SlotBusy
from conveyor.models import Artifact, HealthStatus, SlotState
from conveyor.persistence import SlotStore
from conveyor.registry import ArtifactRegistry


@pytest.fixture
def slots(session_factory) -> SlotStore:
    return SlotStore(session_factory)


@pytest.fixture
def registry(settings, session_factory, slots) -> ArtifactRegistry:
    return ArtifactRegistry(settings.paths.registry_dir, session_factory, pinned_digests=slots.referenced_digests)


@pytest.fixture
def controller(target, slots, registry) -> DeploymentController:
    return DeploymentController(target, slots, registry, readiness_interval=0.01)


def _stored(tmp_path: Path, registry: ArtifactRegistry, run_id: int, files) -> str:
    tree = tmp_path / f"tree-{run_id}"
    for name, content in files.items():
        path = tree / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
    archive = tmp_path / f"artifact-{run_id}.tar.gz"
    digest, size = write_tarball(tree, archive)
    registry.push(Artifact(pipeline="demo", run_id=run_id, digest=digest, size_bytes=size, blob_path=archive), [str(run_id)])
    return digest


def test_deploy_into_empty_slot(tmp_path, controller, registry, slots, target):
    d1 = _stored(tmp_path, registry, 1, {"app.txt": "v1"})

    result = controller.deploy("prod", d1, timeout_seconds=1)

    slot = slots.get("prod")
    assert result.digest == d1
    assert result.replaced_digest is None
    assert slot.current_artifact_digest == d1
    assert slot.previous_artifact_digest is None
    assert slot.health_status is HealthStatus.HEALTHY
    assert slot.state is SlotState.HEALTHY
    assert slot.rollback_digest is None
    assert target.running_digests("prod") == [d1]


def test_successful_deploy_replaces_old_instance(tmp_path, controller, registry, slots, target):
    d1 = _stored(tmp_path, registry, 1, {"app.txt": "v1"})
    d2 = _stored(tmp_path, registry, 2, {"app.txt": "v2"})
    controller.deploy("prod", d1, timeout_seconds=1)

    result = controller.deploy("prod", d2, timeout_seconds=1)

    slot = slots.get("prod")
    assert result.replaced_digest == d1
    assert slot.current_artifact_digest == d2
    assert slot.previous_artifact_digest == d1
    assert target.running_digests("prod") == [d2]


def test_readiness_timeout_leaves_slot_untouched(tmp_path, controller, registry, slots, target):
    d1 = _stored(tmp_path, registry, 1, {"app.txt": "v1"})
    d2 = _stored(tmp_path, registry, 2, {"app.txt": "v2"})
    controller.deploy("prod", d1, timeout_seconds=1)
    before = slots.get("prod")
    target.unhealthy_digests.add(d2)

    with pytest.raises(DeployError) as excinfo:
        controller.deploy("prod", d2, timeout_seconds=0.1)

    assert excinfo.value.reason == "health check failed"
    after = slots.get("prod")
    assert after == before
    assert target.running_digests("prod") == [d1]
    assert registry.resolve(d2).digest == d2


def test_abort_during_readiness_rolls_back(tmp_path, controller, registry, slots, target):
    d1 = _stored(tmp_path, registry, 1, {"app.txt": "v1"})
    target.healthy = False
    abort = threading.Event()
    threading.Timer(0.05, abort.set).start()

    with pytest.raises(DeployError) as excinfo:
        controller.deploy("prod", d1, timeout_seconds=5, abort=abort)

    assert excinfo.value.reason == "aborted"
    assert slots.get("prod").current_artifact_digest is None
    assert target.running_digests("prod") == []


def test_concurrent_deploy_to_same_slot_is_rejected(tmp_path, controller, registry, target):
    d1 = _stored(tmp_path, registry, 1, {"app.txt": "v1"})
    target.healthy = False
    worker = threading.Thread(
        target=lambda: pytest.raises(DeployError, controller.deploy, "prod", d1, timeout_seconds=0.5)
    )
    worker.start()
    time.sleep(0.1)
    try:
        with pytest.raises(SlotBusy):
            controller.deploy("prod", d1, timeout_seconds=0.1)
    finally:
        worker.join()


def test_rollback_round_trip(tmp_path, controller, registry, slots, target):
    d1 = _stored(tmp_path, registry, 1, {"app.txt": "v1"})
    d2 = _stored(tmp_path, registry, 2, {"app.txt": "v2"})
    controller.deploy("prod", d1, timeout_seconds=1)
    controller.deploy("prod", d2, timeout_seconds=1)

    controller.rollback("prod", timeout_seconds=1)
    slot = slots.get("prod")
    assert (slot.current_artifact_digest, slot.previous_artifact_digest) == (d1, d2)
    assert target.running_digests("prod") == [d1]

    controller.rollback("prod", timeout_seconds=1)
    slot = slots.get("prod")
    assert (slot.current_artifact_digest, slot.previous_artifact_digest) == (d2, d1)
    assert target.running_digests("prod") == [d2]


def test_rollback_without_previous_fails(tmp_path, controller, registry):
    d1 = _stored(tmp_path, registry, 1, {"app.txt": "v1"})
    controller.deploy("prod", d1, timeout_seconds=1)
    with pytest.raises(RollbackError):
        controller.rollback("prod", timeout_seconds=1)


def test_failed_rollback_keeps_current_instance(tmp_path, controller, registry, slots, target):
    d1 = _stored(tmp_path, registry, 1, {"app.txt": "v1"})
    d2 = _stored(tmp_path, registry, 2, {"app.txt": "v2"})
    controller.deploy("prod", d1, timeout_seconds=1)
    controller.deploy("prod", d2, timeout_seconds=1)
    target.unhealthy_digests.add(d1)

    with pytest.raises(RollbackError):
        controller.rollback("prod", timeout_seconds=0.1)

    slot = slots.get("prod")
    assert (slot.current_artifact_digest, slot.previous_artifact_digest) == (d2, d1)
    assert target.running_digests("prod") == [d2]


def test_slot_locks_are_shared_between_controllers(tmp_path, target, slots, registry):
    locks = SlotLocks()
    first = DeploymentController(target, slots, registry, readiness_interval=0.01, locks=locks)
    second = DeploymentController(target, slots, registry, readiness_interval=0.01, locks=locks)
    d1 = _stored(tmp_path, registry, 1, {"app.txt": "v1"})

    with locks.get("prod"):
        with pytest.raises(SlotBusy):
            first.deploy("prod", d1, timeout_seconds=0.1)
        with pytest.raises(SlotBusy):
            second.rollback("prod", timeout_seconds=0.1)


def test_process_target_runs_and_stops_instances(tmp_path, registry):
    digest = _stored(tmp_path, registry, 1, {"marker.txt": "hello"})
    target = ProcessDeployTarget(
        tmp_path / "instances",
        command=[sys.executable, "-c", "import time; time.sleep(30)"],
        readiness_command=[sys.executable, "-c", "import os, sys; sys.exit(0 if os.path.exists('marker.txt') else 1)"],
        stop_timeout=5,
    )

    handle = target.start_instance("prod", registry.resolve(digest))
    try:
        assert target.readiness_check(handle)
        assert [h.instance_id for h in target.list_instances("prod")] == [handle.instance_id]
        recorded = json.loads((handle.workdir / "instance.json").read_text(encoding="utf-8"))
        assert recorded["digest"] == digest
        assert recorded["port"] == handle.port
    finally:
        target.stop_instance(handle)

    assert target.list_instances("prod") == []
    assert not handle.workdir.exists()


def test_readiness_error_stops_new_instance_and_restores_slot(tmp_path, controller, registry, slots, target):
    d1 = _stored(tmp_path, registry, 1, {"app.txt": "v1"})
    d2 = _stored(tmp_path, registry, 2, {"app.txt": "v2"})
    controller.deploy("prod", d1, timeout_seconds=1)
    before = slots.get("prod")
    target.readiness_error = RuntimeError("probe crashed")

    with pytest.raises(DeployError) as excinfo:
        controller.deploy("prod", d2, timeout_seconds=1)

    assert excinfo.value.reason == "health check failed"
    assert isinstance(excinfo.value.__cause__, RuntimeError)
    after = slots.get("prod")
    assert after == before
    assert after.state is SlotState.HEALTHY
    assert after.rollback_digest is None
    assert target.running_digests("prod") == [d1]


def test_failed_stop_of_new_instance_still_restores_slot(tmp_path, controller, registry, slots, target):
    d1 = _stored(tmp_path, registry, 1, {"app.txt": "v1"})
    d2 = _stored(tmp_path, registry, 2, {"app.txt": "v2"})
    controller.deploy("prod", d1, timeout_seconds=1)
    before = slots.get("prod")
    target.unhealthy_digests.add(d2)
    target.stop_error = OSError("permission denied")

    with pytest.raises(DeployError):
        controller.deploy("prod", d2, timeout_seconds=0.1)

    assert slots.get("prod") == before


def test_rollback_readiness_error_keeps_current(tmp_path, controller, registry, slots, target):
    d1 = _stored(tmp_path, registry, 1, {"app.txt": "v1"})
    d2 = _stored(tmp_path, registry, 2, {"app.txt": "v2"})
    controller.deploy("prod", d1, timeout_seconds=1)
    controller.deploy("prod", d2, timeout_seconds=1)
    before = slots.get("prod")
    target.readiness_error = RuntimeError("probe crashed")

    with pytest.raises(RollbackError):
        controller.rollback("prod", timeout_seconds=1)

    assert slots.get("prod") == before
    assert target.running_digests("prod") == [d2]


def test_slot_busy_is_retryable():
    assert SlotBusy("slot prod is busy").retryable is True
