import sqlite3
import time

import pytest

from conftest import DEFAULT_STAGES, make_definition
from conveyor.errors import PipelineBusy, PushError, UnknownAction, UnknownPipeline
from conveyor.models import RunStatus, StageStatus

GATE_STAGES = [{"name": "wait", "action": "gate", "timeout_seconds": 10}]


def _events(settings, run_id=None):
    with sqlite3.connect(settings.paths.db_path) as conn:
        if run_id is None:
            rows = conn.execute("SELECT event_type FROM run_events ORDER BY id")
        else:
            rows = conn.execute("SELECT event_type FROM run_events WHERE run_id = ? ORDER BY id", (run_id,))
        return [row[0] for row in rows]


def test_happy_path_builds_pushes_and_deploys(make_scheduler, source, store, service_factory, settings):
    source.add_revision("abc123", {"app.txt": "v1"})
    scheduler = make_scheduler([make_definition()])

    run = scheduler.notify("demo", "abc123")
    assert scheduler.wait_idle(timeout=30)

    finished = store.load_run(run.run_id)
    assert finished.status is RunStatus.SUCCEEDED
    assert [stage.status for stage in finished.stages] == [StageStatus.SUCCEEDED] * 4
    d1 = finished.stage("build").output["digest"]
    assert service_factory.slots.get("prod").current_artifact_digest == d1
    assert service_factory.registry.pull("latest", "demo").digest == d1
    assert service_factory.registry.pull(str(run.run_id), "demo").digest == d1
    assert not (settings.paths.data_dir / "runs" / str(run.run_id) / "artifact.tar.gz").exists()

    events = _events(settings, run.run_id)
    assert events[0] == "run_started"
    assert events.count("stage_completed") == 4
    assert "run_completed" in events


def test_readiness_timeout_fails_run_and_keeps_slot(make_scheduler, source, store, service_factory, target):
    source.add_revision("abc123", {"app.txt": "v1"})
    target.healthy = False
    scheduler = make_scheduler([make_definition()])

    run = scheduler.notify("demo", "abc123")
    assert scheduler.wait_idle(timeout=30)

    finished = store.load_run(run.run_id)
    assert finished.status is RunStatus.FAILED
    assert finished.stage("deploy").status is StageStatus.FAILED
    assert "health check failed" in finished.stage("deploy").error
    d1 = finished.stage("build").output["digest"]
    slot = service_factory.slots.get("prod")
    assert slot.current_artifact_digest is None
    assert slot.rollback_digest is None
    assert service_factory.registry.resolve(d1).digest == d1
    assert service_factory.registry.pull("latest", "demo").digest == d1
    assert target.running_digests("prod") == []


def test_failed_deploy_keeps_previous_release_running(make_scheduler, source, store, service_factory, target):
    scheduler = make_scheduler([make_definition()])
    source.add_revision("r1", {"app.txt": "v1"})
    first = scheduler.notify("demo", "r1")
    assert scheduler.wait_idle(timeout=30)
    d1 = store.load_run(first.run_id).stage("build").output["digest"]

    target.healthy = False
    source.add_revision("r2", {"app.txt": "v2"})
    second = scheduler.notify("demo", "r2")
    assert scheduler.wait_idle(timeout=30)

    assert store.load_run(second.run_id).status is RunStatus.FAILED
    assert service_factory.slots.get("prod").current_artifact_digest == d1
    assert target.running_digests("prod") == [d1]


def test_revisions_coalesce_while_busy(make_scheduler, actions, store):
    gate = actions.get("gate")
    scheduler = make_scheduler([make_definition(stages=GATE_STAGES)])

    first = scheduler.notify("demo", "r1")
    assert gate.entered.wait(5)
    assert scheduler.notify("demo", "r2") is None
    assert scheduler.notify("demo", "r3") is None
    gate.release.set()
    assert scheduler.wait_idle(timeout=30)

    assert gate.seen == ["r1", "r3"]
    runs = store.list_runs(pipeline="demo")
    assert [run.revision_id for run in runs] == ["r3", "r1"]
    assert runs[1].run_id == first.run_id
    assert all(run.status is RunStatus.SUCCEEDED for run in runs)


def test_at_most_one_active_run_per_pipeline(make_scheduler, actions, store):
    gate = actions.get("gate")
    definition = make_definition(stages=GATE_STAGES)
    scheduler = make_scheduler([definition])

    scheduler.notify("demo", "r1")
    assert gate.entered.wait(5)
    assert len(store.active_runs("demo")) == 1
    with pytest.raises(PipelineBusy):
        store.create_run("demo", "r9", definition.version, ["wait"])
    gate.release.set()
    assert scheduler.wait_idle(timeout=30)
    assert store.active_runs("demo") == []


def test_pipelines_run_in_parallel(make_scheduler, actions):
    gate = actions.get("gate")
    scheduler = make_scheduler([make_definition("one", GATE_STAGES), make_definition("two", GATE_STAGES)])

    first = scheduler.notify("one", "r1")
    second = scheduler.notify("two", "r1")

    assert first is not None and second is not None
    gate.release.set()
    assert scheduler.wait_idle(timeout=30)


def test_transient_source_errors_are_retried(make_scheduler, source, store):
    source.add_revision("r1", {"app.txt": "v1"})
    source.fetch_failures = 2
    stages = [{"name": "checkout", "action": "checkout", "retryable": True}]
    scheduler = make_scheduler([make_definition(stages=stages)])

    run = scheduler.notify("demo", "r1")
    assert scheduler.wait_idle(timeout=30)

    stage = store.load_run(run.run_id).stage("checkout")
    assert stage.status is StageStatus.SUCCEEDED
    assert stage.attempts == 3


def test_non_retryable_stage_fails_on_first_error(make_scheduler, source, store, settings):
    source.add_revision("r1", {"app.txt": "v1"})
    source.fetch_failures = 1
    stages = [{"name": "checkout", "action": "checkout"}, {"name": "later", "action": "checkout"}]
    scheduler = make_scheduler([make_definition(stages=stages)])

    run = scheduler.notify("demo", "r1")
    assert scheduler.wait_idle(timeout=30)

    finished = store.load_run(run.run_id)
    assert finished.status is RunStatus.FAILED
    assert finished.stage("checkout").attempts == 1
    assert finished.stage("later").status is StageStatus.SKIPPED
    assert _events(settings, run.run_id).count("stage_attempt_failed") == 1


def test_stage_timeout_is_retried_then_fails(make_scheduler, actions, store):
    stall = actions.get("stall")
    stages = [{"name": "slow", "action": "stall", "timeout_seconds": 0.1, "retryable": True}]
    scheduler = make_scheduler([make_definition(stages=stages)])

    run = scheduler.notify("demo", "r1")
    assert scheduler.wait_idle(timeout=30)

    stage = store.load_run(run.run_id).stage("slow")
    assert stage.status is StageStatus.FAILED
    assert stage.attempts == 3
    assert "timed out" in stage.error
    assert stage.output["type"] == "StageTimeout"
    assert stall.calls == 3


def test_non_fatal_stage_failure_does_not_halt_run(make_scheduler, source, store):
    source.add_revision("r1", {"app.txt": "v1"})
    stages = [
        {"name": "lint", "action": "explode", "fatal": False},
        {"name": "checkout", "action": "checkout"},
    ]
    scheduler = make_scheduler([make_definition(stages=stages)])

    run = scheduler.notify("demo", "r1")
    assert scheduler.wait_idle(timeout=30)

    finished = store.load_run(run.run_id)
    assert finished.status is RunStatus.SUCCEEDED
    assert finished.stage("lint").status is StageStatus.FAILED
    assert finished.stage("lint").output["type"] == "RuntimeError"
    assert finished.stage("checkout").status is StageStatus.SUCCEEDED


def test_abort_skips_remaining_stages(make_scheduler, actions, store, source):
    gate = actions.get("gate")
    source.add_revision("r1", {"app.txt": "v1"})
    stages = GATE_STAGES + [{"name": "checkout", "action": "checkout"}]
    scheduler = make_scheduler([make_definition(stages=stages)])

    run = scheduler.notify("demo", "r1")
    assert gate.entered.wait(5)
    assert scheduler.abort(run.run_id) is True
    assert scheduler.wait_idle(timeout=30)

    finished = store.load_run(run.run_id)
    assert finished.status is RunStatus.ABORTED
    assert finished.error == "aborted"
    assert finished.stage("wait").status is StageStatus.FAILED
    assert finished.stage("checkout").status is StageStatus.SKIPPED
    assert scheduler.abort(run.run_id) is False


def test_cleanup_failure_is_an_alert_not_a_run_failure(make_scheduler, source, store, service_factory, monkeypatch, settings):
    def _broken_prune(policy):
        raise OSError("disk on fire")

    monkeypatch.setattr(service_factory.registry, "prune", _broken_prune)
    source.add_revision("r1", {"app.txt": "v1"})
    scheduler = make_scheduler([make_definition()])

    run = scheduler.notify("demo", "r1")
    assert scheduler.wait_idle(timeout=30)

    assert store.load_run(run.run_id).status is RunStatus.SUCCEEDED
    assert "alert" in _events(settings, run.run_id)


def test_poll_once_only_notifies_new_revisions(make_scheduler, source, store):
    stages = [{"name": "checkout", "action": "checkout"}]
    scheduler = make_scheduler([make_definition(stages=stages)])
    source.add_revision("r1", {"app.txt": "v1"})

    assert scheduler.poll_once() == {"demo": "r1"}
    assert scheduler.wait_idle(timeout=30)
    scheduler.poll_once()
    assert scheduler.wait_idle(timeout=30)
    assert len(store.list_runs(pipeline="demo")) == 1

    source.unavailable = True
    assert scheduler.poll_once() == {"demo": None}
    assert store.last_observed_revision("demo") == "r1"


def test_trigger_uses_latest_revision(make_scheduler, source, store):
    stages = [{"name": "checkout", "action": "checkout"}]
    scheduler = make_scheduler([make_definition(stages=stages)])
    source.add_revision("r1", {"app.txt": "v1"})
    source.add_revision("r2", {"app.txt": "v2"})

    run = scheduler.trigger("demo")
    assert scheduler.wait_idle(timeout=30)
    assert run.revision_id == "r2"


def test_unknown_pipeline_and_action(make_scheduler):
    scheduler = make_scheduler([make_definition(stages=[{"name": "checkout", "action": "checkout"}])])
    with pytest.raises(UnknownPipeline):
        scheduler.notify("missing", "r1")
    with pytest.raises(UnknownAction):
        scheduler.register(make_definition("other", stages=[{"name": "x", "action": "teleport"}]))


def test_orphaned_runs_are_aborted_on_recover(make_scheduler, store):
    definition = make_definition(stages=GATE_STAGES)
    orphan = store.create_run("demo", "r0", definition.version, ["wait"])
    scheduler = make_scheduler([definition])

    assert scheduler.recover() == [orphan.run_id]
    recovered = store.load_run(orphan.run_id)
    assert recovered.status is RunStatus.ABORTED
    assert recovered.error == "orphaned"
    assert recovered.stage("wait").status is StageStatus.SKIPPED




def test_poll_keeps_revision_blocked_by_another_process(make_scheduler, source, store):
    definition = make_definition(stages=[{"name": "checkout", "action": "checkout"}])
    scheduler = make_scheduler([definition])
    foreign = store.create_run("demo", "x0", definition.version, ["checkout"])
    source.add_revision("r1", {"app.txt": "v1"})

    assert scheduler.poll_once() == {"demo": "r1"}
    assert store.last_observed_revision("demo") is None
    with pytest.raises(PipelineBusy):
        scheduler.notify("demo", "r1")

    store.finalize_run(foreign.run_id, RunStatus.ABORTED, "finished elsewhere")
    scheduler.poll_once()
    assert scheduler.wait_idle(timeout=30)

    runs = store.list_runs(pipeline="demo")
    assert [run.revision_id for run in runs] == ["r1", "x0"]
    assert runs[0].status is RunStatus.SUCCEEDED
    assert store.last_observed_revision("demo") == "r1"


def test_vanished_revision_raises_pipeline_alert(make_scheduler, store, settings):
    scheduler = make_scheduler([make_definition(stages=[{"name": "checkout", "action": "checkout", "retryable": True}])])

    run = scheduler.notify("demo", "gone")
    assert scheduler.wait_idle(timeout=30)

    finished = store.load_run(run.run_id)
    assert finished.status is RunStatus.FAILED
    assert finished.stage("checkout").attempts == 1
    assert finished.stage("checkout").output["type"] == "RevisionNotFound"
    assert "alert" in _events(settings, run.run_id)


def test_timed_out_stage_finishes_before_run_completes(make_scheduler, actions, store):
    linger = actions.get("linger")
    scheduler = make_scheduler([make_definition(stages=[{"name": "slow", "action": "linger", "timeout_seconds": 0.1}])])

    run = scheduler.notify("demo", "r1")
    assert scheduler.wait_idle(timeout=30)

    assert linger.finished.is_set()
    stage = store.load_run(run.run_id).stage("slow")
    assert stage.status is StageStatus.FAILED
    assert stage.output["type"] == "StageTimeout"


def _flaky_push(registry, monkeypatch, kind, failures):
    original = registry.push
    calls = []

    def _push(artifact, tags):
        calls.append(artifact.digest)
        if len(calls) <= failures:
            raise PushError("registry unreachable", kind=kind)
        return original(artifact, tags)

    monkeypatch.setattr(registry, "push", _push)
    return calls


def _with_retryable_push():
    return [dict(stage, retryable=True) if stage["action"] == "push" else stage for stage in DEFAULT_STAGES]


def test_network_push_error_is_retried(make_scheduler, source, store, service_factory, monkeypatch):
    calls = _flaky_push(service_factory.registry, monkeypatch, "network", failures=1)
    source.add_revision("r1", {"app.txt": "v1"})
    scheduler = make_scheduler([make_definition(stages=_with_retryable_push())])

    run = scheduler.notify("demo", "r1")
    assert scheduler.wait_idle(timeout=30)

    finished = store.load_run(run.run_id)
    assert finished.status is RunStatus.SUCCEEDED
    assert finished.stage("push").attempts == 2
    assert len(calls) == 2


def test_auth_push_error_is_not_retried(make_scheduler, source, store, service_factory, monkeypatch):
    calls = _flaky_push(service_factory.registry, monkeypatch, "auth", failures=5)
    source.add_revision("r1", {"app.txt": "v1"})
    scheduler = make_scheduler([make_definition(stages=_with_retryable_push())])

    run = scheduler.notify("demo", "r1")
    assert scheduler.wait_idle(timeout=30)

    finished = store.load_run(run.run_id)
    assert finished.status is RunStatus.FAILED
    assert finished.stage("push").attempts == 1
    assert finished.stage("push").output["kind"] == "auth"
    assert finished.stage("deploy").status is StageStatus.SKIPPED
    assert len(calls) == 1


def test_abort_during_deploy_restores_slot(make_scheduler, source, store, service_factory, target):
    stages = DEFAULT_STAGES[:3] + [
        {"name": "deploy", "action": "deploy", "parameters": {"slot": "prod", "readiness_timeout_seconds": 10}}
    ]
    target.healthy = False
    source.add_revision("r1", {"app.txt": "v1"})
    scheduler = make_scheduler([make_definition(stages=stages)])

    run = scheduler.notify("demo", "r1")
    deadline = time.monotonic() + 10
    while not target.started and time.monotonic() < deadline:
        time.sleep(0.01)
    assert target.started
    assert scheduler.abort(run.run_id) is True
    assert scheduler.wait_idle(timeout=30)

    finished = store.load_run(run.run_id)
    assert finished.status is RunStatus.ABORTED
    assert "aborted" in finished.stage("deploy").error
    slot = service_factory.slots.get("prod")
    assert slot.current_artifact_digest is None
    assert slot.rollback_digest is None
    assert target.running_digests("prod") == []
