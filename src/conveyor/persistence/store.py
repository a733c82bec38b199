from __future__ import annotations

import datetime as dt
import threading
from typing import Any, Dict, Iterable, List, Optional, Set

from sqlalchemy.orm import Session, sessionmaker

from ..errors import PipelineBusy
from ..models import (
    DeploymentSlot,
    HealthStatus,
    PipelineDefinition,
    Run,
    RunStatus,
    SlotState,
    StageResult,
    StageStatus,
    utcnow,
)
from .database import (
    ObservedRevision,
    PipelineDefinitionRecord,
    RunEvent,
    RunRecord,
    SlotRecord,
    StageRecord,
    session_scope,
)

ACTIVE_STATUSES = (RunStatus.QUEUED.value, RunStatus.RUNNING.value)


def _aware(value: Optional[dt.datetime]) -> Optional[dt.datetime]:
    # SQLite hands datetimes back without tzinfo; everything is stored in UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=dt.timezone.utc)
    return value


class RunStore:
    """
    Persists pipeline definitions, runs, stage results and run events.

    Each run owns its stage rows; only the run executor updates them, through
    :meth:`save_stage`.
    """

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory
        self._create_lock = threading.Lock()

    def record_definition(self, definition: PipelineDefinition) -> None:
        with session_scope(self._session_factory) as session:
            existing = (
                session.query(PipelineDefinitionRecord)
                .filter_by(name=definition.name, version=definition.version)
                .first()
            )
            if existing is None:
                session.add(
                    PipelineDefinitionRecord(
                        name=definition.name,
                        version=definition.version,
                        body=definition.model_dump(mode="json"),
                    )
                )

    def load_definition(self, name: str, version: str) -> PipelineDefinition:
        with session_scope(self._session_factory) as session:
            record = session.query(PipelineDefinitionRecord).filter_by(name=name, version=version).first()
            if record is None:
                raise KeyError(f"Pipeline {name} version {version} not found")
            return PipelineDefinition.model_validate(record.body)

    def create_run(
        self,
        pipeline: str,
        revision_id: str,
        definition_version: str,
        stage_names: Iterable[str],
        config: Optional[Dict[str, Any]] = None,
    ) -> Run:
        """Insert a queued run with pending stages.

        Raises :class:`PipelineBusy` if the pipeline already has a queued or
        running run.
        """
        with self._create_lock, session_scope(self._session_factory) as session:
            active = (
                session.query(RunRecord)
                .filter(RunRecord.pipeline == pipeline, RunRecord.status.in_(ACTIVE_STATUSES))
                .first()
            )
            if active is not None:
                raise PipelineBusy(f"Pipeline {pipeline} already has active run {active.run_id}")
            record = RunRecord(
                pipeline=pipeline,
                revision_id=revision_id,
                definition_version=definition_version,
                status=RunStatus.QUEUED.value,
                created_at=utcnow(),
                config_json=config,
            )
            session.add(record)
            session.flush()
            for position, name in enumerate(stage_names):
                session.add(
                    StageRecord(
                        run_id=record.run_id,
                        position=position,
                        stage_name=name,
                        status=StageStatus.PENDING.value,
                        attempts=0,
                        output={},
                    )
                )
            session.flush()
            session.refresh(record)
            return self._to_run(record)

    def mark_running(self, run_id: int) -> None:
        with session_scope(self._session_factory) as session:
            record = self._get(session, run_id)
            record.status = RunStatus.RUNNING.value
            record.started_at = utcnow()

    def finalize_run(self, run_id: int, status: RunStatus, error: Optional[str] = None) -> None:
        with session_scope(self._session_factory) as session:
            record = self._get(session, run_id)
            if RunStatus(record.status).is_terminal:
                raise ValueError(f"Run {run_id} is already {record.status}")
            record.status = status.value
            record.finished_at = utcnow()
            record.error = error

    def save_stage(self, run_id: int, result: StageResult) -> None:
        with session_scope(self._session_factory) as session:
            record = session.query(StageRecord).filter_by(run_id=run_id, stage_name=result.stage_name).one()
            record.status = result.status.value
            record.attempts = result.attempts
            record.log_ref = result.log_ref
            record.started_at = result.started_at
            record.finished_at = result.finished_at
            record.error = result.error
            record.output = result.output

    def record_event(
        self,
        run_id: Optional[int],
        event_type: str,
        message: str,
        payload: Optional[Dict[str, Any]] = None,
        pipeline: Optional[str] = None,
    ) -> None:
        with session_scope(self._session_factory) as session:
            session.add(
                RunEvent(
                    run_id=run_id,
                    pipeline=pipeline,
                    event_type=event_type,
                    message=message,
                    payload=payload or {},
                    created_at=utcnow(),
                )
            )

    def events(self, run_id: int) -> List[Dict[str, Any]]:
        with session_scope(self._session_factory) as session:
            rows = session.query(RunEvent).filter_by(run_id=run_id).order_by(RunEvent.id).all()
            return [
                {
                    "event_type": row.event_type,
                    "message": row.message,
                    "payload": row.payload,
                    "created_at": _aware(row.created_at),
                }
                for row in rows
            ]

    def load_run(self, run_id: int) -> Run:
        with session_scope(self._session_factory) as session:
            return self._to_run(self._get(session, run_id))

    def list_runs(self, pipeline: Optional[str] = None, limit: int = 20) -> List[Run]:
        with session_scope(self._session_factory) as session:
            query = session.query(RunRecord)
            if pipeline:
                query = query.filter(RunRecord.pipeline == pipeline)
            rows = query.order_by(RunRecord.run_id.desc()).limit(limit).all()
            return [self._to_run(row) for row in rows]

    def active_runs(self, pipeline: str) -> List[Run]:
        with session_scope(self._session_factory) as session:
            rows = (
                session.query(RunRecord)
                .filter(RunRecord.pipeline == pipeline, RunRecord.status.in_(ACTIVE_STATUSES))
                .all()
            )
            return [self._to_run(row) for row in rows]

    def abort_orphaned_runs(self) -> List[int]:
        """Mark runs left queued/running by a previous process as aborted."""
        with session_scope(self._session_factory) as session:
            rows = session.query(RunRecord).filter(RunRecord.status.in_(ACTIVE_STATUSES)).all()
            now = utcnow()
            for row in rows:
                row.status = RunStatus.ABORTED.value
                row.finished_at = now
                row.error = "orphaned"
                for stage in row.stages:
                    if not StageStatus(stage.status).is_terminal:
                        stage.status = StageStatus.SKIPPED.value
                        stage.finished_at = now
            return [row.run_id for row in rows]

    def last_observed_revision(self, pipeline: str) -> Optional[str]:
        with session_scope(self._session_factory) as session:
            row = session.get(ObservedRevision, pipeline)
            return row.revision_id if row else None

    def record_observed_revision(self, pipeline: str, revision_id: str) -> None:
        with session_scope(self._session_factory) as session:
            row = session.get(ObservedRevision, pipeline)
            if row is None:
                session.add(ObservedRevision(pipeline=pipeline, revision_id=revision_id, observed_at=utcnow()))
            else:
                row.revision_id = revision_id

    @staticmethod
    def _get(session: Session, run_id: int) -> RunRecord:
        record = session.get(RunRecord, run_id)
        if record is None:
            raise KeyError(f"Run {run_id} not found")
        return record

    @staticmethod
    def _to_run(record: RunRecord) -> Run:
        return Run(
            run_id=record.run_id,
            pipeline=record.pipeline,
            revision_id=record.revision_id,
            definition_version=record.definition_version,
            status=RunStatus(record.status),
            created_at=_aware(record.created_at),
            started_at=_aware(record.started_at),
            finished_at=_aware(record.finished_at),
            error=record.error,
            stages=[
                StageResult(
                    stage_name=stage.stage_name,
                    status=StageStatus(stage.status),
                    attempts=stage.attempts,
                    log_ref=stage.log_ref,
                    started_at=_aware(stage.started_at),
                    finished_at=_aware(stage.finished_at),
                    error=stage.error,
                    output=stage.output or {},
                )
                for stage in record.stages
            ],
        )


class SlotStore:
    """Persists deployment slot state; written only by the deployment controller."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def get(self, slot_id: str) -> DeploymentSlot:
        with session_scope(self._session_factory) as session:
            record = session.get(SlotRecord, slot_id)
            if record is None:
                return DeploymentSlot(slot_id=slot_id)
            return DeploymentSlot(
                slot_id=record.slot_id,
                current_artifact_digest=record.current_digest,
                previous_artifact_digest=record.previous_digest,
                rollback_digest=record.rollback_digest,
                health_status=HealthStatus(record.health_status),
                state=SlotState(record.state),
                updated_at=_aware(record.updated_at),
            )

    def save(self, slot: DeploymentSlot, *, touch: bool = True) -> DeploymentSlot:
        """Upsert *slot*; with ``touch=False`` the stored ``updated_at`` is kept as given."""
        with session_scope(self._session_factory) as session:
            record = session.get(SlotRecord, slot.slot_id)
            if record is None:
                record = SlotRecord(slot_id=slot.slot_id)
                session.add(record)
            record.current_digest = slot.current_artifact_digest
            record.previous_digest = slot.previous_artifact_digest
            record.rollback_digest = slot.rollback_digest
            record.health_status = slot.health_status.value
            record.state = slot.state.value
            record.updated_at = utcnow() if touch else slot.updated_at
        return slot

    def list_slots(self) -> List[DeploymentSlot]:
        with session_scope(self._session_factory) as session:
            slot_ids = [row.slot_id for row in session.query(SlotRecord).order_by(SlotRecord.slot_id).all()]
        return [self.get(slot_id) for slot_id in slot_ids]

    def referenced_digests(self) -> Set[str]:
        """Digests a live slot may still run or roll back to."""
        with session_scope(self._session_factory) as session:
            digests: Set[str] = set()
            for row in session.query(SlotRecord).all():
                digests.update(d for d in (row.current_digest, row.previous_digest, row.rollback_digest) if d)
            return digests
