"""Wiring of the per-pipeline collaborators a run needs."""
from __future__ import annotations

import json
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session, sessionmaker

from .builder import ImageBuilder, LayerCache
from .config import Settings
from .credentials import CredentialStore, EnvCredentialStore
from .deploy import DeploymentController, DeployTarget, SlotLocks, build_deploy_target
from .models import PipelineDefinition
from .persistence.store import SlotStore
from .registry import ArtifactRegistry
from .source import SourceProvider, build_source_provider

TargetFactory = Callable[[Dict[str, Any]], DeployTarget]


@dataclass
class PipelineServices:
    """Everything stage actions talk to while executing one pipeline."""

    source: SourceProvider
    builder: ImageBuilder
    registry: ArtifactRegistry
    slots: SlotStore
    target_factory: TargetFactory
    slot_locks: SlotLocks = field(default_factory=SlotLocks)
    readiness_interval: float = 1.0
    _controllers: Dict[str, DeploymentController] = field(default_factory=dict, repr=False)
    _guard: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def controller_for(self, target_parameters: Optional[Dict[str, Any]] = None) -> DeploymentController:
        """Return the controller for a deploy target configuration, creating it once."""
        parameters = dict(target_parameters or {})
        key = json.dumps(parameters, sort_keys=True, default=str)
        with self._guard:
            controller = self._controllers.get(key)
            if controller is None:
                controller = DeploymentController(
                    self.target_factory(parameters),
                    self.slots,
                    self.registry,
                    readiness_interval=self.readiness_interval,
                    locks=self.slot_locks,
                )
                self._controllers[key] = controller
            return controller


class ServiceFactory:
    """
    Build :class:`PipelineServices` for pipeline definitions.

    The registry, slot store, layer cache and slot locks are shared by every
    pipeline; only the source provider is per pipeline.
    """

    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker[Session],
        credentials: Optional[CredentialStore] = None,
        target_factory: Optional[TargetFactory] = None,
    ) -> None:
        self._settings = settings
        self.slots = SlotStore(session_factory)
        self.slot_locks = SlotLocks()
        self.registry = ArtifactRegistry(
            settings.paths.registry_dir,
            session_factory,
            credentials=credentials or EnvCredentialStore(),
            credential_id=settings.registry.credential_id,
            pinned_digests=self.slots.referenced_digests,
        )
        self.builder = ImageBuilder(LayerCache(settings.paths.data_dir / "layers"), policy=settings.sandbox)
        self._target_factory = target_factory or (lambda parameters: build_deploy_target(parameters, settings))

    def __call__(self, definition: PipelineDefinition) -> PipelineServices:
        return PipelineServices(
            source=build_source_provider(definition.source, definition.name, self._settings),
            builder=self.builder,
            registry=self.registry,
            slots=self.slots,
            target_factory=self._target_factory,
            slot_locks=self.slot_locks,
            readiness_interval=self._settings.deploy.readiness_interval_seconds,
        )


__all__ = ["PipelineServices", "ServiceFactory", "TargetFactory"]
