"""Deploy target interface: how instances of an artifact are started and probed."""
from __future__ import annotations

import abc
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..models import Artifact


@dataclass
class InstanceHandle:
    """A running (or starting) instance of one artifact in one slot."""

    slot_id: str
    instance_id: str
    digest: str
    pid: Optional[int] = None
    port: Optional[int] = None
    workdir: Optional[Path] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "slot_id": self.slot_id,
            "instance_id": self.instance_id,
            "digest": self.digest,
            "pid": self.pid,
            "port": self.port,
            "workdir": str(self.workdir) if self.workdir else None,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InstanceHandle":
        return cls(
            slot_id=data["slot_id"],
            instance_id=data["instance_id"],
            digest=data["digest"],
            pid=data.get("pid"),
            port=data.get("port"),
            workdir=Path(data["workdir"]) if data.get("workdir") else None,
            metadata=data.get("metadata") or {},
        )


class DeployTarget(abc.ABC):
    """Runtime that hosts instances for the deployment controller."""

    @abc.abstractmethod
    def start_instance(self, slot_id: str, artifact: Artifact) -> InstanceHandle:
        """Start a new instance next to whatever already runs in the slot."""

    @abc.abstractmethod
    def readiness_check(self, handle: InstanceHandle) -> bool:
        """Single non-blocking probe; the controller does the polling."""

    @abc.abstractmethod
    def stop_instance(self, handle: InstanceHandle) -> None:
        """Stop the instance; stopping an already stopped instance is a no-op."""

    @abc.abstractmethod
    def list_instances(self, slot_id: str) -> List[InstanceHandle]:
        """Instances currently known for the slot, oldest first."""


__all__ = ["DeployTarget", "InstanceHandle"]
