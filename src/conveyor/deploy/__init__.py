"""Deployment controller and the targets it drives."""

from .base import DeployTarget, InstanceHandle
from .controller import DeploymentController, SlotLocks
from .process import ProcessDeployTarget, build_deploy_target

__all__ = [
    "DeployTarget",
    "DeploymentController",
    "InstanceHandle",
    "ProcessDeployTarget",
    "SlotLocks",
    "build_deploy_target",
]
