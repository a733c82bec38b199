"""Runtime configuration built on pydantic settings."""
from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class SandboxPolicy(BaseModel):
    """Control which commands build and shell stages may execute."""

    allow_package_installs: bool = True
    allowed_executables: Optional[List[str]] = None


class PathsConfig(BaseModel):
    """Filesystem layout for state, logs, snapshots and the registry."""

    root: Path
    data_dir: Path
    registry_dir: Path
    db_path: Path


class SchedulerConfig(BaseModel):
    poll_interval_seconds: float = 60.0
    max_workers: int = 4
    cancel_grace_seconds: float = 30.0


class RetryConfig(BaseModel):
    """Exponential backoff applied to retryable stages."""

    base_seconds: float = 2.0
    cap_seconds: float = 60.0
    max_attempts: int = 3


class RetentionConfig(BaseModel):
    """Registry prune policy applied by the cleanup step after every run."""

    max_age_seconds: float = 7 * 24 * 3600
    keep_run_tags: Optional[int] = 10


class RegistryConfig(BaseModel):
    credential_id: Optional[str] = None


class DeployConfig(BaseModel):
    readiness_interval_seconds: float = 1.0
    default_timeout_seconds: float = 120.0


def build_paths(root: Path) -> PathsConfig:
    """Construct the default filesystem layout under *root*."""
    data_dir = root / "var"
    return PathsConfig(
        root=root,
        data_dir=data_dir,
        registry_dir=data_dir / "registry",
        db_path=data_dir / "conveyor.sqlite",
    )


class Settings(BaseSettings):
    """Top level configuration consumed throughout the engine."""

    model_config = SettingsConfigDict(env_prefix="CONVEYOR_", env_nested_delimiter="__", extra="ignore")

    environment: str = "local"
    paths: PathsConfig = Field(default_factory=lambda: build_paths(Path.cwd()))
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    retention: RetentionConfig = Field(default_factory=RetentionConfig)
    registry: RegistryConfig = Field(default_factory=RegistryConfig)
    deploy: DeployConfig = Field(default_factory=DeployConfig)
    sandbox: SandboxPolicy = Field(default_factory=SandboxPolicy)

    @property
    def database_url(self) -> str:
        return f"sqlite:///{self.paths.db_path}"

    def ensure_directories(self) -> None:
        for directory in (self.paths.data_dir, self.paths.registry_dir, self.paths.db_path.parent):
            directory.mkdir(parents=True, exist_ok=True)

    def to_dict(self) -> Dict[str, Any]:
        """Return a JSON serialisable copy of the settings for persistence."""
        return self.model_dump(mode="json")


def load_config(path: Optional[Path] = None, root: Optional[Path] = None) -> Settings:
    """
    Load settings from *path* if provided, otherwise use defaults and environment.

    The file may be YAML or JSON. A ``paths.root`` override re-derives the whole
    layout; individual path keys then override the derived values.
    """
    payload: Dict[str, Any] = {}
    if path is not None:
        payload = _read_mapping(Path(path).expanduser())

    paths_override = payload.pop("paths", None) or {}
    settings = Settings(**payload)
    if not paths_override and root is None:
        return settings

    base = Path(paths_override.get("root", root or settings.paths.root))
    paths = build_paths(base)
    for key in ("data_dir", "registry_dir", "db_path"):
        if key in paths_override:
            setattr(paths, key, Path(paths_override[key]))
    if paths_override.get("data_dir") and "registry_dir" not in paths_override:
        paths.registry_dir = paths.data_dir / "registry"
    if paths_override.get("data_dir") and "db_path" not in paths_override:
        paths.db_path = paths.data_dir / "conveyor.sqlite"
    settings.paths = paths
    return settings


def _read_mapping(path: Path) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as handle:
        if path.suffix.lower() == ".json":
            data = json.load(handle)
        else:
            data = yaml.safe_load(handle) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Configuration file {path} must contain a mapping")
    return data


__all__ = [
    "DeployConfig",
    "PathsConfig",
    "RegistryConfig",
    "RetentionConfig",
    "RetryConfig",
    "SandboxPolicy",
    "SchedulerConfig",
    "Settings",
    "build_paths",
    "load_config",
]
