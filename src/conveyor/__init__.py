"""
Conveyor - a small CI/CD pipeline engine.

The package exposes the scheduler that watches sources for new revisions and
drives each run through build, push and deploy stages, plus the CLI and HTTP
trigger surfaces built on top of it.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("conveyor-ci")
except PackageNotFoundError:  # pragma: no cover - fallback for editable installs
    __version__ = "0.0.0"

__all__ = ["__version__"]
