"""Loading pipeline definitions from YAML or JSON files."""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Iterable, List

import yaml
from pydantic import ValidationError

from .errors import DefinitionError
from .models import PipelineDefinition

logger = logging.getLogger(__name__)

SUPPORTED_SUFFIXES = {".yaml", ".yml", ".json"}


def load_definition(path: Path) -> PipelineDefinition:
    """Read and validate a pipeline definition file.

    Relative ``source.location`` values are resolved against the definition's
    directory, since definitions live in version control next to the code
    they build.
    """

    path = Path(path)
    if not path.exists():
        raise DefinitionError(f"Pipeline definition {path} does not exist")
    if path.suffix.lower() not in SUPPORTED_SUFFIXES:
        raise DefinitionError(f"Unsupported definition type: {path}")

    text = path.read_text(encoding="utf-8")
    try:
        data = json.loads(text) if path.suffix.lower() == ".json" else yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise DefinitionError(f"Could not parse {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise DefinitionError(f"Pipeline definition {path} must contain a mapping")

    source = data.get("source")
    if isinstance(source, dict) and source.get("location"):
        location = Path(str(source["location"])).expanduser()
        if not location.is_absolute() and "://" not in str(source["location"]):
            source = {**source, "location": str((path.parent / location).resolve())}
            data = {**data, "source": source}

    try:
        definition = PipelineDefinition.from_mapping(data)
    except ValidationError as exc:
        raise DefinitionError(f"Invalid pipeline definition {path}: {exc}") from exc
    logger.debug("Loaded pipeline %s version %s from %s", definition.name, definition.version, path)
    return definition


def load_definitions(paths: Iterable[Path]) -> List[PipelineDefinition]:
    definitions: List[PipelineDefinition] = []
    names = set()
    for path in paths:
        definition = load_definition(path)
        if definition.name in names:
            raise DefinitionError(f"Pipeline {definition.name!r} is defined more than once")
        names.add(definition.name)
        definitions.append(definition)
    return definitions


__all__ = ["load_definition", "load_definitions"]
