"""Load pipeline definitions from YAML or Python files."""

from __future__ import annotations

import runpy
from collections.abc import Hashable
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import ValidationError

from .errors import DuplicateName, PipelineLoadError
from .model import Pipeline
from .schema import PipelineDoc

YAML_SUFFIXES = (".yml", ".yaml")


class _UniqueKeyLoader(yaml.SafeLoader):
    """SafeLoader that rejects duplicate mapping keys instead of keeping the last one."""

    def construct_mapping(self, node, deep=False):
        seen = set()
        for key_node, _value_node in node.value:
            key = self.construct_object(key_node, deep=deep)
            if not isinstance(key, Hashable):
                raise yaml.constructor.ConstructorError(
                    "while constructing a mapping", node.start_mark, "found unhashable key", key_node.start_mark
                )
            if key in seen:
                line = key_node.start_mark.line + 1
                raise DuplicateName(f"mapping at line {line}", str(key))
            seen.add(key)
        return super().construct_mapping(node, deep=deep)


def parse_pipeline(text: str, *, name: str = "pipeline", source: str = "<string>") -> Pipeline:
    """Parse YAML *text* into a Pipeline (structure only; see ``validate_pipeline``)."""
    try:
        data: Any = yaml.load(text, Loader=_UniqueKeyLoader)
    except yaml.YAMLError as e:
        raise PipelineLoadError(f"Invalid YAML in {source}: {e}") from e

    if not isinstance(data, dict):
        raise PipelineLoadError(f"Expected a YAML mapping in {source}, got {type(data).__name__}")

    try:
        doc = PipelineDoc.model_validate(data)
    except ValidationError as e:
        raise PipelineLoadError(f"Validation failed for {source}:\n{e}") from e
    return doc.to_pipeline(default_name=name)


def _load_python(path: Path) -> Pipeline:
    """
    Load a pipeline from a python file.

    The file must define either:
      - build_pipeline() -> Pipeline
      - PIPELINE = Pipeline(...)
    """
    globals_dict = runpy.run_path(str(path), run_name=f"stageflow_pipeline_{path.stem}")

    result: Optional[Any] = None
    if callable(globals_dict.get("build_pipeline")):
        result = globals_dict["build_pipeline"]()
    elif "PIPELINE" in globals_dict:
        result = globals_dict["PIPELINE"]

    if not isinstance(result, Pipeline):
        raise PipelineLoadError(
            f"{path.name} must define build_pipeline() -> Pipeline or PIPELINE = Pipeline(...). "
            "Use the helpers: `from stageflow.dsl import pipeline, stage, job, script`"
        )
    return result


def load_pipeline(path: str | Path) -> Pipeline:
    """Read a ``.yml``/``.yaml`` or ``.py`` definition file."""
    p = Path(path).expanduser()
    if not p.exists():
        raise PipelineLoadError(f"Pipeline file not found: {p}")

    if p.suffix == ".py":
        return _load_python(p.resolve())
    if p.suffix not in YAML_SUFFIXES:
        raise PipelineLoadError(f"Pipeline must be a .yml, .yaml or .py file, got: {p.name}")

    try:
        raw = p.read_text()
    except OSError as e:
        raise PipelineLoadError(f"Cannot read {p}: {e}") from e
    stem = p.name
    for suffix in YAML_SUFFIXES:
        stem = stem.removesuffix(suffix)
    return parse_pipeline(raw, name=stem.removesuffix(".pipeline"), source=str(p))
