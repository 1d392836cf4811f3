# loader.py
from __future__ import annotations

import runpy
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .errors import ConfigError
from .model import Pipeline, defaults

YAML_SUFFIXES = (".yaml", ".yml")


def _format_validation(e: ValidationError) -> str:
    lines = []
    for err in e.errors():
        where = ".".join(str(p) for p in err["loc"]) or "<root>"
        lines.append(f"  {where}: {err['msg']}")
    return "\n".join(lines)


def from_dict(data: Any, source: str = "<definition>") -> Pipeline:
    """
    Validate a parsed definition, merged onto `defaults()`.

    Top-level lists replace the defaults; `settings` is merged key by key so a
    definition only has to name the settings it changes.
    """
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(f"{source}: definition must be a mapping, got {type(data).__name__}")

    merged = defaults().model_dump()
    for key, value in data.items():
        if key == "settings" and isinstance(value, dict):
            merged["settings"].update(value)
        else:
            merged[key] = value

    try:
        return Pipeline.model_validate(merged)
    except ValidationError as e:
        raise ConfigError(f"{source}: invalid pipeline definition\n{_format_validation(e)}") from e


def load_yaml(path: Path) -> Pipeline:
    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"{path.name}: invalid YAML: {e}") from e
    return from_dict(data, source=path.name)


def load_python(path: Path) -> Pipeline:
    """
    Load a Python workflow file.

    The file must define either:
      - pipeline() -> Pipeline
      - PIPELINE = Pipeline(...)
    A plain dict is accepted in both places and validated like YAML.
    """
    module_name = f"podline_workflow_{path.stem}"
    globals_dict = runpy.run_path(str(path), run_name=module_name)

    if "pipeline" in globals_dict and callable(globals_dict["pipeline"]):
        result = globals_dict["pipeline"]()
    elif "PIPELINE" in globals_dict:
        result = globals_dict["PIPELINE"]
    else:
        raise ConfigError(
            f"{path.name}: workflow must define pipeline() -> Pipeline or PIPELINE = Pipeline(...)"
        )

    if isinstance(result, Pipeline):
        return result
    if isinstance(result, dict):
        return from_dict(result, source=path.name)
    raise ConfigError(f"{path.name}: expected a Pipeline, got {type(result).__name__}")


def load_pipeline(path: str | Path) -> Pipeline:
    """Load a definition from a YAML or Python file, chosen by suffix."""
    p = Path(path).expanduser().resolve()
    if not p.exists():
        raise FileNotFoundError(f"Pipeline file not found: {p}")
    if p.suffix in YAML_SUFFIXES:
        return load_yaml(p)
    if p.suffix == ".py":
        return load_python(p)
    raise ConfigError(f"Pipeline file must be .yaml, .yml or .py, got: {p.name}")
