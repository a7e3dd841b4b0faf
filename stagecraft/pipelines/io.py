"""Pipeline import/export functionality.

This module provides helpers for loading pipeline definitions from
YAML/JSON files, running the structural graph checks, and dumping
pipelines back to YAML.
"""

import json
from pathlib import Path
from typing import Any

import yaml

from stagecraft.pipelines.graph import validate_pipeline_graph
from stagecraft.pipelines.schema import PipelineSchema

DEFAULT_PIPELINE_FILENAMES = ("stagecraft.yaml", "stagecraft.yml", "stagecraft.json")


def load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML file and return its contents as a dict.

    Args:
        path: Path to the YAML file.

    Returns:
        Parsed YAML content as a dictionary.

    Raises:
        FileNotFoundError: If the file does not exist.
        yaml.YAMLError: If the file is not valid YAML.
    """
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Expected a YAML mapping, got {type(data).__name__}")
    return data


def load_json(path: Path) -> dict[str, Any]:
    """Load a JSON file and return its contents as a dict.

    Args:
        path: Path to the JSON file.

    Returns:
        Parsed JSON content as a dictionary.

    Raises:
        FileNotFoundError: If the file does not exist.
        json.JSONDecodeError: If the file is not valid JSON.
    """
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    return data


def parse_pipeline_data(data: dict[str, Any]) -> PipelineSchema:
    """Parse and validate pipeline data.

    Args:
        data: Dictionary containing the pipeline definition.

    Returns:
        Validated PipelineSchema instance.

    Raises:
        pydantic.ValidationError: If data does not match schema.
        PipelineGraphError: If the stage graph is invalid.
    """
    pipeline = PipelineSchema.model_validate(data)
    # Graph rules span several stages and are not field validators
    validate_pipeline_graph(pipeline)
    return pipeline


def load_pipeline(path: Path) -> PipelineSchema:
    """Load and validate a pipeline from a file (YAML or JSON).

    File format is determined by extension (.yaml, .yml for YAML,
    .json for JSON).

    Args:
        path: Path to the pipeline file.

    Returns:
        Validated PipelineSchema instance.

    Raises:
        ValueError: If file extension is not supported.
        FileNotFoundError: If the file does not exist.
        pydantic.ValidationError: If data does not match schema.
        PipelineGraphError: If the stage graph is invalid.
    """
    suffix = path.suffix.lower()
    if suffix in (".yaml", ".yml"):
        return parse_pipeline_data(load_yaml(path))
    if suffix == ".json":
        return parse_pipeline_data(load_json(path))
    raise ValueError(
        f"Unsupported file extension: {suffix}. Use .yaml, .yml, or .json"
    )


def find_pipeline_file(context_dir: Path) -> Path | None:
    """Find the default pipeline file in a build context.

    Args:
        context_dir: Build context directory.

    Returns:
        Path to the first default pipeline file found, or None.
    """
    for name in DEFAULT_PIPELINE_FILENAMES:
        candidate = context_dir / name
        if candidate.is_file():
            return candidate
    return None


def pipeline_to_dict(pipeline: PipelineSchema) -> dict[str, Any]:
    """Convert a pipeline to a plain dictionary for export."""
    return pipeline.model_dump(mode="json", exclude_none=True)


def dump_pipeline_yaml(pipeline: PipelineSchema) -> str:
    """Render a pipeline as YAML text."""
    return yaml.safe_dump(
        pipeline_to_dict(pipeline),
        default_flow_style=False,
        sort_keys=False,
        allow_unicode=True,
    )


def save_pipeline(pipeline: PipelineSchema, path: Path) -> Path:
    """Write a pipeline to a YAML or JSON file based on its extension.

    Args:
        pipeline: Pipeline to export.
        path: Output path.

    Returns:
        The written path.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    if path.suffix.lower() == ".json":
        path.write_text(
            json.dumps(pipeline_to_dict(pipeline), indent=2) + "\n", encoding="utf-8"
        )
    else:
        path.write_text(dump_pipeline_yaml(pipeline), encoding="utf-8")
    return path


__all__ = [
    "DEFAULT_PIPELINE_FILENAMES",
    "dump_pipeline_yaml",
    "find_pipeline_file",
    "load_json",
    "load_pipeline",
    "load_yaml",
    "parse_pipeline_data",
    "pipeline_to_dict",
    "save_pipeline",
]
