"""Pipeline definition module.

This module handles:
- Pipeline and stage schema validation (Pydantic)
- Stage dependency graph and ordering
- YAML/JSON import/export
- The built-in four-stage pipeline
- Dockerfile rendering
"""

from stagecraft.pipelines.schema import PipelineSchema, StageSchema

__all__ = ["PipelineSchema", "StageSchema"]
