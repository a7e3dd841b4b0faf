"""Pydantic models for pipeline definition validation.

This module defines the Pydantic models for validating pipeline data
from YAML/JSON files, and for exporting pipelines back to file formats.

A pipeline is an ordered set of stages. Each stage starts from a base
(an external image reference or another stage) and applies a list of
operations. Operations are a tagged union discriminated by ``op``.
"""

import re
from pathlib import PurePosixPath
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from stagecraft.types import StageRole

STAGE_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_.\-]*$")


def _is_relative_safe(value: str) -> bool:
    """Return True if value is a relative path without parent references."""
    path = PurePosixPath(value)
    return not path.is_absolute() and ".." not in path.parts


def _validate_command(v: list[str] | str) -> list[str] | str:
    """Validate a command in exec form (list) or shell form (string)."""
    if isinstance(v, str):
        if not v.strip():
            raise ValueError("command must not be empty")
        return v
    if not v:
        raise ValueError("command must not be empty")
    if any(not isinstance(arg, str) for arg in v):
        raise ValueError("command arguments must be strings")
    return v


class _Operation(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class WorkdirOp(_Operation):
    """Set the working directory of the stage (created if missing)."""

    op: Literal["workdir"] = "workdir"
    path: str = Field(description="Absolute path inside the stage filesystem")

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        """Validate path is absolute."""
        if not v.startswith("/"):
            raise ValueError("workdir path must start with '/'")
        return v


class CopyOp(_Operation):
    """Copy files from the build context or from another stage.

    Without ``from_stage`` the source is relative to the build context.
    With ``from_stage`` the source is an absolute path that must be one of
    that stage's declared outputs (or lie under one).
    """

    op: Literal["copy"] = "copy"
    src: str = Field(description="Source path")
    dest: str = Field(description="Destination (relative to workdir or absolute)")
    from_stage: str | None = Field(default=None, description="Producing stage")

    @model_validator(mode="after")
    def validate_src(self) -> "CopyOp":
        """Validate the source form matches its origin."""
        if self.from_stage is None:
            if not _is_relative_safe(self.src):
                raise ValueError(
                    f"context copy source must be a relative path, got '{self.src}'"
                )
        elif not self.src.startswith("/"):
            raise ValueError(
                f"stage copy source must be an absolute path, got '{self.src}'"
            )
        return self


class RunOp(_Operation):
    """Run a command inside the stage working directory."""

    op: Literal["run"] = "run"
    command: list[str] | str = Field(description="Exec form (list) or shell form")
    env: dict[str, str] = Field(default_factory=dict)

    @field_validator("command")
    @classmethod
    def validate_command(cls, v: list[str] | str) -> list[str] | str:
        """Validate command is non-empty."""
        return _validate_command(v)


class OverridesOp(_Operation):
    """Apply the pipeline override set on top of the working directory."""

    op: Literal["overrides"] = "overrides"


class PlanOp(_Operation):
    """Compute the dependency recipe from the working directory."""

    op: Literal["plan"] = "plan"
    recipe_path: str = Field(default="recipe.json")

    @field_validator("recipe_path")
    @classmethod
    def validate_recipe_path(cls, v: str) -> str:
        """Validate recipe path is relative."""
        if not _is_relative_safe(v):
            raise ValueError("recipe_path must be a relative path")
        return v


class CookOp(_Operation):
    """Compile dependencies named by a recipe into a cached layer."""

    op: Literal["cook"] = "cook"
    recipe_path: str = Field(default="recipe.json")
    command: list[str] | str = Field(description="Dependency build command")
    outputs: list[str] = Field(
        default_factory=lambda: ["target"],
        description="Paths (relative to workdir) captured into the cache layer",
    )

    @field_validator("command")
    @classmethod
    def validate_command(cls, v: list[str] | str) -> list[str] | str:
        """Validate command is non-empty."""
        return _validate_command(v)

    @field_validator("recipe_path")
    @classmethod
    def validate_recipe_path(cls, v: str) -> str:
        """Validate recipe path is relative."""
        if not _is_relative_safe(v):
            raise ValueError("recipe_path must be a relative path")
        return v

    @field_validator("outputs")
    @classmethod
    def validate_outputs(cls, v: list[str]) -> list[str]:
        """Validate cook outputs are relative and non-empty."""
        if not v:
            raise ValueError("cook outputs must not be empty")
        for item in v:
            if not _is_relative_safe(item):
                raise ValueError(f"cook output must be a relative path, got '{item}'")
        return v


class InstallOp(_Operation):
    """Install interpreted-ecosystem dependencies from a declaration file."""

    op: Literal["install"] = "install"
    requirements: str = Field(description="Declaration file, relative to workdir")

    @field_validator("requirements")
    @classmethod
    def validate_requirements(cls, v: str) -> str:
        """Validate the declaration path is relative."""
        if not _is_relative_safe(v):
            raise ValueError("requirements must be a relative path")
        return v


class EntrypointOp(_Operation):
    """Bind the image entry point (exec form only)."""

    op: Literal["entrypoint"] = "entrypoint"
    command: list[str] = Field(min_length=1)


Operation = Annotated[
    WorkdirOp | CopyOp | RunOp | OverridesOp | PlanOp | CookOp | InstallOp | EntrypointOp,
    Field(discriminator="op"),
]


class StageSchema(BaseModel):
    """Schema for a single build stage.

    Attributes:
        name: Unique stage name.
        base: External image reference or the name of another stage.
        role: Stage role, used for failure classification.
        operations: Ordered setup operations.
        outputs: Declared output artifacts (absolute paths).
        description: Optional description.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    name: Annotated[str, Field(min_length=1, max_length=128)]
    base: Annotated[str, Field(min_length=1, max_length=255)]
    role: StageRole = StageRole.GENERIC
    operations: list[Operation] = Field(default_factory=list)
    outputs: list[str] = Field(default_factory=list)
    description: str | None = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate stage name matches safe pattern."""
        if not STAGE_NAME_PATTERN.match(v):
            raise ValueError(
                f"stage name must match pattern {STAGE_NAME_PATTERN.pattern}, got '{v}'"
            )
        return v

    @field_validator("outputs")
    @classmethod
    def validate_outputs(cls, v: list[str]) -> list[str]:
        """Validate outputs are absolute paths."""
        for item in v:
            if not item.startswith("/") or ".." in PurePosixPath(item).parts:
                raise ValueError(f"stage outputs must be absolute paths, got '{item}'")
        return v

    @model_validator(mode="after")
    def validate_single_entrypoint(self) -> "StageSchema":
        """A stage may bind at most one entry point."""
        count = sum(1 for op in self.operations if isinstance(op, EntrypointOp))
        if count > 1:
            raise ValueError(f"stage '{self.name}' binds more than one entrypoint")
        return self

    def declares_output(self, path: str) -> bool:
        """Check whether path is a declared output or lies under one."""
        target = PurePosixPath(path)
        for output in self.outputs:
            declared = PurePosixPath(output)
            if target == declared or declared in target.parents:
                return True
        return False

    def entrypoint(self) -> list[str] | None:
        """Return the entry point bound by this stage, if any."""
        for op in self.operations:
            if isinstance(op, EntrypointOp):
                return list(op.command)
        return None


class OverrideFileSchema(BaseModel):
    """Schema for one file of the override set.

    Attributes:
        source: Path in the build context.
        destination: Path relative to the stage working directory.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    source: str
    destination: str

    @field_validator("source", "destination")
    @classmethod
    def validate_relative(cls, v: str) -> str:
        """Validate paths are relative and stay inside their root."""
        if not v or not _is_relative_safe(v):
            raise ValueError(f"override paths must be relative, got '{v}'")
        return v


class PlannerSchema(BaseModel):
    """Schema for recipe planner options.

    Attributes:
        manifest_names: File names treated as dependency manifests.
        lockfile_names: File names treated as lockfiles.
        entry_points: Entry-point paths recorded (by path only) in the recipe.
        entry_point_stub: Content written for entry points when cooking.
        exclude: Directory names skipped while scanning.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    manifest_names: list[str] = Field(default_factory=lambda: ["Cargo.toml"])
    lockfile_names: list[str] = Field(default_factory=lambda: ["Cargo.lock"])
    entry_points: list[str] = Field(
        default_factory=lambda: ["src/main.rs", "src/lib.rs"]
    )
    entry_point_stub: str = Field(default="fn main() {}\n")
    exclude: list[str] = Field(default_factory=lambda: ["target", ".git"])

    @field_validator("manifest_names")
    @classmethod
    def validate_manifest_names(cls, v: list[str]) -> list[str]:
        """At least one manifest name is required."""
        if not v:
            raise ValueError("manifest_names must not be empty")
        return v


class PipelineSchema(BaseModel):
    """Complete pipeline schema for validation and import/export.

    Attributes:
        name: Pipeline name, used for the image name.
        description: Optional description.
        stages: Stage definitions; the last one produces the image.
        overrides: Ordered override set shared by every ``overrides`` op.
        context_exclude: Names or globs skipped when copying from the context.
        planner: Recipe planner options.
        runtime_forbidden: Globs that must not match inside the final image.
        labels: Free-form labels copied into the image config.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    name: Annotated[str, Field(min_length=1, max_length=128)]
    description: str | None = None
    stages: list[StageSchema] = Field(min_length=1)
    overrides: list[OverrideFileSchema] = Field(default_factory=list)
    planner: PlannerSchema = Field(default_factory=PlannerSchema)
    context_exclude: list[str] = Field(default_factory=lambda: [".git"])
    runtime_forbidden: list[str] = Field(default_factory=list)
    labels: dict[str, str] = Field(default_factory=dict)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate pipeline name matches safe pattern."""
        if not STAGE_NAME_PATTERN.match(v):
            raise ValueError(
                f"pipeline name must match pattern {STAGE_NAME_PATTERN.pattern}, got '{v}'"
            )
        return v

    @model_validator(mode="after")
    def validate_references(self) -> "PipelineSchema":
        """Validate stage names and cross-stage references."""
        names = [s.name for s in self.stages]
        dupes = sorted({n for n in names if names.count(n) > 1})
        if dupes:
            raise ValueError(f"duplicate stage names: {dupes}")

        by_name = {s.name: s for s in self.stages}
        for stage in self.stages:
            if stage.base == stage.name:
                raise ValueError(f"stage '{stage.name}' cannot use itself as base")
            for op in stage.operations:
                if not isinstance(op, CopyOp) or op.from_stage is None:
                    continue
                if op.from_stage == stage.name:
                    raise ValueError(f"stage '{stage.name}' cannot copy from itself")
                producer = by_name.get(op.from_stage)
                if producer is None:
                    raise ValueError(
                        f"stage '{stage.name}' copies from unknown stage '{op.from_stage}'"
                    )
                if not producer.declares_output(op.src):
                    raise ValueError(
                        f"stage '{stage.name}' copies '{op.src}' which is not a "
                        f"declared output of stage '{op.from_stage}'"
                    )
            if any(isinstance(op, OverridesOp) for op in stage.operations) and not (
                self.overrides
            ):
                raise ValueError(
                    f"stage '{stage.name}' applies overrides but none are defined"
                )
        return self

    @property
    def final_stage(self) -> StageSchema:
        """The stage whose filesystem becomes the image."""
        return self.stages[-1]

    def stage(self, name: str) -> StageSchema:
        """Get a stage by name.

        Raises:
            KeyError: If no stage has that name.
        """
        for stage in self.stages:
            if stage.name == name:
                return stage
        raise KeyError(name)

    def has_stage(self, name: str) -> bool:
        """Check whether a stage with this name exists."""
        return any(s.name == name for s in self.stages)


__all__ = [
    "STAGE_NAME_PATTERN",
    "CookOp",
    "CopyOp",
    "EntrypointOp",
    "InstallOp",
    "Operation",
    "OverrideFileSchema",
    "OverridesOp",
    "PipelineSchema",
    "PlanOp",
    "PlannerSchema",
    "RunOp",
    "StageSchema",
    "WorkdirOp",
]
