"""Shared type definitions for stagecraft.

This module contains enums and dataclasses shared across subpackages
to avoid circular imports.
"""

from dataclasses import dataclass
from enum import Enum


class RunStatus(str, Enum):
    """Status of a pipeline run or a single stage run."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class StageRole(str, Enum):
    """Role a stage plays in the pipeline.

    The role decides how a failing stage is classified and which stages
    may appear in the lineage of the final runtime image.
    """

    TOOLCHAIN = "toolchain"
    PLANNER = "planner"
    BUILDER = "builder"
    RUNTIME = "runtime"
    GENERIC = "generic"


class FailureKind(str, Enum):
    """Classification of a fatal pipeline failure."""

    ENVIRONMENT_SETUP = "environment_setup"
    PLANNING = "planning"
    DEPENDENCY_COOK = "dependency_cook"
    APPLICATION_BUILD = "application_build"
    RUNTIME_ASSEMBLY = "runtime_assembly"
    STAGE = "stage"


# Roles whose environments carry the compiled-language toolchain
TOOLCHAIN_ROLES = frozenset({StageRole.TOOLCHAIN, StageRole.PLANNER, StageRole.BUILDER})

ROLE_FAILURE_KINDS: dict[StageRole, FailureKind] = {
    StageRole.TOOLCHAIN: FailureKind.ENVIRONMENT_SETUP,
    StageRole.PLANNER: FailureKind.PLANNING,
    StageRole.BUILDER: FailureKind.APPLICATION_BUILD,
    StageRole.RUNTIME: FailureKind.RUNTIME_ASSEMBLY,
    StageRole.GENERIC: FailureKind.STAGE,
}


@dataclass
class ArtifactInfo:
    """Information about a file carried in a stage or image."""

    path: str
    size_bytes: int
    sha256: str
    executable: bool = False


__all__ = [
    "ROLE_FAILURE_KINDS",
    "TOOLCHAIN_ROLES",
    "ArtifactInfo",
    "FailureKind",
    "RunStatus",
    "StageRole",
]
