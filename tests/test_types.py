"""Tests for shared type definitions."""

from stagecraft.types import (
    ROLE_FAILURE_KINDS,
    TOOLCHAIN_ROLES,
    ArtifactInfo,
    FailureKind,
    RunStatus,
    StageRole,
)


class TestEnums:
    """Test enum values."""

    def test_run_status_values(self) -> None:
        """RunStatus should have the expected values."""
        assert RunStatus.PENDING.value == "pending"
        assert RunStatus.RUNNING.value == "running"
        assert RunStatus.SUCCEEDED.value == "succeeded"
        assert RunStatus.FAILED.value == "failed"

    def test_failure_kind_values(self) -> None:
        """FailureKind should cover every stage of the pipeline."""
        assert {k.value for k in FailureKind} == {
            "environment_setup",
            "planning",
            "dependency_cook",
            "application_build",
            "runtime_assembly",
            "stage",
        }

    def test_every_role_has_a_failure_kind(self) -> None:
        """Each role should map to a failure kind."""
        assert set(ROLE_FAILURE_KINDS) == set(StageRole)
        assert ROLE_FAILURE_KINDS[StageRole.BUILDER] == FailureKind.APPLICATION_BUILD

    def test_runtime_is_not_a_toolchain_role(self) -> None:
        """Runtime and generic stages do not carry the toolchain."""
        assert StageRole.RUNTIME not in TOOLCHAIN_ROLES
        assert StageRole.GENERIC not in TOOLCHAIN_ROLES
        assert StageRole.PLANNER in TOOLCHAIN_ROLES

    def test_enums_are_strings(self) -> None:
        """Enums should compare equal to their values."""
        assert StageRole("builder") == "builder"


class TestDataclasses:
    """Test dataclass definitions."""

    def test_artifact_info_minimal(self) -> None:
        """ArtifactInfo should default to a non-executable file."""
        info = ArtifactInfo(path="/app/app", size_bytes=1, sha256="0" * 64)
        assert info.executable is False
