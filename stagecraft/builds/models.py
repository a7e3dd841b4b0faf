"""Build ORM models.

This module defines the PipelineRun, StageRun and CacheLayer models for
storing pipeline execution records and the cook cache index.
"""

from datetime import datetime

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from stagecraft.db import Base
from stagecraft.types import RunStatus


class PipelineRun(Base):
    """ORM model for pipeline execution records.

    A PipelineRun captures a single execution of a pipeline against a
    build context, from the first stage to the exported image.

    Attributes:
        id: Primary key.
        pipeline_name: Name of the pipeline definition.
        context_dir: Build context directory.
        output_dir: Image output directory.
        status: Run status (pending, running, succeeded, failed).
        requested_at: Timestamp when the run was requested.
        started_at: Timestamp when the first stage started.
        finished_at: Timestamp when the run finished.
        run_dir: Directory holding stage environments and logs.
        failed_stage: Name of the stage that failed, if any.
        failure_kind: FailureKind of the failure, if any.
        error_type: Machine-readable error code.
        error_message: Error message if the run failed.
        recipe_hashes: Stage name -> recipe hash for cooked stages.
    """

    __tablename__ = "pipeline_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    pipeline_name: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    context_dir: Mapped[str] = mapped_column(String(500), nullable=False)
    output_dir: Mapped[str] = mapped_column(String(500), nullable=False)

    # Status and timing
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=RunStatus.PENDING.value, index=True
    )
    requested_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    run_dir: Mapped[str | None] = mapped_column(String(500), nullable=True)

    # Error tracking
    failed_stage: Mapped[str | None] = mapped_column(String(128), nullable=True)
    failure_kind: Mapped[str | None] = mapped_column(String(50), nullable=True)
    error_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    recipe_hashes: Mapped[dict[str, str] | None] = mapped_column(
        JSON, nullable=True, default=dict
    )

    stages: Mapped[list["StageRun"]] = relationship(
        "StageRun",
        back_populates="run",
        cascade="all, delete-orphan",
        order_by="StageRun.position",
    )

    def __repr__(self) -> str:
        """Return string representation of PipelineRun."""
        return (
            f"<PipelineRun(id={self.id}, pipeline='{self.pipeline_name}', "
            f"status='{self.status}')>"
        )

    def mark_running(self) -> None:
        """Mark this run as running."""
        self.status = RunStatus.RUNNING.value
        self.started_at = datetime.now()

    def mark_succeeded(self) -> None:
        """Mark this run as succeeded."""
        self.status = RunStatus.SUCCEEDED.value
        self.finished_at = datetime.now()

    def mark_failed(
        self,
        stage: str | None = None,
        kind: str | None = None,
        error_type: str | None = None,
        message: str | None = None,
    ) -> None:
        """Mark this run as failed.

        Args:
            stage: Name of the failing stage.
            kind: Failure classification.
            error_type: Machine-readable error code.
            message: Error message details.
        """
        self.status = RunStatus.FAILED.value
        self.finished_at = datetime.now()
        self.failed_stage = stage
        self.failure_kind = kind
        if error_type:
            self.error_type = error_type
        if message:
            self.error_message = message

    def is_succeeded(self) -> bool:
        """Check if this run succeeded."""
        return self.status == RunStatus.SUCCEEDED.value


class StageRun(Base):
    """ORM model for the execution of one stage within a pipeline run.

    Attributes:
        id: Primary key.
        run_id: Foreign key to PipelineRun.
        name: Stage name.
        role: Stage role.
        position: Execution position within the run.
        status: Stage status.
        started_at: Timestamp when the stage started.
        finished_at: Timestamp when the stage finished.
        cache_hit: Whether a cook step in this stage reused a cached layer.
        cook_key: Cook cache key, for stages with a cook step.
        log_dir: Directory holding this stage's command logs.
        error_type: Machine-readable error code.
        error_message: Error message if the stage failed.
    """

    __tablename__ = "stage_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("pipeline_runs.id"), nullable=False, index=True
    )

    name: Mapped[str] = mapped_column(String(128), nullable=False)
    role: Mapped[str] = mapped_column(String(20), nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=RunStatus.PENDING.value
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    cache_hit: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    cook_key: Mapped[str | None] = mapped_column(String(128), nullable=True)
    log_dir: Mapped[str | None] = mapped_column(String(500), nullable=True)

    error_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    run: Mapped["PipelineRun"] = relationship("PipelineRun", back_populates="stages")

    __table_args__ = (Index("ix_stage_runs_run_position", "run_id", "position"),)

    def __repr__(self) -> str:
        """Return string representation of StageRun."""
        return (
            f"<StageRun(id={self.id}, run_id={self.run_id}, name='{self.name}', "
            f"status='{self.status}')>"
        )

    def mark_running(self) -> None:
        """Mark this stage as running."""
        self.status = RunStatus.RUNNING.value
        self.started_at = datetime.now()

    def mark_succeeded(self) -> None:
        """Mark this stage as succeeded."""
        self.status = RunStatus.SUCCEEDED.value
        self.finished_at = datetime.now()

    def mark_failed(
        self, error_type: str | None = None, message: str | None = None
    ) -> None:
        """Mark this stage as failed.

        Args:
            error_type: Type/category of the error.
            message: Error message details.
        """
        self.status = RunStatus.FAILED.value
        self.finished_at = datetime.now()
        if error_type:
            self.error_type = error_type
        if message:
            self.error_message = message


class CacheLayer(Base):
    """ORM model for a cooked dependency layer.

    A CacheLayer indexes an immutable directory holding the outputs of a
    cook command. At most one row exists per cook key.

    Attributes:
        id: Primary key.
        cache_key: Cook key (sha256:...), unique.
        recipe_hash: Hash of the recipe the layer was cooked from.
        command: Cook command as argv list or shell string.
        outputs: Workdir-relative paths captured in the layer.
        path: Layer directory on disk.
        size_bytes: Total size of captured files.
        created_at: Timestamp when the layer was stored.
        last_used_at: Timestamp of the most recent restore.
        hit_count: Number of restores.
    """

    __tablename__ = "cache_layers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    cache_key: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    recipe_hash: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    command: Mapped[list[str] | str] = mapped_column(JSON, nullable=False)
    outputs: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)

    path: Mapped[str] = mapped_column(String(500), nullable=False)
    size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    hit_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    def __repr__(self) -> str:
        """Return string representation of CacheLayer."""
        return (
            f"<CacheLayer(id={self.id}, cache_key='{self.cache_key[:23]}...', "
            f"hits={self.hit_count})>"
        )

    def touch(self) -> None:
        """Record a cache hit."""
        self.hit_count = (self.hit_count or 0) + 1
        self.last_used_at = datetime.now()


__all__ = ["CacheLayer", "PipelineRun", "StageRun"]
