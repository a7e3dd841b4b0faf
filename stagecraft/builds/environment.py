"""Isolated stage environments.

This module handles:
- Creating a fresh root directory per stage
- Seeding a stage from its base (a local base image root or another stage)
- Resolving stage paths against the stage root and working directory
- Copying files in from the build context or from another stage
- Discarding a stage once nothing reads from it anymore

A stage root is a plain directory standing in for the stage filesystem.
Stage paths are POSIX paths inside that root; ``..`` components are
clamped at the root, the same way a container filesystem behaves.
"""

from __future__ import annotations

import logging
import posixpath
import re
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

_IMAGE_REF_UNSAFE = re.compile(r"[^A-Za-z0-9._\-]")


class StageEnvironmentError(Exception):
    """Raised when a stage environment cannot be prepared or modified."""

    def __init__(self, message: str, code: str = "stage_environment_error") -> None:
        super().__init__(message)
        self.code = code


def sanitize_image_ref(ref: str) -> str:
    """Turn an image reference into a safe directory name.

    >>> sanitize_image_ref("python:3.12-slim")
    'python_3.12-slim'
    """
    return _IMAGE_REF_UNSAFE.sub("_", ref)


def resolve_base_image(images_dir: Path, ref: str) -> Path | None:
    """Find the local root directory for an external base image.

    An exported stagecraft image (a directory with ``rootfs/``) can be
    used as a base directly.

    Args:
        images_dir: Directory of local base image roots.
        ref: Image reference.

    Returns:
        Root directory, or None when no local image exists.
    """
    candidate = images_dir / sanitize_image_ref(ref)
    if (candidate / "rootfs").is_dir():
        return candidate / "rootfs"
    if candidate.is_dir():
        return candidate
    return None


def _copy(
    source: Path,
    target: Path,
    exclude: list[str] | None = None,
    keep_times: bool = True,
) -> None:
    """Copy a file or directory tree, merging into existing directories.

    With ``keep_times=False`` copied files get the current time as their
    modification time instead of the source's.
    """
    copy_file = shutil.copy2 if keep_times else shutil.copy
    target.parent.mkdir(parents=True, exist_ok=True)
    if source.is_dir():
        ignore = shutil.ignore_patterns(*exclude) if exclude else None
        shutil.copytree(
            source,
            target,
            symlinks=True,
            ignore=ignore,
            copy_function=copy_file,
            dirs_exist_ok=True,
        )
    else:
        copy_file(source, target, follow_symlinks=False)


@dataclass
class StageEnvironment:
    """Live, isolated filesystem of one stage.

    Attributes:
        name: Stage name.
        root: Host directory standing in for the stage filesystem.
        workdir: Current working directory (stage path).
        env: Environment variables set for commands.
        entrypoint: Entry point in effect, if any.
        lineage: Stage names and base image references this stage derives from.
    """

    name: str
    root: Path
    workdir: str = "/"
    env: dict[str, str] = field(default_factory=dict)
    entrypoint: list[str] | None = None
    lineage: list[str] = field(default_factory=list)

    @classmethod
    def create(cls, name: str, root: Path) -> StageEnvironment:
        """Create an empty stage environment in a fresh directory.

        Args:
            name: Stage name.
            root: Directory to use as the stage root (recreated if present).

        Returns:
            New StageEnvironment.
        """
        if root.exists():
            shutil.rmtree(root)
        root.mkdir(parents=True)
        logger.debug("Created stage environment %s at %s", name, root)
        return cls(name=name, root=root, lineage=[name])

    def seed_from_directory(self, source: Path, ref: str) -> None:
        """Populate the stage root from a local base image root.

        Args:
            source: Base image root directory.
            ref: Image reference, recorded in the lineage.

        Raises:
            StageEnvironmentError: If the copy fails.
        """
        try:
            shutil.copytree(source, self.root, symlinks=True, dirs_exist_ok=True)
        except OSError as e:
            raise StageEnvironmentError(
                f"Failed to seed stage '{self.name}' from {ref}: {e}",
                code="seed_failed",
            ) from e
        self.lineage.append(ref)

    def inherit(self, parent: StageEnvironment) -> None:
        """Start this stage from a copy of another stage.

        The parent's filesystem is copied (never shared) and its working
        directory, environment and entry point carry over.

        Args:
            parent: Base stage environment.

        Raises:
            StageEnvironmentError: If the copy fails.
        """
        try:
            shutil.copytree(parent.root, self.root, symlinks=True, dirs_exist_ok=True)
        except OSError as e:
            raise StageEnvironmentError(
                f"Failed to seed stage '{self.name}' from stage '{parent.name}': {e}",
                code="seed_failed",
            ) from e
        self.workdir = parent.workdir
        self.env = dict(parent.env)
        self.entrypoint = list(parent.entrypoint) if parent.entrypoint else None
        self.lineage.extend(parent.lineage)

    def stage_path(self, path: str) -> str:
        """Normalise a path against the working directory into a stage path."""
        joined = posixpath.normpath(posixpath.join(self.workdir, path))
        # normpath keeps a leading "//"
        return "/" + joined.lstrip("/")

    def resolve(self, path: str) -> Path:
        """Map a stage path (absolute or workdir-relative) to a host path."""
        return self.root / self.stage_path(path).lstrip("/")

    @property
    def workdir_path(self) -> Path:
        """Host path of the working directory."""
        return self.resolve(".")

    def set_workdir(self, path: str) -> Path:
        """Set the working directory, creating it if missing."""
        self.workdir = self.stage_path(path)
        host = self.workdir_path
        host.mkdir(parents=True, exist_ok=True)
        return host

    def _destination(self, source: Path, dest: str) -> Path:
        target = self.resolve(dest)
        if source.is_file() and (dest.endswith("/") or target.is_dir()):
            return target / source.name
        return target

    def copy_from_context(
        self,
        context_dir: Path,
        src: str,
        dest: str,
        exclude: list[str] | None = None,
    ) -> Path:
        """Copy a file or directory from the build context into the stage.

        Directory sources are merged into the destination directory. Copied
        files get fresh modification times, so build tools see them as newer
        than any restored dependency layer.

        Args:
            context_dir: Build context directory.
            src: Path relative to the context.
            dest: Stage path (absolute or relative to the working directory).
            exclude: Names or globs skipped while copying directories.

        Returns:
            Host path of the destination.

        Raises:
            StageEnvironmentError: If the source is missing, escapes the
                context, or the copy fails.
        """
        source = (context_dir / src).resolve()
        try:
            source.relative_to(context_dir.resolve())
        except ValueError:
            raise StageEnvironmentError(
                f"Context path traversal detected: {src} resolves outside {context_dir}",
                code="path_traversal",
            ) from None

        if not source.exists():
            raise StageEnvironmentError(
                f"Context path not found: {src}", code="source_not_found"
            )

        target = self._destination(source, dest)
        try:
            _copy(source, target, exclude, keep_times=False)
        except OSError as e:
            raise StageEnvironmentError(
                f"Failed to copy {src} into stage '{self.name}': {e}",
                code="copy_failed",
            ) from e

        logger.debug("Copied context:%s -> %s:%s", src, self.name, dest)
        return target

    def copy_from_stage(self, producer: StageEnvironment, src: str, dest: str) -> Path:
        """Copy an artifact out of another stage into this one.

        The consumer receives an independent copy.

        Args:
            producer: Producing stage environment.
            src: Absolute stage path in the producer.
            dest: Stage path in this stage.

        Returns:
            Host path of the destination.

        Raises:
            StageEnvironmentError: If the artifact is missing or the copy fails.
        """
        source = producer.resolve(src)
        if not source.exists():
            raise StageEnvironmentError(
                f"Artifact {src} not found in stage '{producer.name}'",
                code="missing_artifact",
            )

        target = self._destination(source, dest)
        try:
            _copy(source, target)
        except OSError as e:
            raise StageEnvironmentError(
                f"Failed to copy {producer.name}:{src} into stage '{self.name}': {e}",
                code="copy_failed",
            ) from e

        logger.debug("Copied %s:%s -> %s:%s", producer.name, src, self.name, dest)
        return target

    def missing_outputs(self, outputs: list[str]) -> list[str]:
        """Return the declared outputs that do not exist in the stage."""
        return [path for path in outputs if not self.resolve(path).exists()]

    def discard(self) -> None:
        """Remove the stage root from disk."""
        if self.root.exists():
            shutil.rmtree(self.root, ignore_errors=True)
            logger.debug("Discarded stage environment %s", self.name)

    def config(self) -> dict[str, Any]:
        """Return the image configuration of this stage."""
        return {
            "workdir": self.workdir,
            "env": dict(self.env),
            "entrypoint": list(self.entrypoint) if self.entrypoint else None,
            "lineage": list(self.lineage),
        }


__all__ = [
    "StageEnvironment",
    "StageEnvironmentError",
    "resolve_base_image",
    "sanitize_image_ref",
]
