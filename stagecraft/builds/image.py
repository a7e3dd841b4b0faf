"""Runtime image export and execution.

This module handles:
- Exporting the final stage as an image directory (rootfs + image.json)
- Loading an exported image
- Running an image's entry point with caller-supplied arguments

Image layout::

    <output>/
        rootfs/       final stage filesystem
        image.json    configuration and file manifest
"""

from __future__ import annotations

import json
import logging
import os
import posixpath
import shutil
import subprocess
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from stagecraft.builds.artifacts import describe_tree, generate_manifest, write_manifest

if TYPE_CHECKING:
    from stagecraft.builds.environment import StageEnvironment

logger = logging.getLogger(__name__)

IMAGE_CONFIG_FILENAME = "image.json"
ROOTFS_DIRNAME = "rootfs"


class ImageError(Exception):
    """Raised when an image cannot be exported, loaded or run."""

    def __init__(self, message: str, code: str = "image_error") -> None:
        super().__init__(message)
        self.code = code


@dataclass
class RuntimeImage:
    """An exported runtime image.

    Attributes:
        path: Image directory.
        name: Image name.
        entrypoint: Entry point argv (exec form).
        workdir: Working directory inside the image.
        env: Environment variables for the entry point.
        manifest: Full image.json content.
    """

    path: Path
    name: str
    entrypoint: list[str]
    workdir: str = "/"
    env: dict[str, str] = field(default_factory=dict)
    manifest: dict[str, Any] = field(default_factory=dict)

    @property
    def rootfs(self) -> Path:
        """Host path of the image filesystem."""
        return self.path / ROOTFS_DIRNAME

    @property
    def workdir_path(self) -> Path:
        """Host path of the image working directory."""
        return self.rootfs / self.workdir.lstrip("/")

    def host_argv(self, args: list[str] | None = None) -> list[str]:
        """Map the entry point to a host argv and append caller arguments.

        An executable given as a path is resolved inside the image root.
        A bare name is left for PATH lookup.
        """
        argv = list(self.entrypoint)
        executable = argv[0]
        if "/" in executable:
            stage_path = posixpath.normpath(posixpath.join(self.workdir, executable))
            argv[0] = str(self.rootfs / stage_path.lstrip("/"))
        return argv + list(args or [])


def export_image(
    environment: StageEnvironment,
    output_dir: Path,
    name: str,
    metadata: dict[str, Any] | None = None,
    run_id: int | None = None,
) -> RuntimeImage:
    """Export a stage environment as a runtime image.

    The image is assembled in a temporary sibling directory and renamed
    into place, replacing any previous image at ``output_dir``.

    Args:
        environment: Final stage environment.
        output_dir: Image directory to create.
        name: Image name.
        metadata: Extra manifest metadata (recipe hashes, cache hits...).
        run_id: Optional database run ID.

    Returns:
        The exported RuntimeImage.

    Raises:
        ImageError: If the stage has no entry point or the export fails.
    """
    if not environment.entrypoint:
        raise ImageError(
            f"Stage '{environment.name}' has no entry point", code="missing_entrypoint"
        )

    output_dir = output_dir.absolute()
    output_dir.parent.mkdir(parents=True, exist_ok=True)
    tmp = output_dir.parent / f".{output_dir.name}.tmp-{uuid.uuid4().hex[:8]}"

    config = {"name": name, **environment.config()}
    try:
        shutil.copytree(environment.root, tmp / ROOTFS_DIRNAME, symlinks=True)
        manifest = generate_manifest(
            artifacts=describe_tree(tmp / ROOTFS_DIRNAME),
            pipeline_name=name,
            run_id=run_id,
            config=config,
            extra_metadata=metadata,
        )
        write_manifest(manifest, tmp / IMAGE_CONFIG_FILENAME)

        if output_dir.exists():
            shutil.rmtree(output_dir)
        tmp.rename(output_dir)
    except OSError as e:
        raise ImageError(
            f"Failed to export image to {output_dir}: {e}", code="export_failed"
        ) from e
    finally:
        if tmp.exists():
            shutil.rmtree(tmp, ignore_errors=True)

    logger.info("Exported image %s to %s", name, output_dir)
    return RuntimeImage(
        path=output_dir,
        name=name,
        entrypoint=list(environment.entrypoint),
        workdir=environment.workdir,
        env=dict(environment.env),
        manifest=manifest,
    )


def load_image(path: Path) -> RuntimeImage:
    """Load an exported image.

    Args:
        path: Image directory.

    Returns:
        RuntimeImage instance.

    Raises:
        ImageError: If the directory is not a valid image.
    """
    config_path = path / IMAGE_CONFIG_FILENAME
    if not config_path.is_file() or not (path / ROOTFS_DIRNAME).is_dir():
        raise ImageError(f"Not an image directory: {path}", code="image_not_found")

    try:
        with config_path.open(encoding="utf-8") as f:
            manifest = json.load(f)
        config = manifest["config"]
        entrypoint = [str(arg) for arg in config["entrypoint"]]
    except (OSError, json.JSONDecodeError, KeyError, TypeError) as e:
        raise ImageError(
            f"Invalid image configuration {config_path}: {e}", code="invalid_image"
        ) from e

    if not entrypoint:
        raise ImageError(f"Image {path} has no entry point", code="missing_entrypoint")

    return RuntimeImage(
        path=path,
        name=str(config.get("name", path.name)),
        entrypoint=entrypoint,
        workdir=str(config.get("workdir") or "/"),
        env=dict(config.get("env") or {}),
        manifest=manifest,
    )


def run_image(
    image: RuntimeImage,
    args: list[str] | None = None,
    timeout: int | None = None,
) -> int:
    """Run an image's entry point.

    The entry point is executed directly (no shell), with exactly the
    caller's arguments appended. Standard streams are inherited.

    Args:
        image: Image to run.
        args: Arguments passed through to the entry point.
        timeout: Optional timeout in seconds.

    Returns:
        The entry point's exit code. Death by signal N maps to 128 + N.

    Raises:
        ImageError: If the entry point cannot be executed or times out.
    """
    argv = image.host_argv(args)
    env = dict(os.environ)
    env.update(image.env)
    logger.debug("Running %s in %s", argv, image.workdir_path)

    try:
        result = subprocess.run(
            argv,
            cwd=image.workdir_path,
            env=env,
            shell=False,
            timeout=timeout,
            check=False,
        )
    except subprocess.TimeoutExpired as e:
        raise ImageError(
            f"Entry point timed out after {timeout} seconds", code="run_timeout"
        ) from e
    except OSError as e:
        raise ImageError(
            f"Failed to execute entry point {argv[0]}: {e}", code="exec_failed"
        ) from e

    if result.returncode < 0:
        sig = -result.returncode
        logger.warning("Entry point killed by signal %d", sig)
        return 128 + sig
    return result.returncode


__all__ = [
    "IMAGE_CONFIG_FILENAME",
    "ROOTFS_DIRNAME",
    "ImageError",
    "RuntimeImage",
    "export_image",
    "load_image",
    "run_image",
]
