"""Override set application and hashing.

This module handles:
- Copying override files from the build context over a working directory
- Computing a deterministic digest of the applied override set
- Guarding override paths against traversal outside their roots

Override files are applied in list order after the full source copy, so
they always win over files of the same path in the source tree. When two
entries target the same destination, the later one wins.
"""

from __future__ import annotations

import hashlib
import logging
import shutil
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from stagecraft.pipelines.schema import OverrideFileSchema

logger = logging.getLogger(__name__)


class OverrideError(Exception):
    """Raised when the override set cannot be applied."""

    def __init__(self, message: str, code: str = "override_error") -> None:
        super().__init__(message)
        self.code = code


def validate_path_within_base(path: Path, base: Path, path_type: str) -> Path:
    """Validate that a path is contained within a base directory.

    Args:
        path: Path to validate (will be resolved).
        base: Base directory (will be resolved).
        path_type: Description of the path for error messages.

    Returns:
        The resolved path.

    Raises:
        OverrideError: If path escapes base directory.
    """
    resolved_path = path.resolve()
    resolved_base = base.resolve()

    try:
        resolved_path.relative_to(resolved_base)
    except ValueError:
        raise OverrideError(
            f"{path_type} path traversal detected: {path} resolves outside {base}",
            code="path_traversal",
        ) from None

    return resolved_path


def apply_overrides(
    overrides: list[OverrideFileSchema],
    context_dir: Path,
    workdir: Path,
) -> list[Path]:
    """Apply the override set on top of a working directory.

    Args:
        overrides: Ordered override entries.
        context_dir: Build context holding the override sources.
        workdir: Directory receiving the overrides.

    Returns:
        Destination paths written, in application order.

    Raises:
        OverrideError: If a source is missing or a path escapes its root.
    """
    written: list[Path] = []
    for entry in overrides:
        source = validate_path_within_base(
            context_dir / entry.source, context_dir, "override source"
        )
        dest = validate_path_within_base(
            workdir / entry.destination, workdir, "override destination"
        )

        if not source.is_file():
            raise OverrideError(
                f"Override source not found: {entry.source}",
                code="override_not_found",
            )
        if dest.is_dir():
            raise OverrideError(
                f"Override destination is a directory: {entry.destination}",
                code="override_dest_is_dir",
            )

        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            # Fresh modification time: the override must look newer than cooked outputs
            shutil.copy(source, dest)
        except OSError as e:
            raise OverrideError(
                f"Failed to apply override {entry.source} -> {entry.destination}: {e}",
                code="override_copy_error",
            ) from e

        logger.debug("Applied override %s -> %s", entry.source, entry.destination)
        written.append(dest)

    return written


def compute_override_digest(
    overrides: list[OverrideFileSchema],
    context_dir: Path,
) -> str:
    """Compute a deterministic digest of the override set.

    The digest covers, in list order, each destination path and the
    content of its source file. Missing sources hash as empty.

    Args:
        overrides: Ordered override entries.
        context_dir: Build context holding the override sources.

    Returns:
        SHA-256 hex digest.
    """
    hasher = hashlib.sha256()
    for entry in overrides:
        source = context_dir / entry.source
        content = source.read_bytes() if source.is_file() else b""
        # Hash: destination\0content\0
        hasher.update(entry.destination.encode("utf-8"))
        hasher.update(b"\0")
        hasher.update(content)
        hasher.update(b"\0")
    return hasher.hexdigest()


__all__ = [
    "OverrideError",
    "apply_overrides",
    "compute_override_digest",
    "validate_path_within_base",
]
