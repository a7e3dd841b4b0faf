"""Artifact description and runtime image verification.

This module handles:
- Computing checksums of files carried in a stage or image
- Describing a filesystem tree as a list of ArtifactInfo records
- Scanning an image root for forbidden (toolchain) content
- Generating and writing image manifests
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import stat
from dataclasses import asdict
from datetime import datetime, timezone
from fnmatch import fnmatch
from pathlib import Path
from typing import Any

from stagecraft.types import ArtifactInfo

logger = logging.getLogger(__name__)

# Default chunk size for hashing
HASH_CHUNK_SIZE = 64 * 1024  # 64KB


class ImageVerificationError(Exception):
    """Raised when a runtime image carries content it must not have."""

    def __init__(
        self,
        message: str,
        paths: list[str] | None = None,
        code: str = "image_verification_error",
    ) -> None:
        super().__init__(message)
        self.paths = paths or []
        self.code = code


def compute_file_hash(
    file_path: Path,
    chunk_size: int = HASH_CHUNK_SIZE,
) -> str:
    """Compute SHA-256 hash of a file.

    Args:
        file_path: Path to the file.
        chunk_size: Size of chunks for streaming hash.

    Returns:
        SHA-256 hex digest.
    """
    sha256 = hashlib.sha256()
    with file_path.open("rb") as f:
        while chunk := f.read(chunk_size):
            sha256.update(chunk)
    return sha256.hexdigest()


def describe_file(path: Path, stage_path: str) -> ArtifactInfo:
    """Describe a single file as an ArtifactInfo."""
    st = path.stat()
    return ArtifactInfo(
        path=stage_path,
        size_bytes=st.st_size,
        sha256=compute_file_hash(path),
        executable=bool(stat.S_IMODE(st.st_mode) & 0o111),
    )


def describe_tree(root: Path) -> list[ArtifactInfo]:
    """Describe every regular file under a root directory.

    Args:
        root: Tree root (for example an image rootfs).

    Returns:
        ArtifactInfo records sorted by path; paths are absolute stage paths.
    """
    artifacts: list[ArtifactInfo] = []
    for path in sorted(root.rglob("*")):
        if path.is_symlink() or not path.is_file():
            continue
        stage_path = "/" + path.relative_to(root).as_posix()
        artifacts.append(describe_file(path, stage_path))
    return artifacts


def matches_forbidden(rel_path: str, patterns: list[str]) -> bool:
    """Check a root-relative POSIX path against forbidden globs.

    A pattern starting with ``**/`` also matches at the root.

    >>> matches_forbidden("Cargo.toml", ["**/Cargo.toml"])
    True
    """
    for pattern in patterns:
        if fnmatch(rel_path, pattern):
            return True
        if pattern.startswith("**/") and fnmatch(rel_path, pattern[3:]):
            return True
    return False


def find_forbidden_paths(root: Path, patterns: list[str]) -> list[str]:
    """Find files and directories under root matching forbidden globs.

    Args:
        root: Tree root.
        patterns: Forbidden globs, relative to the root.

    Returns:
        Sorted root-relative paths that match.
    """
    if not patterns:
        return []

    found: list[str] = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        for name in (*dirnames, *filenames):
            rel_path = Path(dirpath, name).relative_to(root).as_posix()
            if matches_forbidden(rel_path, patterns):
                found.append(rel_path)
    return sorted(found)


def verify_minimal_image(root: Path, forbidden: list[str]) -> None:
    """Verify an image root carries no forbidden content.

    Args:
        root: Image root directory.
        forbidden: Forbidden globs.

    Raises:
        ImageVerificationError: If any path matches.
    """
    found = find_forbidden_paths(root, forbidden)
    if found:
        preview = ", ".join(found[:5])
        more = f" (+{len(found) - 5} more)" if len(found) > 5 else ""
        raise ImageVerificationError(
            f"Runtime image carries toolchain content: {preview}{more}",
            paths=found,
            code="forbidden_content",
        )
    logger.debug("Image root %s passed verification", root)


def generate_manifest(
    artifacts: list[ArtifactInfo],
    pipeline_name: str | None = None,
    run_id: int | None = None,
    config: dict[str, Any] | None = None,
    extra_metadata: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Generate an image manifest.

    The manifest contains:
    - Image configuration (entry point, working directory, environment)
    - List of files with metadata
    - Run identification
    - Optional extra metadata

    Args:
        artifacts: Files in the image.
        pipeline_name: Optional pipeline name.
        run_id: Optional database run ID.
        config: Optional image configuration.
        extra_metadata: Optional additional metadata.

    Returns:
        Manifest dictionary suitable for JSON serialization.
    """
    now = datetime.now(timezone.utc)

    manifest: dict[str, Any] = {
        "version": "1.0",
        "generated_at": now.isoformat(),
        "artifacts": [asdict(a) for a in artifacts],
    }

    if pipeline_name:
        manifest["pipeline"] = pipeline_name
    if run_id is not None:
        manifest["run_id"] = run_id
    if config:
        manifest["config"] = config
    if extra_metadata:
        manifest["metadata"] = extra_metadata

    manifest["summary"] = {
        "total_files": len(artifacts),
        "total_size_bytes": sum(a.size_bytes for a in artifacts),
    }

    return manifest


def write_manifest(
    manifest: dict[str, Any],
    output_path: Path,
) -> Path:
    """Write manifest to a JSON file.

    Args:
        manifest: Manifest dictionary.
        output_path: Output file path.

    Returns:
        Path to written manifest file.
    """
    output_path.parent.mkdir(parents=True, exist_ok=True)

    with output_path.open("w", encoding="utf-8") as f:
        json.dump(manifest, f, indent=2, sort_keys=True)

    logger.info("Wrote manifest to %s", output_path)
    return output_path


__all__ = [
    "HASH_CHUNK_SIZE",
    "ImageVerificationError",
    "compute_file_hash",
    "describe_file",
    "describe_tree",
    "find_forbidden_paths",
    "generate_manifest",
    "matches_forbidden",
    "verify_minimal_image",
    "write_manifest",
]
