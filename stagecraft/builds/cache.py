"""Cook cache: content-addressed dependency layers.

This module handles:
- Cook key computation from the recipe hash, cook command and outputs
- File locking so concurrent cooks of the same key serialise
- Layer lookup, atomic storage and restore
- Listing, eviction and pruning of layers

A layer is an immutable directory under ``<cache_dir>/layers/<digest>``
indexed by a CacheLayer row. Rows whose directory has vanished are
invalidated on lookup, so a hit always restores real files.
"""

from __future__ import annotations

import fcntl
import hashlib
import json
import logging
import os
import shutil
import time
import uuid
from collections.abc import Iterator
from contextlib import AbstractContextManager, contextmanager
from datetime import datetime
from pathlib import Path

from sqlalchemy import select
from sqlalchemy.orm import Session

from stagecraft.builds.models import CacheLayer

logger = logging.getLogger(__name__)


class CacheError(Exception):
    """Raised when a cache layer cannot be stored or restored."""

    def __init__(self, message: str, code: str = "cache_error") -> None:
        super().__init__(message)
        self.code = code


def compute_cook_key(
    recipe_hash: str,
    command: list[str] | str,
    outputs: list[str],
) -> str:
    """Compute the cook cache key.

    The key covers the recipe hash, the cook command and the captured
    output paths, serialised as canonical JSON.

    Args:
        recipe_hash: Recipe hash (sha256:...).
        command: Cook command.
        outputs: Workdir-relative paths captured in the layer.

    Returns:
        Cache key as hex string (sha256:...).
    """
    payload = {
        "recipe_hash": recipe_hash,
        "command": command,
        "outputs": sorted(outputs),
    }
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    digest = hashlib.sha256(canonical.encode("utf-8")).hexdigest()
    return f"sha256:{digest}"


@contextmanager
def cook_lock(
    lock_dir: Path,
    cache_key: str,
    timeout: float | None = None,
) -> Iterator[None]:
    """Acquire a lock for a cook cache key.

    Uses a file-based lock to prevent concurrent cooks with the same key.

    Args:
        lock_dir: Directory for lock files.
        cache_key: Cache key to lock on.
        timeout: Lock acquisition timeout in seconds (None = blocking).

    Yields:
        None when lock is acquired.

    Raises:
        CacheError: If lock cannot be acquired within timeout.
    """
    lock_dir.mkdir(parents=True, exist_ok=True)

    safe_key = cache_key.replace(":", "_").replace("/", "_")[:64]
    lock_file = lock_dir / f"cook_{safe_key}.lock"

    logger.debug("Acquiring cook lock for key: %s", cache_key[:32])

    fd = os.open(str(lock_file), os.O_RDWR | os.O_CREAT, 0o600)
    lock_acquired = False
    try:
        if timeout is not None:
            start = time.monotonic()
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    lock_acquired = True
                    break
                except BlockingIOError:
                    if time.monotonic() - start >= timeout:
                        raise CacheError(
                            f"Timeout waiting for cook lock on {cache_key[:32]}",
                            code="lock_timeout",
                        ) from None
                    time.sleep(0.1)
        else:
            fcntl.flock(fd, fcntl.LOCK_EX)
            lock_acquired = True

        logger.debug("Cook lock acquired for key: %s", cache_key[:32])
        yield
    finally:
        if lock_acquired:
            fcntl.flock(fd, fcntl.LOCK_UN)
            logger.debug("Cook lock released for key: %s", cache_key[:32])
        os.close(fd)


def _tree_size(path: Path) -> int:
    if path.is_file():
        return path.stat().st_size
    return sum(p.stat().st_size for p in path.rglob("*") if p.is_file())


def backdate_outputs(workdir: Path, outputs: list[str], timestamp: float) -> int:
    """Set the modification time of every cooked output path to a timestamp.

    Build tools that compare modification times (cargo for local crates,
    make) must see every source copied after the cook as newer than the
    cooked outputs, including outputs compiled from the stub entry points.

    Args:
        workdir: Host path of the cooking stage's working directory.
        outputs: Workdir-relative output paths.
        timestamp: POSIX time to apply.

    Returns:
        Number of paths updated. Missing outputs are skipped.

    Raises:
        CacheError: If a modification time cannot be set.
    """
    count = 0
    for rel_path in outputs:
        root = workdir / rel_path
        if not root.exists():
            continue
        paths = [root, *root.rglob("*")] if root.is_dir() else [root]
        try:
            for path in paths:
                os.utime(path, (timestamp, timestamp), follow_symlinks=False)
                count += 1
        except OSError as e:
            raise CacheError(
                f"Failed to update times of cook output {rel_path}: {e}",
                code="backdate_failed",
            ) from e
    return count


def _remove(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    elif path.exists() or path.is_symlink():
        path.unlink()


class CacheStore:
    """Index and storage of cooked dependency layers."""

    def __init__(self, session: Session, cache_dir: Path) -> None:
        self.session = session
        self.cache_dir = cache_dir
        self.layers_dir = cache_dir / "layers"
        self.lock_dir = cache_dir / ".locks"

    def layer_dir(self, cache_key: str) -> Path:
        """Return the storage directory for a cache key."""
        return self.layers_dir / cache_key.split(":", 1)[-1]

    def lock(
        self, cache_key: str, timeout: float | None = None
    ) -> AbstractContextManager[None]:
        """Return a lock context manager for a cache key."""
        return cook_lock(self.lock_dir, cache_key, timeout=timeout)

    def lookup(self, cache_key: str) -> CacheLayer | None:
        """Find a valid layer for a cache key.

        A row whose directory no longer exists is deleted.

        Args:
            cache_key: Cook key.

        Returns:
            CacheLayer if a usable layer exists, None otherwise.
        """
        stmt = select(CacheLayer).where(CacheLayer.cache_key == cache_key)
        layer = self.session.execute(stmt).scalar_one_or_none()
        if layer is None:
            return None

        if not Path(layer.path).is_dir():
            logger.warning(
                "Cache layer %s is missing on disk, invalidating", cache_key[:23]
            )
            self.session.delete(layer)
            self.session.flush()
            return None

        return layer

    def store(
        self,
        cache_key: str,
        recipe_hash: str,
        command: list[str] | str,
        outputs: list[str],
        workdir: Path,
    ) -> CacheLayer:
        """Snapshot cook outputs from a working directory into a new layer.

        Files are copied into a temporary directory that is renamed into
        place once complete, so a layer directory is never partial.

        Args:
            cache_key: Cook key.
            recipe_hash: Hash of the recipe cooked.
            command: Cook command.
            outputs: Workdir-relative paths to capture.
            workdir: Host path of the cooking stage's working directory.

        Returns:
            The indexed CacheLayer.

        Raises:
            CacheError: If an output is missing or the snapshot fails.
        """
        self.layers_dir.mkdir(parents=True, exist_ok=True)
        final = self.layer_dir(cache_key)
        tmp = self.layers_dir / f".tmp-{final.name[:16]}-{uuid.uuid4().hex[:8]}"

        try:
            tmp.mkdir()
            for rel_path in outputs:
                source = workdir / rel_path
                if not source.exists():
                    raise CacheError(
                        f"Cook output not produced: {rel_path}",
                        code="missing_cook_output",
                    )
                target = tmp / rel_path
                target.parent.mkdir(parents=True, exist_ok=True)
                if source.is_dir():
                    shutil.copytree(source, target, symlinks=True)
                else:
                    shutil.copy2(source, target, follow_symlinks=False)

            if final.exists():
                # Unindexed leftover from an interrupted run
                shutil.rmtree(final)
            tmp.rename(final)
        except OSError as e:
            raise CacheError(
                f"Failed to store cache layer {cache_key[:23]}: {e}",
                code="store_failed",
            ) from e
        finally:
            if tmp.exists():
                shutil.rmtree(tmp, ignore_errors=True)

        existing = self.session.execute(
            select(CacheLayer).where(CacheLayer.cache_key == cache_key)
        ).scalar_one_or_none()
        if existing is not None:
            self.session.delete(existing)
            self.session.flush()

        layer = CacheLayer(
            cache_key=cache_key,
            recipe_hash=recipe_hash,
            command=command,
            outputs=list(outputs),
            path=str(final),
            size_bytes=_tree_size(final),
            hit_count=0,
            created_at=datetime.now(),
        )
        self.session.add(layer)
        self.session.flush()
        logger.info(
            "Stored cache layer %s (%d bytes)", cache_key[:23], layer.size_bytes
        )
        return layer

    def restore(self, layer: CacheLayer, workdir: Path) -> list[Path]:
        """Copy a layer's outputs into a working directory.

        Existing paths with the same names are replaced.

        Args:
            layer: Layer to restore.
            workdir: Host path of the working directory.

        Returns:
            Restored destination paths.

        Raises:
            CacheError: If the restore fails.
        """
        layer_path = Path(layer.path)
        restored: list[Path] = []
        try:
            for rel_path in layer.outputs:
                source = layer_path / rel_path
                dest = workdir / rel_path
                _remove(dest)
                dest.parent.mkdir(parents=True, exist_ok=True)
                if source.is_dir():
                    shutil.copytree(source, dest, symlinks=True)
                else:
                    shutil.copy2(source, dest, follow_symlinks=False)
                restored.append(dest)
        except OSError as e:
            raise CacheError(
                f"Failed to restore cache layer {layer.cache_key[:23]}: {e}",
                code="restore_failed",
            ) from e

        layer.touch()
        self.session.flush()
        logger.info("Restored cache layer %s", layer.cache_key[:23])
        return restored

    def list_layers(self) -> list[CacheLayer]:
        """List layers, most recently used first."""
        layers = list(self.session.execute(select(CacheLayer)).scalars().all())
        return sorted(
            layers,
            key=lambda layer: (
                layer.last_used_at or layer.created_at or datetime.min,
                layer.id,
            ),
            reverse=True,
        )

    def evict(self, cache_key: str) -> bool:
        """Remove a layer and its directory.

        Args:
            cache_key: Cook key.

        Returns:
            True if a layer was removed.
        """
        layer = self.session.execute(
            select(CacheLayer).where(CacheLayer.cache_key == cache_key)
        ).scalar_one_or_none()
        if layer is None:
            return False

        shutil.rmtree(layer.path, ignore_errors=True)
        self.session.delete(layer)
        self.session.flush()
        logger.info("Evicted cache layer %s", cache_key[:23])
        return True

    def prune(self, keep: int = 0, dry_run: bool = False) -> list[CacheLayer]:
        """Remove all but the ``keep`` most recently used layers.

        Args:
            keep: Number of layers to keep.
            dry_run: Only report what would be removed.

        Returns:
            Layers removed (or that would be removed).
        """
        victims = self.list_layers()[max(keep, 0) :]
        if dry_run:
            return victims

        for layer in victims:
            self.evict(layer.cache_key)
        return victims


__all__ = [
    "CacheError",
    "CacheStore",
    "backdate_outputs",
    "compute_cook_key",
    "cook_lock",
]
