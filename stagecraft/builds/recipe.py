"""Dependency recipe planning.

This module handles:
- Scanning a source tree for dependency manifests and lockfiles
- Validating manifests (malformed manifests abort planning)
- Producing a canonical, content-derived Recipe and its hash
- Materialising a recipe skeleton so dependencies can be compiled
  without the application sources

A recipe records manifest and lockfile *content* but only the *paths* of
entry points. Edits to application code, entry points included, leave the
recipe byte-identical, so the cooked dependency layer stays reusable.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import tomllib
from dataclasses import asdict, dataclass, field
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from stagecraft.pipelines.schema import PlannerSchema

logger = logging.getLogger(__name__)

# Schema version for recipe format; bump when the recipe layout changes
RECIPE_SCHEMA_VERSION = "1"


class PlanningError(Exception):
    """Raised when a recipe cannot be planned from a source tree."""

    def __init__(self, message: str, code: str = "planning_error") -> None:
        super().__init__(message)
        self.code = code


class RecipeError(Exception):
    """Raised when a recipe file cannot be read or is invalid."""

    def __init__(self, message: str, code: str = "invalid_recipe") -> None:
        super().__init__(message)
        self.code = code


@dataclass(frozen=True)
class RecipeFile:
    """A file captured verbatim in the recipe."""

    path: str
    contents: str


@dataclass
class Recipe:
    """Canonical description of the dependency graph of a source tree.

    Attributes:
        schema_version: Version of the recipe format.
        manifests: Dependency manifests, sorted by path.
        lockfiles: Lockfiles, sorted by path.
        entry_points: Relative paths of build targets (content excluded).
        entry_point_stub: Placeholder content for entry points when cooking.
    """

    schema_version: str = RECIPE_SCHEMA_VERSION
    manifests: list[RecipeFile] = field(default_factory=list)
    lockfiles: list[RecipeFile] = field(default_factory=list)
    entry_points: list[str] = field(default_factory=list)
    entry_point_stub: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Recipe:
        """Create a Recipe from its dictionary form.

        Raises:
            RecipeError: If the data does not describe a recipe.
        """
        try:
            version = str(data["schema_version"])
            recipe = cls(
                schema_version=version,
                manifests=[RecipeFile(**m) for m in data["manifests"]],
                lockfiles=[RecipeFile(**m) for m in data.get("lockfiles", [])],
                entry_points=[str(p) for p in data.get("entry_points", [])],
                entry_point_stub=str(data.get("entry_point_stub", "")),
            )
        except (KeyError, TypeError) as e:
            raise RecipeError(f"Recipe is missing fields: {e}") from e

        if version != RECIPE_SCHEMA_VERSION:
            raise RecipeError(
                f"Unsupported recipe schema version {version!r}",
                code="recipe_version",
            )
        return recipe

    def canonical_json(self) -> str:
        """Serialize to canonical JSON (sorted keys, no extra whitespace)."""
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))

    @property
    def recipe_hash(self) -> str:
        """Content hash of the recipe (sha256:...)."""
        return compute_recipe_hash(self)


def compute_recipe_hash(recipe: Recipe) -> str:
    """Compute the content hash of a recipe.

    Args:
        recipe: Recipe instance.

    Returns:
        Hash as hex string (sha256:...).
    """
    digest = hashlib.sha256(recipe.canonical_json().encode("utf-8")).hexdigest()
    return f"sha256:{digest}"


def _scan(root: Path, names: set[str], exclude: set[str]) -> list[str]:
    """Find files with one of the given names, skipping excluded directories.

    Returns:
        Sorted POSIX paths relative to root.
    """
    found: list[str] = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d not in exclude)
        for filename in filenames:
            if filename in names:
                rel = Path(dirpath, filename).relative_to(root)
                found.append(rel.as_posix())
    return sorted(found)


def _read_text(root: Path, rel_path: str) -> str:
    try:
        return (root / rel_path).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise PlanningError(
            f"Cannot read {rel_path}: {e}", code="unreadable_manifest"
        ) from e


def parse_manifest(rel_path: str, text: str) -> dict[str, Any]:
    """Parse a TOML dependency manifest.

    Args:
        rel_path: Manifest path (for error messages).
        text: Manifest content.

    Returns:
        Parsed manifest data.

    Raises:
        PlanningError: If the manifest is malformed.
    """
    try:
        return tomllib.loads(text)
    except tomllib.TOMLDecodeError as e:
        raise PlanningError(
            f"Malformed manifest {rel_path}: {e}", code="malformed_manifest"
        ) from e


def declared_targets(rel_path: str, data: dict[str, Any]) -> list[str]:
    """Collect explicit target paths (lib/bin) declared by a manifest.

    Args:
        rel_path: Manifest path relative to the source root.
        data: Parsed manifest.

    Returns:
        Target paths relative to the source root.
    """
    base = PurePosixPath(rel_path).parent
    targets: list[str] = []

    lib = data.get("lib")
    if isinstance(lib, dict) and isinstance(lib.get("path"), str):
        targets.append((base / lib["path"]).as_posix())

    bins = data.get("bin")
    if isinstance(bins, list):
        for entry in bins:
            if isinstance(entry, dict) and isinstance(entry.get("path"), str):
                targets.append((base / entry["path"]).as_posix())

    return targets


def plan_recipe(source_dir: Path, planner: PlannerSchema) -> Recipe:
    """Plan a recipe from a source tree.

    Args:
        source_dir: Root of the source tree (overrides already applied).
        planner: Planner options.

    Returns:
        Recipe describing the dependency graph.

    Raises:
        PlanningError: If no manifest is found or a manifest is malformed.
    """
    exclude = set(planner.exclude)
    manifest_paths = _scan(source_dir, set(planner.manifest_names), exclude)
    if not manifest_paths:
        raise PlanningError(
            f"No manifest ({', '.join(planner.manifest_names)}) found in {source_dir}",
            code="no_manifest",
        )

    manifests: list[RecipeFile] = []
    entry_points: set[str] = set()
    for rel_path in manifest_paths:
        text = _read_text(source_dir, rel_path)
        data = parse_manifest(rel_path, text)
        manifests.append(RecipeFile(path=rel_path, contents=text))
        entry_points.update(declared_targets(rel_path, data))
        logger.debug("Planned manifest %s", rel_path)

    lockfiles = [
        RecipeFile(path=rel_path, contents=_read_text(source_dir, rel_path))
        for rel_path in _scan(source_dir, set(planner.lockfile_names), exclude)
    ]

    for rel_path in planner.entry_points:
        if (source_dir / rel_path).is_file():
            entry_points.add(PurePosixPath(rel_path).as_posix())

    recipe = Recipe(
        schema_version=RECIPE_SCHEMA_VERSION,
        manifests=manifests,
        lockfiles=lockfiles,
        entry_points=sorted(entry_points),
        entry_point_stub=planner.entry_point_stub,
    )
    logger.info(
        "Planned recipe %s (%d manifests, %d lockfiles, %d entry points)",
        recipe.recipe_hash[:23],
        len(manifests),
        len(lockfiles),
        len(recipe.entry_points),
    )
    return recipe


def write_recipe(recipe: Recipe, path: Path) -> Path:
    """Write a recipe to a JSON file.

    The file content is deterministic for a given recipe.

    Args:
        recipe: Recipe to write.
        path: Output file path.

    Returns:
        Path to written recipe file.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as f:
        json.dump(recipe.to_dict(), f, indent=2, sort_keys=True)
        f.write("\n")
    return path


def load_recipe(path: Path) -> Recipe:
    """Load a recipe from a JSON file.

    Args:
        path: Recipe file path.

    Returns:
        Recipe instance.

    Raises:
        RecipeError: If the file is missing or invalid.
    """
    try:
        with path.open(encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError as e:
        raise RecipeError(f"Recipe not found: {path}", code="recipe_not_found") from e
    except (OSError, json.JSONDecodeError) as e:
        raise RecipeError(f"Cannot read recipe {path}: {e}") from e

    if not isinstance(data, dict):
        raise RecipeError(f"Expected a JSON object in {path}")
    return Recipe.from_dict(data)


def _skeleton_target(directory: Path, rel_path: str) -> Path:
    """Resolve a recipe path inside the skeleton directory.

    Raises:
        RecipeError: If the path escapes the directory.
    """
    dest = directory / rel_path
    try:
        dest.resolve().relative_to(directory.resolve())
    except ValueError:
        raise RecipeError(
            f"Recipe path escapes the target directory: {rel_path}",
            code="path_traversal",
        ) from None
    return dest


def materialize_skeleton(recipe: Recipe, directory: Path) -> list[Path]:
    """Write the dependency-only skeleton of a recipe into a directory.

    Manifests and lockfiles are written verbatim. Entry points are created
    with the stub content, but existing files are never overwritten.

    Args:
        recipe: Recipe to materialise.
        directory: Target directory.

    Returns:
        Paths written.

    Raises:
        RecipeError: If a recipe path points outside the directory.
    """
    files = [
        (_skeleton_target(directory, item.path), item.contents)
        for item in (*recipe.manifests, *recipe.lockfiles)
    ]
    stubs = [_skeleton_target(directory, p) for p in recipe.entry_points]

    written: list[Path] = []
    for dest, contents in files:
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_text(contents, encoding="utf-8")
        written.append(dest)

    for dest in stubs:
        if dest.exists():
            continue
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_text(recipe.entry_point_stub, encoding="utf-8")
        written.append(dest)

    logger.debug("Materialised %d skeleton files in %s", len(written), directory)
    return written


__all__ = [
    "RECIPE_SCHEMA_VERSION",
    "PlanningError",
    "Recipe",
    "RecipeError",
    "RecipeFile",
    "compute_recipe_hash",
    "declared_targets",
    "load_recipe",
    "materialize_skeleton",
    "parse_manifest",
    "plan_recipe",
    "write_recipe",
]
