"""Built-in four-stage pipeline.

The default pipeline compiles a binary in a toolchain image and ships it in
a minimal interpreted-language runtime image:

1. toolchain - compiler plus OS-level build prerequisites
2. planner   - full source + overrides -> recipe.json
3. builder   - recipe.json -> cooked dependency layer, then full source +
               overrides -> release binary
4. runtime   - interpreted dependencies, support scripts, the binary and
               its entry point
"""

from pathlib import PurePosixPath

from stagecraft.pipelines.schema import (
    CookOp,
    CopyOp,
    EntrypointOp,
    InstallOp,
    OverrideFileSchema,
    OverridesOp,
    PipelineSchema,
    PlannerSchema,
    PlanOp,
    RunOp,
    StageSchema,
    WorkdirOp,
)
from stagecraft.types import StageRole

DEFAULT_TOOLCHAIN_IMAGE = "rust:slim"
DEFAULT_RUNTIME_IMAGE = "python:slim"
DEFAULT_WORKDIR = "/app"
DEFAULT_RECIPE = "recipe.json"

DEFAULT_TOOLCHAIN_SETUP: tuple[tuple[str, ...], ...] = (
    ("apt-get", "update"),
    ("apt-get", "install", "-y", "make"),
)

# Toolchain traces that must never reach the runtime image
DEFAULT_RUNTIME_FORBIDDEN = [
    "**/Cargo.toml",
    "**/Cargo.lock",
    "**/recipe.json",
    "**/.cargo/**",
    "**/.rustup/**",
    "**/bin/cargo",
    "**/bin/rustc",
    "**/target/**",
]


def default_pipeline(
    name: str = "app",
    binary_name: str = "app",
    toolchain_image: str = DEFAULT_TOOLCHAIN_IMAGE,
    runtime_image: str = DEFAULT_RUNTIME_IMAGE,
    workdir: str = DEFAULT_WORKDIR,
    toolchain_setup: list[list[str] | str] | None = None,
    cook_command: list[str] | str | None = None,
    build_command: list[str] | str | None = None,
    binary_path: str | None = None,
    manifest_override: str = ".build/Cargo.toml",
    manifest_path: str = "Cargo.toml",
    entry_point_override: str = ".build/main.rs",
    entry_point_path: str = "src/main.rs",
    scripts_dir: str = "scripts",
    requirements_file: str = "requirements.txt",
    runtime_forbidden: list[str] | None = None,
) -> PipelineSchema:
    """Build the default toolchain/planner/builder/runtime pipeline.

    Args:
        name: Pipeline (and image) name.
        binary_name: File name of the binary in the runtime image.
        toolchain_image: Base image reference for the toolchain stage.
        runtime_image: Base image reference for the runtime stage.
        workdir: Working directory used by every stage.
        toolchain_setup: Commands installing OS-level prerequisites.
        cook_command: Command compiling dependencies from the recipe skeleton.
        build_command: Command compiling the application.
        binary_path: Binary location relative to workdir after the build.
        manifest_override: Context path of the override manifest.
        manifest_path: Where the override manifest lands in the workdir.
        entry_point_override: Context path of the override entry point.
        entry_point_path: Where the override entry point lands in the workdir.
        scripts_dir: Support scripts directory in the context.
        requirements_file: Dependency declaration inside scripts_dir.
        runtime_forbidden: Globs that must not appear in the runtime image.

    Returns:
        Validated PipelineSchema.
    """
    if toolchain_setup is None:
        toolchain_setup = [list(cmd) for cmd in DEFAULT_TOOLCHAIN_SETUP]
    if cook_command is None:
        cook_command = ["cargo", "build", "--release"]
    if build_command is None:
        build_command = ["cargo", "build", "--release"]
    if binary_path is None:
        binary_path = f"target/release/{binary_name}"
    if runtime_forbidden is None:
        runtime_forbidden = list(DEFAULT_RUNTIME_FORBIDDEN)

    workdir = workdir.rstrip("/") or "/"
    # Override sources must not be planned as part of the project
    override_roots = {
        PurePosixPath(p).parts[0]
        for p in (manifest_override, entry_point_override)
        if len(PurePosixPath(p).parts) > 1
    }
    planner_exclude = ["target", ".git", *sorted(override_roots)]
    recipe_abs = f"{workdir}/{DEFAULT_RECIPE}"
    binary_abs = f"{workdir}/{binary_path}"
    requirements = f"{scripts_dir}/{requirements_file}"

    toolchain = StageSchema(
        name="toolchain",
        base=toolchain_image,
        role=StageRole.TOOLCHAIN,
        description="Compiler toolchain and build prerequisites",
        operations=[
            WorkdirOp(path=workdir),
            *[RunOp(command=cmd) for cmd in toolchain_setup],
        ],
    )
    planner = StageSchema(
        name="planner",
        base="toolchain",
        role=StageRole.PLANNER,
        description="Derive the dependency recipe",
        operations=[
            WorkdirOp(path=workdir),
            CopyOp(src=".", dest="."),
            OverridesOp(),
            PlanOp(recipe_path=DEFAULT_RECIPE),
        ],
        outputs=[recipe_abs],
    )
    builder = StageSchema(
        name="builder",
        base="toolchain",
        role=StageRole.BUILDER,
        description="Cook dependencies, then build the application",
        operations=[
            WorkdirOp(path=workdir),
            CopyOp(src=recipe_abs, dest=DEFAULT_RECIPE, from_stage="planner"),
            CookOp(recipe_path=DEFAULT_RECIPE, command=cook_command),
            CopyOp(src=".", dest="."),
            OverridesOp(),
            RunOp(command=build_command),
        ],
        outputs=[binary_abs],
    )
    runtime = StageSchema(
        name="runtime",
        base=runtime_image,
        role=StageRole.RUNTIME,
        description="Minimal runtime with support scripts and the binary",
        operations=[
            WorkdirOp(path=workdir),
            CopyOp(src=requirements, dest=requirements),
            InstallOp(requirements=requirements),
            CopyOp(src=scripts_dir, dest=scripts_dir),
            CopyOp(src=binary_abs, dest=binary_name, from_stage="builder"),
            EntrypointOp(command=[f"./{binary_name}"]),
        ],
    )

    return PipelineSchema(
        name=name,
        description="Toolchain, planner, builder and runtime stages",
        stages=[toolchain, planner, builder, runtime],
        overrides=[
            OverrideFileSchema(source=manifest_override, destination=manifest_path),
            OverrideFileSchema(
                source=entry_point_override, destination=entry_point_path
            ),
        ],
        planner=PlannerSchema(exclude=planner_exclude),
        context_exclude=[".git", "target"],
        runtime_forbidden=runtime_forbidden,
    )


__all__ = [
    "DEFAULT_RUNTIME_FORBIDDEN",
    "DEFAULT_RUNTIME_IMAGE",
    "DEFAULT_TOOLCHAIN_IMAGE",
    "DEFAULT_TOOLCHAIN_SETUP",
    "default_pipeline",
]
