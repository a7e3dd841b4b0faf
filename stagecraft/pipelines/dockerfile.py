"""Render a pipeline as a multi-stage Dockerfile.

Each stage maps to a ``FROM <base> AS <name>`` block. Native operations
(plan and cook) are rendered as invocations of the stagecraft CLI. The
CLI is installed at the root of every lineage that plans or cooks, the
same way a dependency planning extension is installed into a compiler
image, and the planner options are passed inline so the recipe matches
an in-process run.
"""

import json
import shlex

from stagecraft.pipelines.graph import build_stage_graph
from stagecraft.pipelines.schema import (
    CookOp,
    CopyOp,
    EntrypointOp,
    InstallOp,
    OverridesOp,
    PipelineSchema,
    PlanOp,
    RunOp,
    StageSchema,
    WorkdirOp,
)

PLANNER_CLI = "stagecraft"

# Toolchain images ship a compiler but usually no Python
DEFAULT_PLANNER_INSTALL = (
    "apt-get update"
    " && apt-get install -y --no-install-recommends python3 python3-pip"
    f" && pip3 install --break-system-packages {PLANNER_CLI}"
)


def _render_command(command: list[str] | str) -> str:
    """Render a command in exec form (JSON array) or shell form."""
    if isinstance(command, str):
        return command
    return json.dumps(command)


def _render_install(op: InstallOp, install_command: list[str]) -> str:
    argv = [
        arg.replace("{requirements}", op.requirements).replace("{root}", "")
        for arg in install_command
    ]
    return f"RUN {json.dumps(argv)}"


def _planner_options(pipeline: PipelineSchema) -> str:
    """Serialise the planner options as compact JSON for ``plan --planner``."""
    return json.dumps(
        pipeline.planner.model_dump(mode="json"),
        sort_keys=True,
        separators=(",", ":"),
    )


def planner_stages(pipeline: PipelineSchema) -> set[str]:
    """Return the lineage roots that need the planner CLI installed.

    A stage that plans or cooks runs the CLI from whatever its external
    base provides, so the install goes into the first stage of its
    lineage.
    """
    graph = build_stage_graph(pipeline)
    return {
        graph.lineage(stage.name)[-1]
        for stage in pipeline.stages
        if any(isinstance(op, (PlanOp, CookOp)) for op in stage.operations)
    }


def render_stage(
    stage: StageSchema,
    pipeline: PipelineSchema,
    install_command: list[str],
    planner_install: str | None = None,
) -> list[str]:
    """Render one stage as Dockerfile instructions.

    Args:
        stage: Stage to render.
        pipeline: Owning pipeline (for the override set and planner options).
        install_command: Install command template for install operations.
        planner_install: Shell command installing the planner CLI, emitted
            right after FROM when given.

    Returns:
        Dockerfile lines for the stage.
    """
    lines = [f"FROM {stage.base} AS {stage.name}"]
    if stage.description:
        lines.insert(0, f"# {stage.description}")
    if planner_install:
        lines.append(f"RUN {planner_install}")

    for op in stage.operations:
        if isinstance(op, WorkdirOp):
            lines.append(f"WORKDIR {op.path}")
        elif isinstance(op, CopyOp):
            origin = f"--from={op.from_stage} " if op.from_stage else ""
            lines.append(f"COPY {origin}{op.src} {op.dest}")
        elif isinstance(op, OverridesOp):
            for override in pipeline.overrides:
                lines.append(f"COPY ./{override.source} ./{override.destination}")
        elif isinstance(op, RunOp):
            assignments = [f"{k}={v}" for k, v in sorted(op.env.items())]
            if assignments and isinstance(op.command, str):
                prefix = " ".join(shlex.quote(a) for a in assignments)
                lines.append(f"RUN {prefix} {op.command}")
            elif assignments:
                lines.append(f"RUN {json.dumps(['env', *assignments, *op.command])}")
            else:
                lines.append(f"RUN {_render_command(op.command)}")
        elif isinstance(op, PlanOp):
            argv = [
                PLANNER_CLI,
                "plan",
                ".",
                "--output",
                op.recipe_path,
                "--planner",
                _planner_options(pipeline),
            ]
            lines.append(f"RUN {json.dumps(argv)}")
        elif isinstance(op, CookOp):
            command = (
                shlex.split(op.command) if isinstance(op.command, str) else op.command
            )
            argv = [PLANNER_CLI, "cook", op.recipe_path, "--", *command]
            lines.append("# Dependency layer: cached while the recipe is unchanged")
            lines.append(f"RUN {json.dumps(argv)}")
        elif isinstance(op, InstallOp):
            lines.append(_render_install(op, install_command))
        elif isinstance(op, EntrypointOp):
            lines.append(f"ENTRYPOINT {json.dumps(op.command)}")

    return lines


def render_dockerfile(
    pipeline: PipelineSchema,
    install_command: list[str] | None = None,
    planner_install: str | None = None,
) -> str:
    """Render a full multi-stage Dockerfile for a pipeline.

    Args:
        pipeline: Pipeline to render.
        install_command: Install command template; defaults to pip.
        planner_install: Shell command installing the planner CLI into the
            stages returned by planner_stages; defaults to
            DEFAULT_PLANNER_INSTALL.

    Returns:
        Dockerfile text.
    """
    if install_command is None:
        install_command = ["pip3", "install", "-r", "{requirements}"]
    if planner_install is None:
        planner_install = DEFAULT_PLANNER_INSTALL

    needs_planner = planner_stages(pipeline)
    blocks = [
        "\n".join(
            render_stage(
                stage,
                pipeline,
                install_command,
                planner_install if stage.name in needs_planner else None,
            )
        )
        for stage in pipeline.stages
    ]
    header = f"# Generated by stagecraft for pipeline '{pipeline.name}'\n"
    return header + "\n\n".join(blocks) + "\n"


__all__ = [
    "DEFAULT_PLANNER_INSTALL",
    "PLANNER_CLI",
    "planner_stages",
    "render_dockerfile",
    "render_stage",
]
