"""Tests for builds/service.py module.

Runs complete pipelines against a fake toolchain made of small Python
scripts, so the stage, cache and hand-off logic runs for real without a
compiler.
"""

import os
import sys
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from stagecraft.builds.artifacts import ImageVerificationError
from stagecraft.builds.environment import StageEnvironmentError
from stagecraft.builds.image import load_image, run_image
from stagecraft.builds.models import CacheLayer, PipelineRun, StageRun
from stagecraft.builds.runner import CommandExecutionError
from stagecraft.builds.service import (
    PipelineFailedError,
    PipelineServiceError,
    RunNotFoundError,
    classify_failure,
    get_run,
    list_runs,
    run_pipeline,
)
from stagecraft.config import Settings
from stagecraft.db import Base
from stagecraft.pipelines.defaults import default_pipeline
from stagecraft.pipelines.schema import CookOp, PlanOp, RunOp, StageSchema
from stagecraft.types import FailureKind, RunStatus, StageRole

COOK_SCRIPT = r'''
import pathlib
import sys

manifest = pathlib.Path("Cargo.toml").read_text()
deps = pathlib.Path("target/deps")
deps.mkdir(parents=True, exist_ok=True)
(deps / "lib.txt").write_text(manifest)
(deps / "main_seen.txt").write_text(pathlib.Path("src/main.rs").read_text())
with open(sys.argv[1], "a") as f:
    f.write("cooked\n")
'''

BUILD_SCRIPT = r'''
import pathlib
import sys

if not pathlib.Path("target/deps/lib.txt").is_file():
    sys.exit("dependencies were not cooked")
source = pathlib.Path("src/main.rs").read_text() + pathlib.Path("Cargo.toml").read_text()
body = "".join("# " + line + "\n" for line in source.splitlines())
out = pathlib.Path("target/release/app")
out.parent.mkdir(parents=True, exist_ok=True)
out.write_text("#!/bin/sh\n" + body + 'exit "${1:-0}"\n')
out.chmod(0o755)
'''

INSTALL_SCRIPT = r'''
import pathlib
import shutil
import sys

requirements, root = sys.argv[1], sys.argv[2]
site = pathlib.Path(root, "usr/local/lib/site-packages")
site.mkdir(parents=True, exist_ok=True)
shutil.copy(requirements, site / "installed.txt")
'''

SOURCE_MANIFEST = '[package]\nname = "demo"\nversion = "0.1.0"\n'
OVERRIDE_MANIFEST = (
    '[package]\nname = "demo"\nversion = "0.1.0"\n\n[dependencies]\nserde = "1"\n'
)

# Rebuilds only when src/main.rs is newer than the binary, as cargo does
INCREMENTAL_SCRIPT = r'''
import pathlib
import sys

source = pathlib.Path("src/main.rs")
out = pathlib.Path("target/release/app")
if out.is_file() and out.stat().st_mtime_ns >= source.stat().st_mtime_ns:
    sys.exit(0)
body = "".join("# " + line + "\n" for line in source.read_text().splitlines())
out.parent.mkdir(parents=True, exist_ok=True)
out.write_text("#!/bin/sh\n" + body + 'exit "${1:-0}"\n')
out.chmod(0o755)
'''


@pytest.fixture
def engine():
    """Create an in-memory SQLite engine for testing."""
    engine = create_engine("sqlite:///:memory:", echo=False)
    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture
def session(engine):
    """Create a session for testing."""
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    session = factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def tools(tmp_path):
    """Write the fake toolchain scripts outside the build context."""
    tools_dir = tmp_path / "tools"
    tools_dir.mkdir()
    (tools_dir / "cook.py").write_text(COOK_SCRIPT)
    (tools_dir / "build.py").write_text(BUILD_SCRIPT)
    (tools_dir / "install.py").write_text(INSTALL_SCRIPT)
    return tools_dir


@pytest.fixture
def cook_counter(tmp_path):
    """File receiving one line per cook invocation."""
    return tmp_path / "cook_count.txt"


@pytest.fixture
def context(tmp_path):
    """Create a build context with sources, overrides and scripts."""
    ctx = tmp_path / "context"
    (ctx / "src").mkdir(parents=True)
    (ctx / ".build").mkdir()
    (ctx / "scripts").mkdir()
    (ctx / "Cargo.toml").write_text(SOURCE_MANIFEST)
    (ctx / "Cargo.lock").write_text("version = 3\n")
    (ctx / "src" / "main.rs").write_text("// source main\n")
    (ctx / "src" / "util.rs").write_text("// util v1\n")
    (ctx / ".build" / "Cargo.toml").write_text(OVERRIDE_MANIFEST)
    (ctx / ".build" / "main.rs").write_text("// override main v1\n")
    (ctx / "scripts" / "requirements.txt").write_text("requests==2.32.0\n")
    (ctx / "scripts" / "tool.py").write_text("print('tool')\n")
    return ctx


@pytest.fixture
def settings(tmp_path, tools):
    """Create settings pointing every directory into tmp_path."""
    return Settings(
        work_dir=tmp_path / "work",
        cache_dir=tmp_path / "cache",
        images_dir=tmp_path / "images",
        db_url="sqlite:///:memory:",
        install_command=[
            sys.executable,
            str(tools / "install.py"),
            "{requirements}",
            "{root}",
        ],
        command_timeout=120,
        lock_timeout=30,
    )


@pytest.fixture
def make_pipeline(tools, cook_counter):
    """Return a factory for the default pipeline wired to the fake toolchain."""

    def _make(**kwargs):
        options = {
            "name": "demo",
            "toolchain_setup": [[sys.executable, "-c", "print('setup')"]],
            "cook_command": [sys.executable, str(tools / "cook.py"), str(cook_counter)],
            "build_command": [sys.executable, str(tools / "build.py")],
        }
        options.update(kwargs)
        return default_pipeline(**options)

    return _make


def _cook_count(counter):
    return len(counter.read_text().splitlines()) if counter.exists() else 0


class TestRunPipeline:
    """End-to-end pipeline runs."""

    def test_successful_build(self, session, context, settings, make_pipeline, tmp_path):
        """A full run should export a runnable image and record the run."""
        result = run_pipeline(
            session, make_pipeline(), context, tmp_path / "out" / "demo", settings
        )

        assert result.run.status == RunStatus.SUCCEEDED.value
        assert [o.name for o in result.stages] == [
            "toolchain",
            "planner",
            "builder",
            "runtime",
        ]
        assert result.cache_hits == {"builder": False}
        assert result.run.recipe_hashes["planner"] == result.run.recipe_hashes["builder"]

        rootfs = result.image.rootfs
        assert (rootfs / "app" / "app").is_file()
        assert (rootfs / "app" / "scripts" / "tool.py").is_file()
        installed = rootfs / "usr" / "local" / "lib" / "site-packages" / "installed.txt"
        assert installed.read_text() == "requests==2.32.0\n"
        assert result.image.entrypoint == ["./app"]

        stage_runs = session.query(StageRun).order_by(StageRun.position).all()
        assert [s.status for s in stage_runs] == [RunStatus.SUCCEEDED.value] * 4

    def test_stage_directories_discarded(
        self, session, context, settings, make_pipeline, tmp_path
    ):
        """Stage environments should not outlive the run by default."""
        result = run_pipeline(
            session, make_pipeline(), context, tmp_path / "out" / "demo", settings
        )
        stages_dir = Path(result.run.run_dir) / "stages"
        assert list(stages_dir.iterdir()) == []

    def test_keep_stages(self, session, context, settings, make_pipeline, tmp_path):
        """keep_stages should leave every stage root on disk."""
        result = run_pipeline(
            session,
            make_pipeline(),
            context,
            tmp_path / "out" / "demo",
            settings,
            keep_stages=True,
        )
        stages_dir = Path(result.run.run_dir) / "stages"
        assert sorted(p.name for p in stages_dir.iterdir()) == [
            "builder",
            "planner",
            "runtime",
            "toolchain",
        ]

    def test_missing_context(self, session, settings, make_pipeline, tmp_path):
        """A missing build context should fail before any stage runs."""
        with pytest.raises(PipelineServiceError) as exc_info:
            run_pipeline(
                session, make_pipeline(), tmp_path / "nope", tmp_path / "out", settings
            )
        assert exc_info.value.code == "context_not_found"
        assert session.query(PipelineRun).count() == 0

    def test_base_image_seeds_stage(
        self, session, context, settings, make_pipeline, tmp_path
    ):
        """A local base image root should seed the stage that uses it."""
        base = settings.images_dir / "python_slim" / "usr" / "bin"
        base.mkdir(parents=True)
        (base / "python-marker").write_text("interpreter")

        result = run_pipeline(
            session, make_pipeline(), context, tmp_path / "out" / "demo", settings
        )

        assert (result.image.rootfs / "usr" / "bin" / "python-marker").is_file()
        assert "python:slim" in result.image.manifest["config"]["lineage"]


class TestCookCache:
    """Dependency cache reuse and invalidation across runs."""

    def test_application_edit_reuses_cooked_layer(
        self, session, context, settings, make_pipeline, cook_counter, tmp_path
    ):
        """Editing application code should keep the recipe and hit the cache."""
        output = tmp_path / "out" / "demo"
        first = run_pipeline(session, make_pipeline(), context, output, settings)

        (context / ".build" / "main.rs").write_text("// override main v2\n")
        (context / "src" / "util.rs").write_text("// util v2\n")
        second = run_pipeline(session, make_pipeline(), context, output, settings)

        assert second.run.recipe_hashes == first.run.recipe_hashes
        assert second.outcome("builder").cache_hit is True
        assert _cook_count(cook_counter) == 1
        # The application itself was rebuilt from the new sources
        assert "override main v2" in (second.image.rootfs / "app" / "app").read_text()

    def test_manifest_edit_invalidates_cache(
        self, session, context, settings, make_pipeline, cook_counter, tmp_path
    ):
        """Editing a dependency declaration should re-cook."""
        output = tmp_path / "out" / "demo"
        first = run_pipeline(session, make_pipeline(), context, output, settings)

        (context / ".build" / "Cargo.toml").write_text(
            OVERRIDE_MANIFEST + 'tokio = "1"\n'
        )
        second = run_pipeline(session, make_pipeline(), context, output, settings)

        assert second.run.recipe_hashes["planner"] != first.run.recipe_hashes["planner"]
        assert second.outcome("builder").cache_hit is False
        assert _cook_count(cook_counter) == 2
        assert session.query(CacheLayer).count() == 2

    def test_lockfile_edit_invalidates_cache(
        self, session, context, settings, make_pipeline, cook_counter, tmp_path
    ):
        """Editing the lockfile should re-cook."""
        output = tmp_path / "out" / "demo"
        run_pipeline(session, make_pipeline(), context, output, settings)
        (context / "Cargo.lock").write_text("version = 4\n")
        second = run_pipeline(session, make_pipeline(), context, output, settings)

        assert second.outcome("builder").cache_hit is False
        assert _cook_count(cook_counter) == 2

    def test_force_cook(
        self, session, context, settings, make_pipeline, cook_counter, tmp_path
    ):
        """force_cook should re-run the cook command despite a valid layer."""
        output = tmp_path / "out" / "demo"
        run_pipeline(session, make_pipeline(), context, output, settings)
        second = run_pipeline(
            session, make_pipeline(), context, output, settings, force_cook=True
        )

        assert second.outcome("builder").cache_hit is False
        assert _cook_count(cook_counter) == 2
        assert session.query(CacheLayer).count() == 1

    def test_cook_sees_only_the_skeleton(
        self, session, context, settings, make_pipeline, tmp_path
    ):
        """The cook step should see stub entry points, not application code."""
        result = run_pipeline(
            session, make_pipeline(), context, tmp_path / "out" / "demo", settings
        )
        layer = session.query(CacheLayer).one()
        seen = Path(layer.path) / "target" / "deps" / "main_seen.txt"

        assert seen.read_text() == make_pipeline().planner.entry_point_stub
        assert layer.cache_key == result.outcome("builder").cook_key


def _age_tree(root, seconds):
    """Move every modification time under root into the past."""
    stamp = root.stat().st_mtime - seconds
    for path in [root, *root.rglob("*")]:
        os.utime(path, (stamp, stamp))


class TestIncrementalBuildTools:
    """Build tools that skip work based on modification times."""

    @pytest.fixture
    def incremental_pipeline(self, make_pipeline, tools):
        """Cook and build with a tool that trusts modification times."""
        script = tools / "incremental.py"
        script.write_text(INCREMENTAL_SCRIPT)
        command = [sys.executable, str(script)]
        return make_pipeline(cook_command=command, build_command=command)

    def test_cooked_stub_binary_not_shipped(
        self, session, context, settings, incremental_pipeline, tmp_path
    ):
        """Old sources should still rebuild the binary compiled from the stub."""
        _age_tree(context, 3600)

        result = run_pipeline(
            session, incremental_pipeline, context, tmp_path / "out" / "demo", settings
        )

        binary = (result.image.rootfs / "app" / "app").read_text()
        assert "override main v1" in binary
        assert "fn main() {}" not in binary

    def test_restored_layer_older_than_sources(
        self, session, context, settings, incremental_pipeline, tmp_path
    ):
        """A cache hit should not make the stub binary look up to date."""
        output = tmp_path / "out" / "demo"
        run_pipeline(session, incremental_pipeline, context, output, settings)

        (context / ".build" / "main.rs").write_text("// override main v2\n")
        _age_tree(context, 3600)
        second = run_pipeline(session, incremental_pipeline, context, output, settings)

        assert second.outcome("builder").cache_hit is True
        binary = (second.image.rootfs / "app" / "app").read_text()
        assert "override main v2" in binary

    def test_cook_outputs_dated_before_cook(
        self, session, context, settings, incremental_pipeline, tmp_path
    ):
        """Stored layer files should predate the cook command."""
        run_pipeline(
            session, incremental_pipeline, context, tmp_path / "out" / "demo", settings
        )
        layer = session.query(CacheLayer).one()
        stub_binary = Path(layer.path) / "target" / "release" / "app"

        assert "fn main() {}" in stub_binary.read_text()
        assert stub_binary.stat().st_mtime < layer.created_at.timestamp()


class TestOverrides:
    """Override precedence in the planner and builder stages."""

    def test_override_content_wins(
        self, session, context, settings, make_pipeline, tmp_path
    ):
        """The binary should be built from the override files."""
        result = run_pipeline(
            session, make_pipeline(), context, tmp_path / "out" / "demo", settings
        )
        binary = (result.image.rootfs / "app" / "app").read_text()

        assert "override main v1" in binary
        assert "source main" not in binary
        assert 'serde = "1"' in binary

    def test_source_manifest_edit_is_masked(
        self, session, context, settings, make_pipeline, cook_counter, tmp_path
    ):
        """Edits to a file shadowed by an override should not matter."""
        output = tmp_path / "out" / "demo"
        run_pipeline(session, make_pipeline(), context, output, settings)
        (context / "Cargo.toml").write_text(SOURCE_MANIFEST + "# edited\n")
        second = run_pipeline(session, make_pipeline(), context, output, settings)

        assert second.outcome("builder").cache_hit is True
        assert _cook_count(cook_counter) == 1

    def test_missing_override_source_fails(
        self, session, context, settings, make_pipeline, tmp_path
    ):
        """A missing override file should abort the run."""
        (context / ".build" / "main.rs").unlink()

        with pytest.raises(PipelineFailedError) as exc_info:
            run_pipeline(
                session, make_pipeline(), context, tmp_path / "out" / "demo", settings
            )

        assert exc_info.value.stage == "planner"
        assert exc_info.value.code == "override_not_found"


class TestFailFast:
    """Failures abort the run at the first failing stage."""

    def _run_failing(self, session, pipeline, context, settings, output):
        with pytest.raises(PipelineFailedError) as exc_info:
            run_pipeline(session, pipeline, context, output, settings)
        run = get_run(session, exc_info.value.run_id)
        return exc_info.value, run

    def test_build_failure(self, session, context, settings, make_pipeline, tmp_path):
        """A failing build command should be an application-build failure."""
        output = tmp_path / "out" / "demo"
        pipeline = make_pipeline(
            build_command=[sys.executable, "-c", "import sys; sys.exit(2)"]
        )

        error, run = self._run_failing(session, pipeline, context, settings, output)

        assert error.stage == "builder"
        assert error.kind == FailureKind.APPLICATION_BUILD
        assert error.code == "command_failed"
        assert not output.exists()
        assert run.status == RunStatus.FAILED.value
        assert run.failed_stage == "builder"
        assert run.failure_kind == FailureKind.APPLICATION_BUILD.value
        # The runtime stage never started
        assert [s.name for s in run.stages] == ["toolchain", "planner", "builder"]
        assert run.stages[-1].status == RunStatus.FAILED.value

    def test_cook_failure(self, session, context, settings, make_pipeline, tmp_path):
        """A failing cook command should be a dependency-cook failure."""
        pipeline = make_pipeline(cook_command="exit 4")

        error, run = self._run_failing(
            session, pipeline, context, settings, tmp_path / "out" / "demo"
        )

        assert error.kind == FailureKind.DEPENDENCY_COOK
        assert error.code == "cook_failed"
        assert session.query(CacheLayer).count() == 0

    def test_planning_failure(self, session, context, settings, make_pipeline, tmp_path):
        """A malformed manifest should be a planning failure."""
        (context / ".build" / "Cargo.toml").write_text("[package\n")

        error, run = self._run_failing(
            session, make_pipeline(), context, settings, tmp_path / "out" / "demo"
        )

        assert error.stage == "planner"
        assert error.kind == FailureKind.PLANNING
        assert error.code == "malformed_manifest"
        assert run.failure_kind == "planning"

    def test_toolchain_setup_failure(
        self, session, context, settings, make_pipeline, tmp_path
    ):
        """A failing prerequisite install should be an environment-setup failure."""
        pipeline = make_pipeline(toolchain_setup=["exit 1"])

        error, _ = self._run_failing(
            session, pipeline, context, settings, tmp_path / "out" / "demo"
        )

        assert error.stage == "toolchain"
        assert error.kind == FailureKind.ENVIRONMENT_SETUP

    def test_strict_missing_base_image(
        self, session, context, settings, make_pipeline, tmp_path
    ):
        """With strict base images, an unknown base should fail environment setup."""
        strict = settings.model_copy(update={"strict_base_images": True})

        error, _ = self._run_failing(
            session, make_pipeline(), context, strict, tmp_path / "out" / "demo"
        )

        assert error.stage == "toolchain"
        assert error.kind == FailureKind.ENVIRONMENT_SETUP
        assert error.code == "base_image_not_found"

    def test_missing_declared_output(
        self, session, context, settings, make_pipeline, tmp_path
    ):
        """A build that produces no binary should fail the builder stage."""
        pipeline = make_pipeline(build_command=[sys.executable, "-c", "pass"])

        error, _ = self._run_failing(
            session, pipeline, context, settings, tmp_path / "out" / "demo"
        )

        assert error.stage == "builder"
        assert error.code == "missing_output"

    def test_missing_requirements(
        self, session, context, settings, make_pipeline, tmp_path
    ):
        """A missing dependency declaration should fail runtime assembly."""
        (context / "scripts" / "requirements.txt").unlink()

        error, _ = self._run_failing(
            session, make_pipeline(), context, settings, tmp_path / "out" / "demo"
        )

        assert error.stage == "runtime"
        assert error.kind == FailureKind.RUNTIME_ASSEMBLY

    def test_install_failure(self, session, context, settings, make_pipeline, tmp_path):
        """A failing install command should fail runtime assembly."""
        broken = settings.model_copy(
            update={"install_command": [sys.executable, "-c", "raise SystemExit(1)"]}
        )

        error, _ = self._run_failing(
            session, make_pipeline(), context, broken, tmp_path / "out" / "demo"
        )

        assert error.kind == FailureKind.RUNTIME_ASSEMBLY
        assert error.code == "install_failed"

    def test_previous_image_untouched(
        self, session, context, settings, make_pipeline, tmp_path
    ):
        """A failed run should leave an earlier image in place."""
        output = tmp_path / "out" / "demo"
        run_pipeline(session, make_pipeline(), context, output, settings)
        before = (output / "image.json").read_text()

        pipeline = make_pipeline(build_command="exit 1")
        self._run_failing(session, pipeline, context, settings, output)

        assert (output / "image.json").read_text() == before


class TestMinimalImage:
    """The runtime image carries no toolchain content."""

    def test_image_has_no_toolchain_traces(
        self, session, context, settings, make_pipeline, tmp_path
    ):
        """Sources, manifests and build output should stay out of the image."""
        result = run_pipeline(
            session, make_pipeline(), context, tmp_path / "out" / "demo", settings
        )
        rootfs = result.image.rootfs
        files = {p.relative_to(rootfs).as_posix() for p in rootfs.rglob("*")}

        assert "app/app" in files
        toolchain_files = ("Cargo.toml", "Cargo.lock", "recipe.json")
        assert not any(f.endswith(toolchain_files) for f in files)
        assert not any("target" in f.split("/") for f in files)
        assert not any(f.startswith("app/src") for f in files)

    def test_forbidden_content_fails_assembly(
        self, session, context, settings, make_pipeline, tmp_path
    ):
        """Toolchain content copied into the runtime should fail the run."""
        (context / "scripts" / "Cargo.toml").write_text("[package]\n")
        output = tmp_path / "out" / "demo"

        with pytest.raises(PipelineFailedError) as exc_info:
            run_pipeline(session, make_pipeline(), context, output, settings)

        assert exc_info.value.stage == "runtime"
        assert exc_info.value.kind == FailureKind.RUNTIME_ASSEMBLY
        assert exc_info.value.code == "forbidden_content"
        assert not output.exists()


class TestEntrypoint:
    """The exported image runs its entry point with caller arguments."""

    def test_exit_code_passthrough(
        self, session, context, settings, make_pipeline, tmp_path
    ):
        """The image exit code should equal the entry point's."""
        output = tmp_path / "out" / "demo"
        run_pipeline(session, make_pipeline(), context, output, settings)

        image = load_image(output)
        assert run_image(image, ["7"]) == 7
        assert run_image(image, []) == 0


class TestClassifyFailure:
    """Tests for classify_failure function."""

    @pytest.fixture
    def builder(self):
        """A builder stage definition."""
        return StageSchema(name="builder", base="toolchain", role=StageRole.BUILDER)

    def test_plan_op(self, builder):
        """Errors during a plan operation are planning failures."""
        assert (
            classify_failure(builder, PlanOp(), CommandExecutionError("x"))
            == FailureKind.PLANNING
        )

    def test_cook_op(self, builder):
        """Errors during a cook operation are dependency-cook failures."""
        op = CookOp(command=["make"])
        assert (
            classify_failure(builder, op, CommandExecutionError("x"))
            == FailureKind.DEPENDENCY_COOK
        )

    def test_seed_failure(self, builder):
        """Seeding errors are environment-setup failures."""
        error = StageEnvironmentError("x", code="seed_failed")
        assert classify_failure(builder, None, error) == FailureKind.ENVIRONMENT_SETUP

    def test_verification(self, builder):
        """Image verification errors are runtime-assembly failures."""
        error = ImageVerificationError("x")
        assert classify_failure(builder, None, error) == FailureKind.RUNTIME_ASSEMBLY

    def test_falls_back_to_role(self, builder):
        """Other errors are classified by the stage role."""
        op = RunOp(command=["make"])
        assert (
            classify_failure(builder, op, CommandExecutionError("x"))
            == FailureKind.APPLICATION_BUILD
        )

    def test_generic_role(self):
        """Generic stages report a generic stage failure."""
        stage = StageSchema(name="extra", base="alpine")
        assert (
            classify_failure(stage, None, CommandExecutionError("x"))
            == FailureKind.STAGE
        )


class TestRunQueries:
    """Tests for get_run and list_runs functions."""

    def test_get_run_not_found(self, session):
        """Should raise RunNotFoundError for a missing run."""
        with pytest.raises(RunNotFoundError) as exc_info:
            get_run(session, 999)
        assert exc_info.value.run_id == 999

    def test_list_runs_filters(self, session):
        """Should filter by pipeline and status, newest first."""
        for name, status in [
            ("demo", RunStatus.SUCCEEDED),
            ("demo", RunStatus.FAILED),
            ("other", RunStatus.SUCCEEDED),
        ]:
            session.add(
                PipelineRun(
                    pipeline_name=name,
                    context_dir="/ctx",
                    output_dir="/out",
                    status=status.value,
                )
            )
        session.commit()

        assert len(list_runs(session)) == 3
        demo = list_runs(session, pipeline_name="demo")
        assert [r.status for r in demo] == ["failed", "succeeded"]
        assert len(list_runs(session, status=RunStatus.SUCCEEDED)) == 2
        assert len(list_runs(session, limit=1)) == 1
