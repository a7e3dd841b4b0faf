"""Tests for builds/artifacts.py module.

Tests hashing, tree description, image verification and manifests.
"""

import hashlib
import json

import pytest

from stagecraft.builds.artifacts import (
    ImageVerificationError,
    compute_file_hash,
    describe_tree,
    find_forbidden_paths,
    generate_manifest,
    matches_forbidden,
    verify_minimal_image,
    write_manifest,
)
from stagecraft.pipelines.defaults import DEFAULT_RUNTIME_FORBIDDEN
from stagecraft.types import ArtifactInfo


@pytest.fixture
def image_root(tmp_path):
    """Create a minimal runtime root."""
    root = tmp_path / "rootfs"
    (root / "app" / "scripts").mkdir(parents=True)
    app = root / "app" / "app"
    app.write_bytes(b"\x7fELF binary")
    app.chmod(0o755)
    (root / "app" / "scripts" / "tool.py").write_text("print('tool')\n")
    return root


class TestComputeFileHash:
    """Tests for compute_file_hash function."""

    def test_matches_hashlib(self, tmp_path):
        """The hash should be the plain SHA-256 hex digest."""
        path = tmp_path / "f.bin"
        path.write_bytes(b"hello")
        assert compute_file_hash(path) == hashlib.sha256(b"hello").hexdigest()

    def test_small_chunks(self, tmp_path):
        """Chunk size should not change the result."""
        path = tmp_path / "f.bin"
        path.write_bytes(b"x" * 1000)
        assert compute_file_hash(path, chunk_size=7) == compute_file_hash(path)


class TestDescribeTree:
    """Tests for describe_tree function."""

    def test_lists_files_with_stage_paths(self, image_root):
        """Files should be described with absolute stage paths."""
        artifacts = describe_tree(image_root)
        paths = [a.path for a in artifacts]

        assert paths == ["/app/app", "/app/scripts/tool.py"]
        binary = artifacts[0]
        assert binary.executable is True
        assert binary.size_bytes == len(b"\x7fELF binary")
        assert artifacts[1].executable is False

    def test_skips_symlinks(self, image_root):
        """Symlinks should not be described."""
        (image_root / "app" / "link").symlink_to(image_root / "app" / "app")
        assert "/app/link" not in [a.path for a in describe_tree(image_root)]


class TestForbiddenContent:
    """Tests for forbidden-content verification."""

    def test_matches_root_level_with_double_star(self):
        """'**/' patterns should also match at the root."""
        assert matches_forbidden("Cargo.toml", ["**/Cargo.toml"])
        assert matches_forbidden("app/Cargo.toml", ["**/Cargo.toml"])
        assert not matches_forbidden("app/app", ["**/Cargo.toml"])

    def test_clean_image_passes(self, image_root):
        """A root without toolchain traces should pass."""
        verify_minimal_image(image_root, DEFAULT_RUNTIME_FORBIDDEN)

    def test_manifest_in_image_fails(self, image_root):
        """A dependency manifest in the image should be reported."""
        (image_root / "app" / "Cargo.toml").write_text("[package]\n")

        with pytest.raises(ImageVerificationError) as exc_info:
            verify_minimal_image(image_root, DEFAULT_RUNTIME_FORBIDDEN)

        assert exc_info.value.code == "forbidden_content"
        assert exc_info.value.paths == ["app/Cargo.toml"]

    def test_toolchain_directory_fails(self, image_root):
        """A compiler binary in the image should be reported."""
        (image_root / "usr" / "local" / "bin").mkdir(parents=True)
        (image_root / "usr" / "local" / "bin" / "cargo").write_text("#!")

        found = find_forbidden_paths(image_root, DEFAULT_RUNTIME_FORBIDDEN)
        assert found == ["usr/local/bin/cargo"]

    def test_build_tree_fails(self, image_root):
        """Intermediate build output should be reported."""
        (image_root / "app" / "target" / "release").mkdir(parents=True)
        (image_root / "app" / "target" / "release" / "app").write_text("x")

        found = find_forbidden_paths(image_root, DEFAULT_RUNTIME_FORBIDDEN)
        assert "app/target/release/app" in found

    def test_no_patterns(self, image_root):
        """Without patterns nothing is forbidden."""
        (image_root / "Cargo.toml").write_text("")
        assert find_forbidden_paths(image_root, []) == []


class TestManifest:
    """Tests for manifest generation."""

    def test_generate(self):
        """The manifest should carry artifacts, config and a summary."""
        artifacts = [
            ArtifactInfo(path="/app/app", size_bytes=10, sha256="a" * 64),
            ArtifactInfo(path="/app/x.py", size_bytes=5, sha256="b" * 64),
        ]
        manifest = generate_manifest(
            artifacts,
            pipeline_name="demo",
            run_id=3,
            config={"entrypoint": ["./app"]},
            extra_metadata={"cache_hits": {"builder": True}},
        )

        assert manifest["pipeline"] == "demo"
        assert manifest["run_id"] == 3
        assert manifest["config"] == {"entrypoint": ["./app"]}
        assert manifest["metadata"] == {"cache_hits": {"builder": True}}
        assert manifest["summary"] == {"total_files": 2, "total_size_bytes": 15}
        assert manifest["artifacts"][0]["path"] == "/app/app"

    def test_optional_fields_omitted(self):
        """Optional sections should be absent when not given."""
        manifest = generate_manifest([])
        assert "pipeline" not in manifest
        assert "config" not in manifest
        assert manifest["summary"]["total_files"] == 0

    def test_write(self, tmp_path):
        """write_manifest should produce valid JSON."""
        path = write_manifest({"version": "1.0"}, tmp_path / "out" / "image.json")
        assert json.loads(path.read_text()) == {"version": "1.0"}
