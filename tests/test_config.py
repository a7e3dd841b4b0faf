"""Tests for configuration module."""

import json
import os
from pathlib import Path
from unittest.mock import patch

from stagecraft.config import Settings, get_settings, print_settings_json


class TestSettings:
    """Test Settings class."""

    def test_default_settings(self) -> None:
        """Settings should have sensible defaults."""
        settings = Settings()

        assert settings.work_dir == Path.home() / ".cache" / "stagecraft" / "work"
        assert settings.cache_dir == Path.home() / ".cache" / "stagecraft" / "layers"
        assert (
            settings.images_dir
            == Path.home() / ".local" / "share" / "stagecraft" / "images"
        )
        assert "sqlite" in settings.db_url
        assert settings.log_level == "INFO"
        assert settings.keep_stages is False
        assert settings.strict_base_images is False
        assert "{requirements}" in settings.install_command
        assert settings.command_timeout >= 1

    def test_settings_from_env(self) -> None:
        """Settings should be loadable from environment variables."""
        with patch.dict(
            os.environ,
            {
                "STAGECRAFT_KEEP_STAGES": "true",
                "STAGECRAFT_LOG_LEVEL": "DEBUG",
                "STAGECRAFT_COMMAND_TIMEOUT": "60",
                "STAGECRAFT_STRICT_BASE_IMAGES": "1",
            },
        ):
            settings = Settings()
            assert settings.keep_stages is True
            assert settings.log_level == "DEBUG"
            assert settings.command_timeout == 60
            assert settings.strict_base_images is True

    def test_settings_dirs_from_env(self) -> None:
        """Directories should be configurable via env."""
        with patch.dict(
            os.environ,
            {
                "STAGECRAFT_CACHE_DIR": "/tmp/test-cache",
                "STAGECRAFT_IMAGES_DIR": "/tmp/test-images",
            },
        ):
            settings = Settings()
            assert settings.cache_dir == Path("/tmp/test-cache")
            assert settings.images_dir == Path("/tmp/test-images")

    def test_install_command_from_env(self) -> None:
        """List settings should parse from JSON in env."""
        with patch.dict(
            os.environ,
            {
                "STAGECRAFT_INSTALL_COMMAND": (
                    '["uv", "pip", "install", "-r", "{requirements}"]'
                )
            },
        ):
            settings = Settings()
            assert settings.install_command[0] == "uv"


class TestGetSettings:
    """Test get_settings function."""

    def test_get_settings_returns_settings(self) -> None:
        """get_settings should return a Settings instance."""
        settings = get_settings()
        assert isinstance(settings, Settings)


class TestPrintSettingsJson:
    """Test print_settings_json function."""

    def test_print_settings_json(self) -> None:
        """print_settings_json should return valid JSON."""
        settings = Settings()
        json_str = print_settings_json(settings)

        parsed = json.loads(json_str)

        assert "work_dir" in parsed
        assert "cache_dir" in parsed
        assert "images_dir" in parsed
        assert "db_url" in parsed
        assert "install_command" in parsed

    def test_print_settings_json_default(self) -> None:
        """print_settings_json without args should use default settings."""
        json_str = print_settings_json()
        parsed = json.loads(json_str)
        assert "cache_dir" in parsed
