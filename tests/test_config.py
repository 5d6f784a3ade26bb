"""
Tests for configuration loading, precedence and enumerated names.
"""

import logging
import textwrap
from pathlib import Path

import pytest

from vasthost.config import (
    HostOptions,
    SystemPaths,
    build_run_config,
    load_config_file,
    parse_bool,
    parse_config_text,
)
from vasthost.errors import ConfigError
from vasthost.logs import DRY_RUN_LEVEL, LogLevel
from vasthost.steps import StepName


class TestParseConfigText:
    def test_options_and_toggles(self):
        text = textwrap.dedent("""\
            # Vast.ai host overrides
            NVIDIA_DRIVER_VERSION="550"
            SSH_PORT=2222   # custom port
            export SKIP_DOCKER=yes

            MAX_FILE_DESCRIPTORS='131072'
        """)
        settings = parse_config_text(text)
        assert settings.options["nvidia_driver_version"] == "550"
        assert settings.options["ssh_port"] == 2222
        assert settings.options["max_file_descriptors"] == 131072
        assert settings.skip == frozenset({StepName.DOCKER})

    def test_skip_steps_list(self):
        settings = parse_config_text("SKIP_STEPS=docker, nvidia ssh\n")
        assert settings.skip == {StepName.DOCKER, StepName.NVIDIA, StepName.SSH}

    def test_verbose_and_dry_run(self):
        settings = parse_config_text("VERBOSE=true\nDRY_RUN=1\n")
        assert settings.verbose is True
        assert settings.dry_run is True

    def test_unknown_key_reports_line(self):
        with pytest.raises(ConfigError, match=r"test.conf:2: unknown option 'BOGUS'"):
            parse_config_text("SSH_PORT=22\nBOGUS=1\n", source="test.conf")

    def test_invalid_port(self):
        with pytest.raises(ConfigError, match="invalid value for SSH_PORT"):
            parse_config_text("SSH_PORT=70000\n")

    def test_invalid_driver_version(self):
        with pytest.raises(ConfigError, match="NVIDIA_DRIVER_VERSION"):
            parse_config_text("NVIDIA_DRIVER_VERSION=latest\n")

    def test_unknown_step_name(self):
        with pytest.raises(ConfigError, match="Unknown step 'bogus'"):
            parse_config_text("SKIP_STEPS=bogus\n")

    def test_line_without_equals(self):
        with pytest.raises(ConfigError, match="expected KEY=VALUE"):
            parse_config_text("SSH_PORT\n")

    def test_parse_bool(self):
        assert parse_bool("On") is True
        assert parse_bool("no") is False
        with pytest.raises(ValueError):
            parse_bool("maybe")


class TestBuildRunConfig:
    def _write(self, tmp_path: Path, text: str) -> Path:
        path = tmp_path / "vast.conf"
        path.write_text(text)
        return path

    def test_defaults_when_default_file_absent(self, tmp_path: Path):
        config = build_run_config(default_config_file=tmp_path / "absent.conf", environ={})
        assert config.options == HostOptions()
        assert config.skip == frozenset()
        assert config.dry_run is False

    def test_explicit_config_must_exist(self, tmp_path: Path):
        with pytest.raises(ConfigError, match="Config file not found"):
            build_run_config(tmp_path / "missing.conf", environ={})

    def test_cli_skip_wins_over_file(self, tmp_path: Path):
        path = self._write(tmp_path, "SKIP_NVIDIA=false\n")
        config = build_run_config(path, skip_nvidia=True, environ={})
        assert config.is_skipped(StepName.NVIDIA)

    def test_file_values_apply_without_flags(self, tmp_path: Path):
        path = self._write(tmp_path, "SKIP_NVIDIA=true\nVERBOSE=yes\nNVIDIA_DRIVER_VERSION=545\n")
        config = build_run_config(path, environ={})
        assert config.is_skipped(StepName.NVIDIA)
        assert config.verbose is True
        assert config.options.nvidia_driver_version == "545"

    def test_skip_sources_are_unioned(self, tmp_path: Path):
        path = self._write(tmp_path, "SKIP_STEPS=cleanup\n")
        config = build_run_config(path, skip_docker=True, skip_steps=["vast-tools"], environ={})
        assert config.skip == {StepName.CLEANUP, StepName.DOCKER, StepName.VAST_TOOLS}

    def test_docker_user_from_sudo_user(self, tmp_path: Path):
        config = build_run_config(default_config_file=None, environ={"SUDO_USER": "alice"})
        assert config.options.docker_user == "alice"

    def test_docker_user_from_file_wins(self, tmp_path: Path):
        path = self._write(tmp_path, "DOCKER_USER=bob\n")
        config = build_run_config(path, environ={"SUDO_USER": "alice"})
        assert config.options.docker_user == "bob"

    def test_timeout_override(self):
        config = build_run_config(default_config_file=None, timeout=120, environ={})
        assert config.options.command_timeout == 120

    def test_non_positive_timeout(self):
        with pytest.raises(ConfigError, match="Timeout must be positive"):
            build_run_config(default_config_file=None, timeout=0, environ={})

    def test_config_is_immutable(self):
        config = build_run_config(default_config_file=None, environ={})
        with pytest.raises(Exception):
            config.dry_run = True

    def test_load_missing_optional_file(self, tmp_path: Path):
        assert load_config_file(tmp_path / "nope.conf").options == {}


class TestSystemPaths:
    def test_rebased(self, tmp_path: Path):
        paths = SystemPaths().rebased(tmp_path)
        assert paths.sshd_config == tmp_path / "etc" / "ssh" / "sshd_config"
        assert paths.root_fs == tmp_path
        assert paths.monitor_script == tmp_path / "opt" / "vast" / "monitor.sh"
        assert paths.networkd_dhcp == tmp_path / "etc" / "systemd" / "network" / "01-dhcp.network"


class TestEnumeratedNames:
    def test_step_name_accepts_underscores(self):
        assert StepName.parse("vast_tools") is StepName.VAST_TOOLS
        assert StepName.parse(" Docker ") is StepName.DOCKER

    def test_step_name_rejects_unknown(self):
        with pytest.raises(ValueError, match="Known steps"):
            StepName.parse("kernel")

    def test_dry_run_level_sits_between_info_and_warning(self):
        assert LogLevel.INFO.value < LogLevel.DRY_RUN.value < LogLevel.WARNING.value
        assert LogLevel.DRY_RUN.value == DRY_RUN_LEVEL
        assert logging.getLevelName(DRY_RUN_LEVEL) == "DRY-RUN"
