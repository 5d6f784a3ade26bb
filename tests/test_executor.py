import logging
import subprocess

import pytest

from vasthost.errors import ExternalCommandError
from vasthost.executor import COMMAND_NOT_FOUND, CommandExecutor
from vasthost.logs import DRY_RUN_LEVEL


def test_run_sets_noninteractive_frontend(fake_runner):
    executor = CommandExecutor(runner=fake_runner)
    result = executor.run(["apt-get", "update"])

    assert result.ok
    assert fake_runner.calls == [["apt-get", "update"]]
    assert fake_runner.kwargs[0]["env"]["DEBIAN_FRONTEND"] == "noninteractive"
    assert fake_runner.kwargs[0]["timeout"] == executor.timeout


def _undecodable_output(cmd, **kwargs):
    """Decode raw bytes the way subprocess does for the given text options."""
    stdout = b"GPU \xff\xfe ok\n".decode("utf-8", kwargs.get("errors", "strict"))
    return subprocess.CompletedProcess(cmd, 0, stdout, "")


def test_invalid_utf8_output_is_replaced():
    executor = CommandExecutor(runner=_undecodable_output)

    result = executor.query(["snap", "list"])

    assert result.ok
    assert result.stdout == "GPU \ufffd\ufffd ok\n"


def test_dry_run_logs_instead_of_running(fake_runner, caplog):
    executor = CommandExecutor(dry_run=True, runner=fake_runner)
    with caplog.at_level(logging.DEBUG, logger="vasthost"):
        result = executor.run(["systemctl", "restart", "docker"])

    assert fake_runner.calls == []
    assert result.ok and result.dry_run
    records = [r for r in caplog.records if r.levelno == DRY_RUN_LEVEL]
    assert [r.getMessage() for r in records] == ["Would run: systemctl restart docker"]


def test_run_or_fail_raises_on_non_zero(fake_runner):
    fake_runner.respond("apt-get", returncode=100, stderr="E: Unable to locate package\n")
    executor = CommandExecutor(runner=fake_runner)

    with pytest.raises(ExternalCommandError) as excinfo:
        executor.run_or_fail(["apt-get", "install", "-y", "nope"])

    assert excinfo.value.exit_code == 100
    assert "apt-get install -y nope" in str(excinfo.value)
    assert "Unable to locate package" in str(excinfo.value)


def test_missing_binary_maps_to_127(fake_runner):
    fake_runner.respond("cpupower", raises=FileNotFoundError("cpupower"))
    executor = CommandExecutor(runner=fake_runner)

    result = executor.run(["cpupower", "frequency-set"])

    assert result.exit_code == COMMAND_NOT_FOUND
    assert not result.ok


def test_timeout_raises_timed_out_error(fake_runner):
    fake_runner.respond("apt-get", raises=subprocess.TimeoutExpired(["apt-get"], 5))
    executor = CommandExecutor(timeout=5, runner=fake_runner)

    with pytest.raises(ExternalCommandError) as excinfo:
        executor.run(["apt-get", "upgrade", "-y"])

    assert excinfo.value.timed_out
    assert "timed out" in str(excinfo.value)


def test_query_runs_in_dry_run(fake_runner):
    fake_runner.respond("uname", stdout="5.15.0-91-generic\n")
    executor = CommandExecutor(dry_run=True, runner=fake_runner)

    result = executor.query(["uname", "-r"])

    assert result.output == "5.15.0-91-generic"
    assert fake_runner.calls == [["uname", "-r"]]


def test_query_missing_binary_raises(fake_runner):
    fake_runner.respond("lspci", raises=FileNotFoundError("lspci"))
    executor = CommandExecutor(runner=fake_runner)

    with pytest.raises(ExternalCommandError) as excinfo:
        executor.query(["lspci"])
    assert excinfo.value.exit_code == COMMAND_NOT_FOUND


def test_query_check(fake_runner):
    fake_runner.respond("systemctl", returncode=3)
    executor = CommandExecutor(runner=fake_runner)

    assert executor.query(["systemctl", "is-active", "docker"]).exit_code == 3
    with pytest.raises(ExternalCommandError):
        executor.query(["systemctl", "is-active", "docker"], check=True)


def test_write_text_and_remove(tmp_path, fake_runner):
    executor = CommandExecutor(runner=fake_runner)
    target = tmp_path / "etc" / "docker" / "daemon.json"

    executor.write_text(target, "{}\n", mode=0o644)
    assert target.read_text() == "{}\n"
    assert (target.stat().st_mode & 0o777) == 0o644

    assert executor.remove(target) is True
    assert not target.exists()
    assert executor.remove(target) is False


def test_dry_run_file_operations_touch_nothing(tmp_path, fake_runner):
    executor = CommandExecutor(dry_run=True, runner=fake_runner)
    existing = tmp_path / "keep.txt"
    existing.write_text("keep")

    executor.write_text(tmp_path / "new.txt", "data")
    executor.ensure_dir(tmp_path / "newdir")
    assert executor.remove(existing) is True

    assert not (tmp_path / "new.txt").exists()
    assert not (tmp_path / "newdir").exists()
    assert existing.read_text() == "keep"


def test_read_missing_file_is_empty(tmp_path):
    assert CommandExecutor().read_text(tmp_path / "absent") == ""
