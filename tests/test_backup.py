import json
from datetime import datetime

from vasthost.backup import MANIFEST_NAME, PACKAGE_LIST_NAME, BackupManager, BackupRecord
from vasthost.executor import CommandExecutor

FIXED_TIME = datetime(2024, 3, 1, 12, 30, 45)


def _manager(backup_dir, fake_runner, dry_run=False):
    executor = CommandExecutor(dry_run=dry_run, runner=fake_runner)
    return BackupManager(backup_dir, executor, clock=lambda: FIXED_TIME)


def _system_files(root):
    (root / "etc" / "ssh").mkdir(parents=True)
    (root / "etc" / "ssh" / "sshd_config").write_text("Port 22\n")
    (root / "etc" / "apt" / "sources.list.d").mkdir(parents=True)
    (root / "etc" / "apt" / "sources.list.d" / "docker.list").write_text("deb docker\n")
    return [
        root / "etc" / "ssh" / "sshd_config",
        root / "etc" / "apt" / "sources.list.d",
        root / "etc" / "sysctl.conf",
        root / "etc" / "security" / "limits.conf",
        root / "etc" / "docker" / "daemon.json",
    ]


def test_missing_targets_are_skipped(tmp_path, backup_dir, fake_runner):
    fake_runner.respond("dpkg", "--get-selections", stdout="curl\t\t\tinstall\n")
    targets = _system_files(tmp_path / "root")
    manager = _manager(backup_dir, fake_runner)

    record = manager.create_restore_point(targets)

    assert record.destination_dir == backup_dir / "restore_20240301_123045"
    assert record.source_paths == targets[:2]
    assert record.skipped == targets[2:]
    assert record.errors == []
    assert (record.backup_path_for(targets[0])).read_text() == "Port 22\n"
    assert (record.backup_path_for(targets[1]) / "docker.list").read_text() == "deb docker\n"
    assert (record.destination_dir / PACKAGE_LIST_NAME).read_text() == "curl\t\t\tinstall\n"

    manifest = json.loads((record.destination_dir / MANIFEST_NAME).read_text())
    assert manifest["timestamp"] == "20240301_123045"
    assert len(manifest["skipped"]) == 3
    assert manager.restore_point == record.destination_dir


def test_restore_copies_files_back(tmp_path, backup_dir, fake_runner):
    targets = _system_files(tmp_path / "root")
    manager = _manager(backup_dir, fake_runner)
    manager.create_restore_point(targets)

    targets[0].write_text("Port 2222\n")
    (targets[1] / "docker.list").unlink()

    report = manager.restore(manager.latest())

    assert report.ok
    assert report.restored == targets[:2]
    assert targets[0].read_text() == "Port 22\n"
    assert (targets[1] / "docker.list").read_text() == "deb docker\n"


def test_restore_skips_vanished_entries(tmp_path, backup_dir, fake_runner):
    targets = _system_files(tmp_path / "root")
    manager = _manager(backup_dir, fake_runner)
    record = manager.create_restore_point(targets)
    record.backup_path_for(targets[0]).unlink()

    report = manager.restore(BackupRecord.load(record.destination_dir))

    assert report.skipped == [targets[0]]
    assert report.restored == [targets[1]]


def test_dry_run_creates_nothing(tmp_path, backup_dir, fake_runner):
    targets = _system_files(tmp_path / "root")
    manager = _manager(backup_dir, fake_runner, dry_run=True)

    record = manager.create_restore_point(targets)

    assert not backup_dir.exists()
    assert record.created is False
    assert record.source_paths == targets[:2]
    assert manager.restore_point is None
    assert fake_runner.calls == []


def test_latest_picks_newest(tmp_path, backup_dir, fake_runner):
    targets = _system_files(tmp_path / "root")
    executor = CommandExecutor(runner=fake_runner)
    BackupManager(backup_dir, executor, clock=lambda: datetime(2024, 1, 1)).create_restore_point(targets)
    BackupManager(backup_dir, executor, clock=lambda: datetime(2024, 2, 1)).create_restore_point(targets)

    manager = _manager(backup_dir, fake_runner)
    assert [p.name for p in manager.list_restore_points()] == [
        "restore_20240101_000000",
        "restore_20240201_000000",
    ]
    assert manager.latest().timestamp == "20240201_000000"


def test_latest_without_backups(backup_dir, fake_runner):
    assert _manager(backup_dir, fake_runner).latest() is None


def test_same_second_gets_suffix(tmp_path, backup_dir, fake_runner):
    targets = _system_files(tmp_path / "root")
    manager = _manager(backup_dir, fake_runner)

    first = manager.create_restore_point(targets)
    second = manager.create_restore_point(targets)

    assert first.destination_dir.name == "restore_20240301_123045"
    assert second.destination_dir.name == "restore_20240301_123045_1"


def test_package_snapshot_failure_is_recorded(tmp_path, backup_dir, fake_runner):
    fake_runner.respond("dpkg", returncode=2, stderr="dpkg: error\n")
    targets = _system_files(tmp_path / "root")

    record = _manager(backup_dir, fake_runner).create_restore_point(targets)

    assert record.package_list_path is None
    assert len(record.errors) == 1
    assert record.errors[0].startswith("package list:")
    assert (record.destination_dir / MANIFEST_NAME).is_file()
