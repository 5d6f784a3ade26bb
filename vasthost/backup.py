"""
Restore points.

A restore point is a timestamped directory holding copies of configuration
files (their absolute paths mirrored under `files/`), the dpkg package
selection list and a manifest that lets `restore` put everything back.
Restore points are never deleted automatically.
"""

import json
import logging
import shutil
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Union

from vasthost.errors import ExternalCommandError
from vasthost.executor import CommandExecutor
from vasthost.logs import log_dry_run

logger = logging.getLogger(__name__)

MANIFEST_NAME: str = "manifest.json"
PACKAGE_LIST_NAME: str = "package_list.txt"
FILES_DIR_NAME: str = "files"
RESTORE_PREFIX: str = "restore_"


@dataclass
class BackupRecord:
    timestamp: str
    destination_dir: Path
    source_paths: List[Path] = field(default_factory=list)
    skipped: List[Path] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    package_list_path: Optional[Path] = None
    created: bool = True

    def backup_path_for(self, source: Path) -> Path:
        return self.destination_dir / FILES_DIR_NAME / source.relative_to(source.anchor)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["destination_dir"] = str(self.destination_dir)
        data["source_paths"] = [str(p) for p in self.source_paths]
        data["skipped"] = [str(p) for p in self.skipped]
        data["package_list_path"] = str(self.package_list_path) if self.package_list_path else None
        data.pop("created")
        return data

    @classmethod
    def load(cls, directory: Union[str, Path]) -> "BackupRecord":
        directory = Path(directory)
        data = json.loads((directory / MANIFEST_NAME).read_text())
        return cls(
            timestamp=data["timestamp"],
            destination_dir=directory,
            source_paths=[Path(p) for p in data.get("source_paths", [])],
            skipped=[Path(p) for p in data.get("skipped", [])],
            errors=list(data.get("errors", [])),
            package_list_path=Path(data["package_list_path"]) if data.get("package_list_path") else None,
        )


@dataclass
class RestoreReport:
    restored: List[Path] = field(default_factory=list)
    skipped: List[Path] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    dry_run: bool = False

    @property
    def ok(self) -> bool:
        return not self.failed


class BackupManager:
    """Creates restore points before mutation and copies them back on request."""

    def __init__(
        self,
        backup_dir: Union[str, Path],
        executor: CommandExecutor,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.backup_dir = Path(backup_dir)
        self.executor = executor
        self._clock = clock
        self.last_record: Optional[BackupRecord] = None

    @property
    def restore_point(self) -> Optional[Path]:
        """Location of the restore point created during this run, if any."""
        if self.last_record is not None and self.last_record.created:
            return self.last_record.destination_dir
        return None

    def _fresh_destination(self, timestamp: str) -> Path:
        destination = self.backup_dir / f"{RESTORE_PREFIX}{timestamp}"
        suffix = 1
        while destination.exists():
            destination = self.backup_dir / f"{RESTORE_PREFIX}{timestamp}_{suffix}"
            suffix += 1
        return destination

    def create_restore_point(self, paths: Sequence[Union[str, Path]]) -> BackupRecord:
        """
        Copy every existing path (directories recursively) into a new
        timestamped directory and snapshot the package selections.
        Missing paths are skipped without error.
        """
        timestamp = self._clock().strftime("%Y%m%d_%H%M%S")
        destination = self._fresh_destination(timestamp)
        record = BackupRecord(timestamp=timestamp, destination_dir=destination)

        sources = [Path(p) for p in paths]
        existing = [p for p in sources if p.exists()]
        record.skipped = [p for p in sources if not p.exists()]
        for missing in record.skipped:
            logger.debug(f"Skipping missing backup target: {missing}")

        if self.executor.dry_run:
            record.created = False
            record.source_paths = existing
            for path in existing:
                log_dry_run(logger, f"Would back up {path}")
            log_dry_run(logger, f"Would create restore point at {destination}")
            self.last_record = record
            return record

        (destination / FILES_DIR_NAME).mkdir(parents=True)
        for source in existing:
            target = record.backup_path_for(source)
            try:
                target.parent.mkdir(parents=True, exist_ok=True)
                if source.is_dir():
                    shutil.copytree(source, target, symlinks=True)
                else:
                    shutil.copy2(source, target)
            except OSError as e:
                record.errors.append(f"{source}: {e}")
                logger.warning(f"Failed to back up {source}: {e}")
                continue
            record.source_paths.append(source)
            logger.debug(f"Backed up {source} to {target}")

        record.package_list_path = self._snapshot_packages(destination, record)
        (destination / MANIFEST_NAME).write_text(json.dumps(record.to_dict(), indent=2) + "\n")

        self.last_record = record
        logger.info(f"Restore point created at: {destination}")
        return record

    def _snapshot_packages(self, destination: Path, record: BackupRecord) -> Optional[Path]:
        """Save `dpkg --get-selections`; a failure is recorded on the record, not raised."""
        package_list = destination / PACKAGE_LIST_NAME
        try:
            result = self.executor.query(["dpkg", "--get-selections"], check=True)
        except ExternalCommandError as e:
            record.errors.append(f"package list: {e}")
            logger.warning(f"Could not snapshot package selections: {e}")
            return None
        package_list.write_text(result.stdout)
        return package_list

    def list_restore_points(self) -> List[Path]:
        """Restore-point directories with a readable manifest, oldest first."""
        if not self.backup_dir.is_dir():
            return []
        return sorted(
            p for p in self.backup_dir.iterdir()
            if p.is_dir() and p.name.startswith(RESTORE_PREFIX) and (p / MANIFEST_NAME).is_file()
        )

    def latest(self) -> Optional[BackupRecord]:
        """
        Load the most recent restore point.

        Returns:
            Optional[BackupRecord]: The newest record, or None if there are none.
        """
        points = self.list_restore_points()
        return BackupRecord.load(points[-1]) if points else None

    def restore(self, record: BackupRecord) -> RestoreReport:
        """
        Copy each backed-up path back to its original location. Entries whose
        backup copy no longer exists are skipped and counted.
        """
        report = RestoreReport(dry_run=self.executor.dry_run)
        for source in record.source_paths:
            backup = record.backup_path_for(source)
            if not backup.exists():
                logger.warning(f"No backup entry for {source}; skipping")
                report.skipped.append(source)
                continue
            if self.executor.dry_run:
                log_dry_run(logger, f"Would restore {source} from {backup}")
                report.restored.append(source)
                continue
            try:
                source.parent.mkdir(parents=True, exist_ok=True)
                if backup.is_dir():
                    shutil.copytree(backup, source, symlinks=True, dirs_exist_ok=True)
                else:
                    shutil.copy2(backup, source)
            except OSError as e:
                logger.error(f"Failed to restore {source}: {e}")
                report.failed.append(f"{source}: {e}")
                continue
            logger.info(f"Restored {source}")
            report.restored.append(source)

        if record.package_list_path and record.package_list_path.is_file():
            logger.info(
                f"Package selections saved at {record.package_list_path}; reapply with "
                f"'dpkg --set-selections < {record.package_list_path} && apt-get dselect-upgrade'"
            )
        return report
