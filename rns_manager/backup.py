from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
import fcntl
import logging
import os
from pathlib import Path
import re
import shutil
import tempfile
import threading
try:
    import tomllib
except ModuleNotFoundError:  # Python < 3.11
    import tomli as tomllib
from typing import Any, Callable, Dict, Iterator, Mapping, Sequence

import tomli_w

from rns_manager.archive import ArchiveReport, ArchiveValidator
from rns_manager.core import CONFIG_DIRECTORIES
from rns_manager.errors import Outcome, PermanentError, ResourceError, RnsManagerError, SecurityError
from rns_manager.logs import log_security
from rns_manager.system import CommandResult, CommandRunner


logger = logging.getLogger(__name__)

DEFAULT_KEEP = 3
ID_FORMAT = "%Y%m%d_%H%M%S"
MANIFEST_NAME = "manifest.toml"
LOCK_NAME = ".lock"
EXPORT_SUFFIX = ".tar.gz"
MAX_SAME_SECOND = 99
_ID_PATTERN = re.compile(r"^\d{8}_\d{6}(-\d{2})?$")

_root_locks: Dict[str, threading.Lock] = {}
_root_locks_guard = threading.Lock()


@contextmanager
def _locked_root(root: Path) -> Iterator[None]:
    root.mkdir(parents=True, exist_ok=True)
    key = str(root.resolve())
    with _root_locks_guard:
        lock = _root_locks.setdefault(key, threading.Lock())
    with lock:
        with (root / LOCK_NAME).open("a") as handle:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


def _tree_size(path: Path) -> int:
    total = 0
    for dirpath, _dirnames, filenames in os.walk(path):
        for name in filenames:
            try:
                total += os.lstat(os.path.join(dirpath, name)).st_size
            except OSError:
                continue
    return total


def _remove(path: Path) -> None:
    if path.is_symlink() or path.is_file():
        path.unlink()
    elif path.exists():
        shutil.rmtree(path)


def _merge_tree(source: Path, target: Path) -> None:
    # never write through a link that already sits in the destination
    if target.is_symlink():
        target.unlink()
    if source.is_symlink():
        _remove(target)
        os.symlink(os.readlink(source), target)
    elif source.is_dir():
        if target.exists() and not target.is_dir():
            target.unlink()
        target.mkdir(exist_ok=True)
        for child in sorted(source.iterdir()):
            _merge_tree(child, target / child.name)
    else:
        if target.is_dir():
            shutil.rmtree(target)
        shutil.copy2(source, target)


@dataclass(frozen=True)
class BackupSnapshot:
    id: str
    path: Path
    source_dirs: tuple[str, ...]
    created_at: datetime
    size_bytes: int

    def display_date(self) -> str:
        return self.created_at.strftime("%Y-%m-%d %H:%M:%S")


@dataclass
class OperationResult:
    outcome: Outcome
    message: str

    @property
    def ok(self) -> bool:
        return self.outcome == Outcome.SUCCESS


@dataclass
class PruneResult(OperationResult):
    deleted: list[str] = field(default_factory=list)
    retained: int = 0

    @property
    def deleted_count(self) -> int:
        return len(self.deleted)


@dataclass
class RestoreResult(OperationResult):
    snapshot_id: str = ""
    restored: list[str] = field(default_factory=list)
    refused: bool = False


@dataclass
class ExportResult(OperationResult):
    path: Path | None = None
    command: CommandResult | None = None

    @property
    def attempts(self) -> int:
        return self.command.attempts if self.command else 0


@dataclass
class ImportResult(OperationResult):
    archive: Path | None = None
    snapshot: BackupSnapshot | None = None
    report: ArchiveReport | None = None
    command: CommandResult | None = None
    imported: list[str] = field(default_factory=list)
    needs_override: bool = False
    refused: bool = False
    error: RnsManagerError | None = None

    @property
    def attempts(self) -> int:
        return self.command.attempts if self.command else 0


@dataclass
class ResetResult(OperationResult):
    snapshot: BackupSnapshot | None = None
    removed: list[str] = field(default_factory=list)
    refused: bool = False


class BackupManager:
    """Timestamped configuration snapshots with a bounded retention window.

    Snapshots live in ``<root>/<id>/`` where ``id`` sorts in creation order.
    A snapshot is assembled under a hidden ``.<id>.partial`` directory and only
    renamed into place once complete, so listings never see half-written
    snapshots. Mutations of the root are serialised by a per-root lock.
    """

    def __init__(
        self,
        root: Path,
        home: Path,
        runner: CommandRunner,
        validator: ArchiveValidator | None = None,
        keep: int = DEFAULT_KEEP,
        auto_prune: bool = False,
        config_dirs: Sequence[str] = CONFIG_DIRECTORIES,
        now: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.root = Path(root)
        self.home = Path(home)
        self.runner = runner
        self.validator = validator or ArchiveValidator(config_dirs)
        self.keep = keep
        self.auto_prune = auto_prune
        self.config_dirs = tuple(config_dirs)
        self._now = now

    def default_sources(self) -> list[Path]:
        return [self.home / name for name in self.config_dirs]

    def _new_id(self) -> tuple[str, datetime]:
        created = self._now()
        base = created.strftime(ID_FORMAT)
        candidate = base
        counter = 0
        while (self.root / candidate).exists() or (self.root / f".{candidate}.partial").exists():
            counter += 1
            if counter > MAX_SAME_SECOND:
                raise ResourceError(f"Too many backups created at {base}")
            candidate = f"{base}-{counter:02d}"
        return candidate, created

    def create_snapshot(self, source_dirs: Sequence[Path] | None = None) -> BackupSnapshot | None:
        sources = [Path(path) for path in (source_dirs if source_dirs is not None else self.default_sources())]
        with _locked_root(self.root):
            snapshot = self._create_unlocked(sources)
            if snapshot is not None and self.auto_prune:
                self._prune_unlocked(self.keep)
        return snapshot

    def _create_unlocked(self, sources: Sequence[Path]) -> BackupSnapshot | None:
        present: list[Path] = []
        seen: set[str] = set()
        for source in sources:
            if not source.is_dir():
                logger.debug("Skipping missing source %s", source)
                continue
            if source.name in seen:
                logger.warning("Skipping %s: another source is already named %s", source, source.name)
                continue
            seen.add(source.name)
            present.append(source)
        if not present:
            logger.warning("No configuration files found to backup")
            return None

        snapshot_id, created = self._new_id()
        partial = self.root / f".{snapshot_id}.partial"
        final = self.root / snapshot_id
        try:
            partial.mkdir(parents=True)
            for source in present:
                shutil.copytree(source, partial / source.name, symlinks=True)
                logger.info("Backed up %s", source)
            manifest: Dict[str, Any] = {
                "id": snapshot_id,
                "created_at": created.isoformat(timespec="seconds"),
                "sources": [source.name for source in present],
                "source_paths": [str(source) for source in present],
            }
            (partial / MANIFEST_NAME).write_text(tomli_w.dumps(manifest), encoding="utf-8")
            partial.rename(final)
        except OSError as exc:
            shutil.rmtree(partial, ignore_errors=True)
            logger.error("Backup %s failed: %s", snapshot_id, exc)
            raise ResourceError(f"Failed to create backup {snapshot_id}: {exc}") from exc

        snapshot = BackupSnapshot(
            id=snapshot_id,
            path=final,
            source_dirs=tuple(source.name for source in present),
            created_at=created,
            size_bytes=_tree_size(final),
        )
        logger.info("Backup created at: %s", final)
        return snapshot

    def _load_snapshot(self, path: Path) -> BackupSnapshot:
        manifest_path = path / MANIFEST_NAME
        manifest: Dict[str, Any] = {}
        if manifest_path.exists():
            try:
                with manifest_path.open("rb") as handle:
                    manifest = tomllib.load(handle)
            except (OSError, tomllib.TOMLDecodeError) as exc:
                logger.warning("Unreadable manifest in %s: %s", path, exc)
        sources = manifest.get("sources")
        if not isinstance(sources, list):
            sources = sorted(child.name for child in path.iterdir() if child.is_dir())
        try:
            created = datetime.fromisoformat(str(manifest["created_at"]))
        except (KeyError, ValueError):
            created = datetime.strptime(path.name[:15], ID_FORMAT)
        return BackupSnapshot(
            id=path.name,
            path=path,
            source_dirs=tuple(str(source) for source in sources),
            created_at=created,
            size_bytes=_tree_size(path),
        )

    def list_snapshots(self) -> list[BackupSnapshot]:
        if not self.root.is_dir():
            return []
        paths = sorted(
            (child for child in self.root.iterdir() if child.is_dir() and _ID_PATTERN.match(child.name)),
            key=lambda child: child.name,
        )
        return [self._load_snapshot(path) for path in paths]

    def get_snapshot(self, snapshot_id: str) -> BackupSnapshot | None:
        if not _ID_PATTERN.match(snapshot_id):
            return None
        path = self.root / snapshot_id
        if not path.is_dir():
            return None
        return self._load_snapshot(path)

    def prune_retained(self, keep: int = DEFAULT_KEEP) -> PruneResult:
        if keep < 0:
            raise PermanentError("keep must not be negative")
        with _locked_root(self.root):
            return self._prune_unlocked(keep)

    def _prune_unlocked(self, keep: int) -> PruneResult:
        snapshots = self.list_snapshots()
        if len(snapshots) <= keep:
            return PruneResult(
                outcome=Outcome.SUCCESS,
                message=f"Only {len(snapshots)} backup(s) exist. Keeping all.",
                retained=len(snapshots),
            )
        doomed = snapshots[: len(snapshots) - keep]
        deleted: list[str] = []
        for snapshot in doomed:
            try:
                shutil.rmtree(snapshot.path)
            except OSError as exc:
                logger.error("Failed to delete backup %s: %s", snapshot.id, exc)
                return PruneResult(
                    outcome=Outcome.RESOURCE,
                    message=f"Failed to delete backup {snapshot.id}: {exc}",
                    deleted=deleted,
                    retained=len(snapshots) - len(deleted),
                )
            deleted.append(snapshot.id)
        logger.info("Deleted %d old backups", len(deleted))
        return PruneResult(
            outcome=Outcome.SUCCESS,
            message=f"Deleted {len(deleted)} old backup(s)",
            deleted=deleted,
            retained=len(snapshots) - len(deleted),
        )

    def delete_snapshot(self, snapshot_id: str) -> bool:
        with _locked_root(self.root):
            snapshot = self.get_snapshot(snapshot_id)
            if snapshot is None:
                return False
            shutil.rmtree(snapshot.path)
        logger.info("Deleted backup %s", snapshot_id)
        return True

    def restore_snapshot(
        self,
        snapshot_id: str,
        targets: Mapping[str, Path] | None = None,
        confirmed: bool = False,
    ) -> RestoreResult:
        if not confirmed:
            return RestoreResult(
                outcome=Outcome.PERMANENT,
                message="Restore overwrites the current configuration and requires confirmation.",
                snapshot_id=snapshot_id,
                refused=True,
            )
        snapshot = self.get_snapshot(snapshot_id)
        if snapshot is None:
            return RestoreResult(outcome=Outcome.PERMANENT, message=f"Backup not found: {snapshot_id}", snapshot_id=snapshot_id)
        if targets is None:
            targets = {name: self.home / name for name in snapshot.source_dirs}

        restored: list[str] = []
        for name in snapshot.source_dirs:
            source = snapshot.path / name
            target = targets.get(name)
            if target is None or not source.is_dir():
                continue
            target = Path(target)
            staging = target.parent / f".{target.name}.restore-tmp"
            try:
                _remove(staging)
                target.parent.mkdir(parents=True, exist_ok=True)
                shutil.copytree(source, staging, symlinks=True)
                _remove(target)
                staging.rename(target)
            except OSError as exc:
                shutil.rmtree(staging, ignore_errors=True)
                logger.error("Failed to restore %s from %s: %s", name, snapshot.id, exc)
                return RestoreResult(
                    outcome=Outcome.RESOURCE,
                    message=f"Failed to restore {name}: {exc}",
                    snapshot_id=snapshot.id,
                    restored=restored,
                )
            restored.append(name)
        logger.info("Restored backup from: %s", snapshot.path)
        return RestoreResult(
            outcome=Outcome.SUCCESS,
            message="Backup restored successfully",
            snapshot_id=snapshot.id,
            restored=restored,
        )

    def default_export_path(self) -> Path:
        return self.home / f"reticulum_config_export_{self._now().strftime(ID_FORMAT)}{EXPORT_SUFFIX}"

    def export_archive(
        self,
        source_dirs: Sequence[Path] | None = None,
        destination: Path | None = None,
    ) -> ExportResult:
        sources = [Path(path) for path in (source_dirs if source_dirs is not None else self.default_sources())]
        present = [source for source in sources if source.is_dir()]
        if not present:
            logger.warning("No configuration files found to export")
            return ExportResult(outcome=Outcome.PERMANENT, message="No configuration files found to export")
        destination = Path(destination) if destination else self.default_export_path()

        with tempfile.TemporaryDirectory(prefix="rns_mgmt_export_") as temp_dir:
            names: list[str] = []
            try:
                for source in present:
                    if source.name in names:
                        continue
                    shutil.copytree(source, Path(temp_dir) / source.name, symlinks=True)
                    names.append(source.name)
                destination.parent.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                logger.error("Failed to stage export: %s", exc)
                return ExportResult(outcome=Outcome.RESOURCE, message=f"Failed to stage export: {exc}")
            command = self.runner.run_argv(["tar", "-czf", str(destination), "-C", temp_dir, *names])

        if not command.succeeded:
            destination.unlink(missing_ok=True)
            return ExportResult(
                outcome=command.outcome,
                message=f"Failed to create export archive: {command.last_error}",
                command=command,
            )
        logger.info("Exported configuration to: %s", destination)
        return ExportResult(
            outcome=Outcome.SUCCESS,
            message=f"Configuration exported to: {destination}",
            path=destination,
            command=command,
        )

    def import_archive(
        self,
        archive_path: Path,
        confirmed: bool = False,
        allow_unrecognized: bool = False,
    ) -> ImportResult:
        archive_path = Path(archive_path)
        if not confirmed:
            return ImportResult(
                outcome=Outcome.PERMANENT,
                message="Import overwrites the current configuration and requires confirmation.",
                archive=archive_path,
                refused=True,
            )
        if not archive_path.is_file():
            return ImportResult(outcome=Outcome.PERMANENT, message=f"File not found: {archive_path}", archive=archive_path)
        if not archive_path.name.endswith(EXPORT_SUFFIX):
            return ImportResult(
                outcome=Outcome.PERMANENT,
                message="Invalid file format. Expected .tar.gz archive",
                archive=archive_path,
            )

        try:
            snapshot = self.create_snapshot()
        except ResourceError as exc:
            return ImportResult(
                outcome=Outcome.RESOURCE,
                message=f"Could not back up current configuration: {exc}",
                archive=archive_path,
            )

        report = self.validator.validate(archive_path)
        if not report.readable:
            return ImportResult(
                outcome=Outcome.PERMANENT,
                message=f"Could not read archive: {report.error}",
                archive=archive_path,
                snapshot=snapshot,
                report=report,
            )
        if not report.all_safe:
            message = "Security: Archive contains invalid paths (absolute, traversal or unsafe links)"
            log_security(logger, "Import aborted for %s: archive contains invalid paths", archive_path)
            return ImportResult(
                outcome=Outcome.SECURITY,
                message=message,
                archive=archive_path,
                snapshot=snapshot,
                report=report,
                error=SecurityError(message),
            )
        if not report.has_expected_content and not allow_unrecognized:
            return ImportResult(
                outcome=Outcome.PERMANENT,
                message="Archive does not appear to contain Reticulum configuration. Expected: "
                + ", ".join(f"{name}/" for name in self.config_dirs),
                archive=archive_path,
                snapshot=snapshot,
                report=report,
                needs_override=True,
            )

        staging = Path(tempfile.mkdtemp(prefix=".rns_mgmt_import_", dir=self.home))
        try:
            command = self.runner.run_argv(["tar", "-xzf", str(archive_path), "-C", str(staging)])
            if not command.succeeded:
                return ImportResult(
                    outcome=command.outcome,
                    message=f"Failed to import configuration: {command.last_error}",
                    archive=archive_path,
                    snapshot=snapshot,
                    report=report,
                    command=command,
                )
            imported = self._merge_staged(staging)
        except OSError as exc:
            logger.error("Failed to import configuration: %s", exc)
            return ImportResult(
                outcome=Outcome.RESOURCE,
                message=f"Failed to import configuration: {exc}",
                archive=archive_path,
                snapshot=snapshot,
                report=report,
            )
        finally:
            shutil.rmtree(staging, ignore_errors=True)

        logger.info("Imported configuration from: %s", archive_path)
        return ImportResult(
            outcome=Outcome.SUCCESS,
            message="Configuration imported successfully",
            archive=archive_path,
            snapshot=snapshot,
            report=report,
            command=command,
            imported=imported,
        )

    def _merge_staged(self, staging: Path) -> list[str]:
        imported: list[str] = []
        for child in sorted(staging.iterdir()):
            if child.is_symlink():
                logger.warning("Skipping symbolic link %s in imported archive", child.name)
                continue
            target = self.home / child.name
            _merge_tree(child, target)
            imported.append(child.name)
        return imported

    def factory_reset(self, confirmed: bool = False) -> ResetResult:
        if not confirmed:
            return ResetResult(
                outcome=Outcome.PERMANENT,
                message="Factory reset deletes all configuration and requires confirmation.",
                refused=True,
            )
        try:
            snapshot = self.create_snapshot()
        except ResourceError as exc:
            return ResetResult(outcome=Outcome.RESOURCE, message=f"Could not create final backup: {exc}")

        removed: list[str] = []
        for path in self.default_sources():
            if not path.exists():
                continue
            try:
                _remove(path)
            except OSError as exc:
                logger.error("Failed to remove %s: %s", path, exc)
                return ResetResult(
                    outcome=Outcome.RESOURCE,
                    message=f"Failed to remove {path}: {exc}",
                    snapshot=snapshot,
                    removed=removed,
                )
            removed.append(path.name)
        logger.info("Factory reset performed - all configurations removed")
        return ResetResult(
            outcome=Outcome.SUCCESS,
            message="Factory reset complete",
            snapshot=snapshot,
            removed=removed,
        )
