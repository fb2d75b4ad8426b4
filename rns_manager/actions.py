from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict

from rns_manager.archive import ArchiveValidator
from rns_manager.backup import BackupManager
from rns_manager.core import Config, config_to_toml, resolve_real_home, save_config
from rns_manager.errors import Outcome, PermanentError, ResourceError
from rns_manager.services import ServiceController, get_descriptor
from rns_manager.status import StatusBoard
from rns_manager.status_cache import StatusCache
from rns_manager.system import CommandRunner


EXIT_CODES = {
    Outcome.SUCCESS: 0,
    Outcome.TRANSIENT: 1,
    Outcome.PERMANENT: 2,
    Outcome.SECURITY: 3,
    Outcome.RESOURCE: 4,
    Outcome.STUCK: 5,
}


class Action(str, Enum):
    STATUS = "status"
    SERVICE_STATUS = "service-status"
    SERVICE_START = "service-start"
    SERVICE_STOP = "service-stop"
    SERVICE_RESTART = "service-restart"
    BACKUP_CREATE = "backup-create"
    BACKUP_LIST = "backup-list"
    BACKUP_PRUNE = "backup-prune"
    BACKUP_DELETE = "backup-delete"
    BACKUP_RESTORE = "backup-restore"
    BACKUP_EXPORT = "backup-export"
    BACKUP_IMPORT = "backup-import"
    FACTORY_RESET = "factory-reset"
    CONFIG_INIT = "config-init"
    CONFIG_SHOW = "config-show"


@dataclass
class ActionRequest:
    service: str = "rnsd"
    snapshot_id: str | None = None
    archive: Path | None = None
    destination: Path | None = None
    keep: int | None = None
    confirmed: bool = False
    allow_unrecognized: bool = False
    force: bool = False


@dataclass
class ActionOutput:
    outcome: Outcome
    lines: list[str] = field(default_factory=list)
    attempts: int = 0
    needs_override: bool = False

    @property
    def exit_code(self) -> int:
        return EXIT_CODES[self.outcome]


@dataclass
class AppContext:
    config: Config
    config_path: Path
    home: Path
    runner: CommandRunner
    cache: StatusCache
    backups: BackupManager
    controllers: Dict[str, ServiceController] = field(default_factory=dict)

    def controller(self, name: str) -> ServiceController:
        if name not in self.controllers:
            descriptor = get_descriptor(name, self.config.services)
            self.controllers[name] = ServiceController(descriptor, self.runner, self.cache)
        return self.controllers[name]

    def board(self) -> StatusBoard:
        return StatusBoard(self.runner, self.cache, {"rnsd": self.controller("rnsd")})


def build_context(
    config: Config,
    config_path: Path,
    home: Path | None = None,
    runner: CommandRunner | None = None,
) -> AppContext:
    home = home or resolve_real_home()
    runner = runner or CommandRunner(config.commands)
    cache = StatusCache(default_ttl=config.cache.ttl)
    backups = BackupManager(
        root=config.backup.resolved_root(home),
        home=home,
        runner=runner,
        validator=ArchiveValidator(),
        keep=config.backup.keep,
        auto_prune=config.backup.auto_prune,
    )
    return AppContext(
        config=config,
        config_path=config_path,
        home=home,
        runner=runner,
        cache=cache,
        backups=backups,
    )


def _status(ctx: AppContext, request: ActionRequest) -> ActionOutput:
    return ActionOutput(Outcome.SUCCESS, ctx.board().snapshot().lines())


def _service_status(ctx: AppContext, request: ActionRequest) -> ActionOutput:
    state = ctx.controller(request.service).status()
    return ActionOutput(Outcome.SUCCESS, [f"{request.service}: {state.value}"])


def _service_transition(action: str) -> Callable[[AppContext, ActionRequest], ActionOutput]:
    def _handler(ctx: AppContext, request: ActionRequest) -> ActionOutput:
        controller = ctx.controller(request.service)
        result = getattr(controller, action)()
        ctx.cache.invalidate_prefix("version:")
        lines = [result.message]
        if result.command is not None:
            lines.append(f"Attempts: {result.attempts}")
        return ActionOutput(result.outcome, lines, attempts=result.attempts)

    return _handler


def _backup_create(ctx: AppContext, request: ActionRequest) -> ActionOutput:
    try:
        snapshot = ctx.backups.create_snapshot()
    except ResourceError as exc:
        return ActionOutput(Outcome.RESOURCE, [str(exc)])
    if snapshot is None:
        return ActionOutput(Outcome.PERMANENT, ["No configuration files found to backup"])
    return ActionOutput(
        Outcome.SUCCESS,
        [f"Backup saved to: {snapshot.path}", f"Contents: {', '.join(snapshot.source_dirs)}"],
    )


def _backup_list(ctx: AppContext, request: ActionRequest) -> ActionOutput:
    snapshots = ctx.backups.list_snapshots()
    if not snapshots:
        return ActionOutput(Outcome.SUCCESS, ["No backups found"])
    lines = [f"Found {len(snapshots)} backup(s):"]
    for snapshot in snapshots:
        lines.append(
            f"  {snapshot.id}  {snapshot.display_date()}  {snapshot.size_bytes} bytes  {', '.join(snapshot.source_dirs)}"
        )
    return ActionOutput(Outcome.SUCCESS, lines)


def _backup_prune(ctx: AppContext, request: ActionRequest) -> ActionOutput:
    keep = request.keep if request.keep is not None else ctx.config.backup.keep
    try:
        result = ctx.backups.prune_retained(keep)
    except PermanentError as exc:
        return ActionOutput(Outcome.PERMANENT, [str(exc)])
    return ActionOutput(result.outcome, [result.message])


def _backup_delete(ctx: AppContext, request: ActionRequest) -> ActionOutput:
    if not request.snapshot_id:
        return ActionOutput(Outcome.PERMANENT, ["No backup selected"])
    if not ctx.backups.delete_snapshot(request.snapshot_id):
        return ActionOutput(Outcome.PERMANENT, [f"Backup not found: {request.snapshot_id}"])
    return ActionOutput(Outcome.SUCCESS, [f"Deleted backup {request.snapshot_id}"])


def _backup_restore(ctx: AppContext, request: ActionRequest) -> ActionOutput:
    if not request.snapshot_id:
        return ActionOutput(Outcome.PERMANENT, ["No backup selected"])
    result = ctx.backups.restore_snapshot(request.snapshot_id, confirmed=request.confirmed)
    lines = [result.message]
    if result.restored:
        lines.append(f"Restored: {', '.join(result.restored)}")
    return ActionOutput(result.outcome, lines)


def _backup_export(ctx: AppContext, request: ActionRequest) -> ActionOutput:
    result = ctx.backups.export_archive(destination=request.destination)
    return ActionOutput(result.outcome, [result.message], attempts=result.attempts)


def _backup_import(ctx: AppContext, request: ActionRequest) -> ActionOutput:
    if request.archive is None:
        return ActionOutput(Outcome.PERMANENT, ["No archive given"])
    result = ctx.backups.import_archive(
        request.archive,
        confirmed=request.confirmed,
        allow_unrecognized=request.allow_unrecognized,
    )
    lines = [result.message]
    if result.snapshot is not None:
        lines.append(f"Previous configuration saved to: {result.snapshot.path}")
    if result.report is not None and result.report.unsafe_entries:
        lines.extend(f"  rejected: {entry.describe()} ({entry.classification.value})" for entry in result.report.unsafe_entries[:10])
    if result.needs_override:
        lines.append("Re-run with --allow-unrecognized to import anyway.")
    return ActionOutput(result.outcome, lines, attempts=result.attempts, needs_override=result.needs_override)


def _factory_reset(ctx: AppContext, request: ActionRequest) -> ActionOutput:
    result = ctx.backups.factory_reset(confirmed=request.confirmed)
    lines = [result.message]
    if result.snapshot is not None:
        lines.append(f"Final backup saved to: {result.snapshot.path}")
    lines.extend(f"Removed ~/{name}" for name in result.removed)
    return ActionOutput(result.outcome, lines)


def _config_init(ctx: AppContext, request: ActionRequest) -> ActionOutput:
    if ctx.config_path.exists() and not request.force:
        return ActionOutput(Outcome.PERMANENT, [f"Config already exists at {ctx.config_path}"])
    save_config(Config(), ctx.config_path)
    return ActionOutput(Outcome.SUCCESS, [f"Wrote default config to {ctx.config_path}"])


def _config_show(ctx: AppContext, request: ActionRequest) -> ActionOutput:
    return ActionOutput(Outcome.SUCCESS, config_to_toml(ctx.config).rstrip().splitlines())


HANDLERS: Dict[Action, Callable[[AppContext, ActionRequest], ActionOutput]] = {
    Action.STATUS: _status,
    Action.SERVICE_STATUS: _service_status,
    Action.SERVICE_START: _service_transition("start"),
    Action.SERVICE_STOP: _service_transition("stop"),
    Action.SERVICE_RESTART: _service_transition("restart"),
    Action.BACKUP_CREATE: _backup_create,
    Action.BACKUP_LIST: _backup_list,
    Action.BACKUP_PRUNE: _backup_prune,
    Action.BACKUP_DELETE: _backup_delete,
    Action.BACKUP_RESTORE: _backup_restore,
    Action.BACKUP_EXPORT: _backup_export,
    Action.BACKUP_IMPORT: _backup_import,
    Action.FACTORY_RESET: _factory_reset,
    Action.CONFIG_INIT: _config_init,
    Action.CONFIG_SHOW: _config_show,
}


def dispatch(ctx: AppContext, action: Action, request: ActionRequest | None = None) -> ActionOutput:
    return HANDLERS[action](ctx, request or ActionRequest())
