from __future__ import annotations

import argparse
import logging
from pathlib import Path

from rns_manager.actions import Action, ActionOutput, ActionRequest, AppContext, build_context, dispatch
from rns_manager.core import default_config_path, load_config, resolve_real_home
from rns_manager.errors import Outcome
from rns_manager.logs import init_logging, reset_logging
from rns_manager.services import SERVICE_FACTORIES


logger = logging.getLogger(__name__)

SERVICE_ACTIONS = {
    "status": Action.SERVICE_STATUS,
    "start": Action.SERVICE_START,
    "stop": Action.SERVICE_STOP,
    "restart": Action.SERVICE_RESTART,
}

BACKUP_ACTIONS = {
    "create": Action.BACKUP_CREATE,
    "list": Action.BACKUP_LIST,
    "prune": Action.BACKUP_PRUNE,
    "delete": Action.BACKUP_DELETE,
    "restore": Action.BACKUP_RESTORE,
    "export": Action.BACKUP_EXPORT,
    "import": Action.BACKUP_IMPORT,
}


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="rns-manager")
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to the config file (default: ~/.config/rns-manager/config.toml).",
    )
    parser.add_argument("--home", type=Path, default=None, help="Override the resolved home directory.")

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("status", help="Show daemon state and installed versions.")
    subparsers.add_parser("menu", help="Open the interactive menu.")

    config_parser = subparsers.add_parser("config", help="Manage the tool's own config.")
    config_sub = config_parser.add_subparsers(dest="config_command", required=True)
    init_parser = config_sub.add_parser("init", help="Write a default config.")
    init_parser.add_argument("--force", action="store_true", help="Overwrite if exists.")
    config_sub.add_parser("show", help="Show the effective config.")

    service_parser = subparsers.add_parser("service", help="Manage a background service.")
    service_parser.add_argument("name", choices=sorted(SERVICE_FACTORIES), help="Service name")
    service_parser.add_argument("action", choices=list(SERVICE_ACTIONS), help="Service action")

    backup_parser = subparsers.add_parser("backup", help="Backup, restore, export and import.")
    backup_sub = backup_parser.add_subparsers(dest="backup_command", required=True)
    backup_sub.add_parser("create", help="Snapshot the current configuration.")
    backup_sub.add_parser("list", help="List snapshots, oldest first.")
    prune_parser = backup_sub.add_parser("prune", help="Delete all but the newest snapshots.")
    prune_parser.add_argument("--keep", type=int, default=None)
    delete_parser = backup_sub.add_parser("delete", help="Delete one snapshot.")
    delete_parser.add_argument("snapshot_id")
    restore_parser = backup_sub.add_parser("restore", help="Restore a snapshot over the live configuration.")
    restore_parser.add_argument("snapshot_id")
    restore_parser.add_argument("--yes", action="store_true", help="Confirm overwriting the current configuration.")
    export_parser = backup_sub.add_parser("export", help="Write a portable .tar.gz archive.")
    export_parser.add_argument("--output", type=Path, default=None)
    import_parser = backup_sub.add_parser("import", help="Import a portable .tar.gz archive.")
    import_parser.add_argument("archive", type=Path)
    import_parser.add_argument("--yes", action="store_true", help="Confirm overwriting the current configuration.")
    import_parser.add_argument(
        "--allow-unrecognized",
        action="store_true",
        help="Import even if the archive holds no recognized configuration directory.",
    )

    reset_parser = subparsers.add_parser("reset", help="Factory reset: remove all Reticulum configuration.")
    reset_parser.add_argument("--yes", action="store_true", help="Confirm deleting all configuration.")

    return parser.parse_args(argv)


def _resolve(args: argparse.Namespace) -> tuple[Action, ActionRequest]:
    if args.command == "status":
        return Action.STATUS, ActionRequest()
    if args.command == "config":
        if args.config_command == "init":
            return Action.CONFIG_INIT, ActionRequest(force=args.force)
        return Action.CONFIG_SHOW, ActionRequest()
    if args.command == "service":
        return SERVICE_ACTIONS[args.action], ActionRequest(service=args.name)
    if args.command == "reset":
        return Action.FACTORY_RESET, ActionRequest(confirmed=args.yes)
    if args.command == "backup":
        request = ActionRequest(
            snapshot_id=getattr(args, "snapshot_id", None),
            archive=getattr(args, "archive", None),
            destination=getattr(args, "output", None),
            keep=getattr(args, "keep", None),
            confirmed=getattr(args, "yes", False),
            allow_unrecognized=getattr(args, "allow_unrecognized", False),
        )
        return BACKUP_ACTIONS[args.backup_command], request
    raise SystemExit("Unknown command")


def _print_output(output: ActionOutput) -> int:
    for line in output.lines:
        print(line)
    if output.outcome != Outcome.SUCCESS:
        print(f"Result: {output.outcome.value}")
    return output.exit_code


def _setup(args: argparse.Namespace) -> AppContext:
    home = args.home or resolve_real_home()
    config_path = args.config or default_config_path(home)
    config = load_config(config_path)
    init_logging(
        config.logging.resolved_path(home),
        level=config.logging.level,
        max_bytes=config.logging.max_bytes,
        backup_count=config.logging.backup_count,
    )
    return build_context(config, config_path, home=home)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    ctx = _setup(args)
    logger.info("=== RNS Management Tool Session Started (%s) ===", args.command)
    code = 1
    try:
        if args.command == "menu":
            from rns_manager.menu import run_menu

            code = run_menu(ctx)
        else:
            action, request = _resolve(args)
            code = _print_output(dispatch(ctx, action, request))
        return code
    finally:
        logger.info("=== RNS Management Tool Session Ended (exit=%d) ===", code)
        reset_logging()


if __name__ == "__main__":
    raise SystemExit(main())
