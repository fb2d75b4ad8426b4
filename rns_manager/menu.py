from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path
from typing import Callable, TypeVar

from InquirerPy import get_style, inquirer
from prompt_toolkit.application import Application
from prompt_toolkit.key_binding import KeyBindings, merge_key_bindings
from prompt_toolkit.key_binding.bindings.focus import focus_next, focus_previous
from prompt_toolkit.key_binding.defaults import load_key_bindings
from prompt_toolkit.layout import Layout
from prompt_toolkit.styles import Style
from prompt_toolkit.widgets import Button, Dialog, TextArea

from rns_manager.actions import Action, ActionOutput, ActionRequest, AppContext, dispatch
from rns_manager.errors import Outcome
from rns_manager.services import SERVICE_FACTORIES


logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_KEY_BINDINGS = load_key_bindings()


class _QuickExit(Exception):
    """Raised to leave the menu from a global Ctrl-C."""


def _quick_exit(event=None) -> None:
    if event and getattr(event, "app", None):
        event.app.exit(exception=_QuickExit())
        return
    raise _QuickExit()


GLOBAL_KEY_BINDINGS = KeyBindings()
GLOBAL_KEY_BINDINGS.add("c-c")(_quick_exit)


def _clear_screen() -> None:
    try:
        sys.stdout.write("\033[2J\033[H")
        sys.stdout.flush()
    except OSError:
        return


APP_STYLE = get_style(
    {
        "questionmark": "#9fa6ad",
        "answermark": "#9fa6ad",
        "question": "bold #e5e7eb",
        "answer": "#7dd3fc",
        "input": "#7dd3fc",
        "pointer": "bold #38bdf8",
        "marker": "#38bdf8",
        "instruction": "#9ca3af",
        "long_instruction": "#9ca3af",
        "separator": "#6b7280",
    },
    style_override=False,
)

DIALOG_STYLE = Style.from_dict(
    {
        **APP_STYLE.dict,
        "": "bg:#000000 #e5e7eb",
        "dialog": "bg:#000000 #e5e7eb",
        "dialog.body": "bg:#000000 #e5e7eb",
        "dialog frame.border": "#38bdf8",
        "dialog frame.label": "bold #ffffff",
        "text-area": "bg:#000000 #e5e7eb",
        "button": "bg:#0b0f14 #38bdf8",
        "button.focused": "bg:#38bdf8 #000000",
    }
)

MAIN_MENU_TITLE = "RNS Management Tool"

OUTCOME_TITLES = {
    Outcome.SUCCESS: "Done",
    Outcome.TRANSIENT: "Failed (may succeed on retry)",
    Outcome.PERMANENT: "Failed",
    Outcome.SECURITY: "Rejected: unsafe archive",
    Outcome.RESOURCE: "Failed: storage problem",
    Outcome.STUCK: "Did not settle in time",
}


def _message(title: str, body: str) -> None:
    _clear_screen()
    text_area = TextArea(
        text=body or "",
        read_only=True,
        scrollbar=True,
        wrap_lines=True,
        focusable=True,
    )
    app: Application | None = None

    def _close(event=None) -> None:
        if app:
            app.exit()

    dialog = Dialog(title=title, body=text_area, buttons=[Button(text="OK", handler=_close)], with_background=True)
    kb = KeyBindings()
    kb.add("tab")(focus_next)
    kb.add("s-tab")(focus_previous)
    kb.add("escape")(_close)
    kb.add("q")(_close)
    kb.add("enter")(_close)
    app = Application(
        layout=Layout(dialog, focused_element=text_area),
        key_bindings=merge_key_bindings([GLOBAL_KEY_BINDINGS, DEFAULT_KEY_BINDINGS, kb]),
        mouse_support=False,
        style=DIALOG_STYLE,
        full_screen=True,
    )
    try:
        app.run()
    except (EOFError, KeyboardInterrupt):
        return
    finally:
        _clear_screen()


def _run_with_status(title: str, body: str, action: Callable[[], T]) -> T:
    _clear_screen()
    result: dict[str, T] = {}
    errors: dict[str, BaseException] = {}
    text_area = TextArea(text=body.strip() or "Working...", read_only=True, wrap_lines=True, focusable=False)
    dialog = Dialog(title=title, body=text_area, buttons=[], with_background=True)
    app = Application(
        layout=Layout(dialog),
        key_bindings=merge_key_bindings([GLOBAL_KEY_BINDINGS, DEFAULT_KEY_BINDINGS]),
        mouse_support=False,
        style=DIALOG_STYLE,
        full_screen=True,
    )

    async def _run_action() -> None:
        loop = asyncio.get_running_loop()
        try:
            result["value"] = await loop.run_in_executor(None, action)
        except BaseException as exc:
            errors["error"] = exc
        finally:
            app.exit()

    try:
        app.run(pre_run=lambda: app.create_background_task(_run_action()))
    finally:
        _clear_screen()
    if "error" in errors:
        raise errors["error"]
    return result["value"]


def _menu(title: str, items: list[tuple[str, str]], default: str | None = None) -> str | None:
    choices = [{"name": label or key, "value": key} for key, label in items]
    if not choices:
        return None
    try:
        return inquirer.select(
            message=title,
            choices=choices,
            default=default,
            pointer=">",
            style=APP_STYLE,
            qmark="",
            amark="",
            mandatory=False,
            raise_keyboard_interrupt=True,
            keybindings={
                "answer": [{"key": "enter"}, {"key": "right"}],
                "skip": [{"key": "escape"}, {"key": "left"}],
            },
        ).execute()
    except (KeyboardInterrupt, EOFError):
        raise _QuickExit()


def _yesno(title: str, body: str) -> bool:
    try:
        return bool(inquirer.confirm(message=f"{title}\n{body}", default=False, style=APP_STYLE).execute())
    except KeyboardInterrupt:
        raise _QuickExit()
    except EOFError:
        return False


def _inputbox(title: str, body: str, default: str = "") -> str | None:
    try:
        value = inquirer.text(message=f"{title}\n{body}", default=default, style=APP_STYLE).execute()
    except KeyboardInterrupt:
        raise _QuickExit()
    except EOFError:
        return None
    if value is None:
        return None
    return str(value).strip()


def _show(title: str, output: ActionOutput) -> None:
    heading = OUTCOME_TITLES[output.outcome]
    body = "\n".join([heading, "", *output.lines])
    _message(title, body)


def _run(ctx: AppContext, title: str, action: Action, request: ActionRequest | None = None) -> ActionOutput:
    output = _run_with_status(title, "Working...\nPlease wait.", lambda: dispatch(ctx, action, request))
    _show(title, output)
    return output


def _select_snapshot(ctx: AppContext, title: str) -> str | None:
    snapshots = ctx.backups.list_snapshots()
    if not snapshots:
        _message(title, "No backups found")
        return None
    items = [(snap.id, f"{snap.display_date()}  ({', '.join(snap.source_dirs)})") for snap in reversed(snapshots)]
    items.append(("back", "Back"))
    choice = _menu(title, items)
    if choice in (None, "back"):
        return None
    return choice


def _service_menu(ctx: AppContext, name: str) -> None:
    title = f"Service: {name}"
    while True:
        state = ctx.controller(name).status()
        choice = _menu(
            f"{title} ({state.value})",
            [
                ("start", "Start"),
                ("stop", "Stop"),
                ("restart", "Restart"),
                ("refresh", "Refresh status"),
                ("back", "Back"),
            ],
        )
        if choice in (None, "back"):
            return
        if choice == "refresh":
            ctx.cache.invalidate(ctx.controller(name).descriptor.cache_key)
            continue
        action = {
            "start": Action.SERVICE_START,
            "stop": Action.SERVICE_STOP,
            "restart": Action.SERVICE_RESTART,
        }[choice]
        _run(ctx, title, action, ActionRequest(service=name))


def _import_flow(ctx: AppContext) -> None:
    title = "Import Configuration"
    raw = _inputbox(title, "Path to a .tar.gz export archive:")
    if not raw:
        return
    archive = Path(raw).expanduser()
    if not _yesno(title, "This will overwrite your current configuration.\nA backup is taken first. Continue?"):
        return
    output = _run(ctx, title, Action.BACKUP_IMPORT, ActionRequest(archive=archive, confirmed=True))
    if output.needs_override and _yesno(
        title,
        "The archive holds no recognized configuration directory.\nImport it anyway?",
    ):
        _run(
            ctx,
            title,
            Action.BACKUP_IMPORT,
            ActionRequest(archive=archive, confirmed=True, allow_unrecognized=True),
        )


def _backup_menu(ctx: AppContext) -> None:
    while True:
        choice = _menu(
            "Backup & Restore",
            [
                ("1", "Create backup"),
                ("2", "List backups"),
                ("3", "Restore backup"),
                ("4", "Delete backup"),
                ("5", f"Prune old backups (keep {ctx.config.backup.keep})"),
                ("6", "Export configuration"),
                ("7", "Import configuration"),
                ("8", "Back"),
            ],
        )
        if choice in (None, "8"):
            return
        if choice == "1":
            _run(ctx, "Create Backup", Action.BACKUP_CREATE)
        elif choice == "2":
            _show("Backups", dispatch(ctx, Action.BACKUP_LIST))
        elif choice == "3":
            snapshot_id = _select_snapshot(ctx, "Restore Backup")
            if snapshot_id and _yesno("Restore Backup", f"Restore {snapshot_id} over the current configuration?"):
                _run(ctx, "Restore Backup", Action.BACKUP_RESTORE, ActionRequest(snapshot_id=snapshot_id, confirmed=True))
        elif choice == "4":
            snapshot_id = _select_snapshot(ctx, "Delete Backup")
            if snapshot_id and _yesno("Delete Backup", f"Permanently delete {snapshot_id}?"):
                _run(ctx, "Delete Backup", Action.BACKUP_DELETE, ActionRequest(snapshot_id=snapshot_id))
        elif choice == "5":
            _run(ctx, "Prune Backups", Action.BACKUP_PRUNE)
        elif choice == "6":
            default = str(ctx.backups.default_export_path())
            destination = _inputbox("Export Configuration", "Write the archive to:", default=default)
            if destination:
                _run(
                    ctx,
                    "Export Configuration",
                    Action.BACKUP_EXPORT,
                    ActionRequest(destination=Path(destination).expanduser()),
                )
        elif choice == "7":
            _import_flow(ctx)


def _advanced_menu(ctx: AppContext) -> None:
    while True:
        choice = _menu(
            "Advanced",
            [
                ("1", "Show tool config"),
                ("2", "Write default tool config"),
                ("3", "Factory reset"),
                ("4", "Back"),
            ],
        )
        if choice in (None, "4"):
            return
        if choice == "1":
            _show("Tool Config", dispatch(ctx, Action.CONFIG_SHOW))
        elif choice == "2":
            force = ctx.config_path.exists() and _yesno("Tool Config", f"Overwrite {ctx.config_path}?")
            _show("Tool Config", dispatch(ctx, Action.CONFIG_INIT, ActionRequest(force=force)))
        elif choice == "3":
            if not _yesno("Factory Reset", "This removes ALL Reticulum, NomadNet and LXMF configuration."):
                continue
            if not _yesno("Factory Reset", "A final backup is taken first. Really continue?"):
                continue
            _run(ctx, "Factory Reset", Action.FACTORY_RESET, ActionRequest(confirmed=True))


def run_menu(ctx: AppContext) -> int:
    try:
        while True:
            choice = _menu(
                MAIN_MENU_TITLE,
                [
                    ("status", "Status"),
                    *[(f"service:{name}", f"Service: {name}") for name in sorted(SERVICE_FACTORIES)],
                    ("backup", "Backup & Restore"),
                    ("advanced", "Advanced"),
                    ("exit", "Exit"),
                ],
            )
            if choice in (None, "exit"):
                _clear_screen()
                return 0
            if choice == "status":
                ctx.board().invalidate()
                _message("Status", "\n".join(ctx.board().snapshot().lines()))
            elif choice.startswith("service:"):
                _service_menu(ctx, choice.split(":", 1)[1])
            elif choice == "backup":
                _backup_menu(ctx)
            elif choice == "advanced":
                _advanced_menu(ctx)
    except _QuickExit:
        logger.info("Menu closed with Ctrl-C")
        _clear_screen()
        return 130
