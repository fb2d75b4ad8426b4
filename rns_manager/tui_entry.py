from __future__ import annotations

import sys
import threading
from typing import TYPE_CHECKING, Callable, TypeVar

if TYPE_CHECKING:
    from rns_manager.actions import AppContext

SPINNER_FRAMES = ("⣾", "⣽", "⣻", "⢿", "⡿", "⣟", "⣯", "⣷")
SPINNER_INTERVAL = 0.08

T = TypeVar("T")


def _run_with_spinner(label: str, action: Callable[[], T]) -> T:
    stop = threading.Event()

    def _spin() -> None:
        index = 0
        while not stop.is_set():
            frame = SPINNER_FRAMES[index % len(SPINNER_FRAMES)]
            try:
                sys.stdout.write(f"\r{frame} {label}")
                sys.stdout.flush()
            except OSError:
                return
            index += 1
            stop.wait(SPINNER_INTERVAL)
        try:
            sys.stdout.write(f"\r  {label}\n")
            sys.stdout.flush()
        except OSError:
            return

    spinner = threading.Thread(target=_spin, name="rns-manager-start-spinner", daemon=True)
    spinner.start()
    try:
        return action()
    finally:
        stop.set()
        spinner.join(timeout=0.5)


def _prepare(args) -> AppContext:
    from rns_manager import cli
    from rns_manager.services import SERVICE_FACTORIES

    ctx = cli._setup(args)
    for name in sorted(SERVICE_FACTORIES):
        ctx.controller(name)
    return ctx


def main(argv: list[str] | None = None) -> int:
    """Open the interactive menu, probing service state behind a spinner."""
    from rns_manager import cli

    args = cli._parse_args(["menu"] if argv is None else [*argv, "menu"])
    ctx = _run_with_spinner("Checking services...", lambda: _prepare(args))
    from rns_manager.menu import run_menu

    try:
        return run_menu(ctx)
    finally:
        cli.reset_logging()


if __name__ == "__main__":
    raise SystemExit(main())
