"""
Entry point for the chat tray companion.
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import Iterable

from PySide6.QtCore import QLockFile
from PySide6.QtWidgets import QApplication
from qasync import QEventLoop

from core.app import APP_NAME, AppCoordinator
from shared.app_paths import LOCK_PATH
from tray_companion import logger as app_logger

_LOGGER = app_logger.get_logger()


class _InstanceGuard:
    """Lock file guard to prevent concurrent instances."""

    def __init__(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = QLockFile(str(path))
        self._lock.setStaleLockTime(0)

    def acquire(self) -> bool:
        return self._lock.tryLock(100)

    def release(self) -> None:
        if self._lock.isLocked():
            self._lock.unlock()


def _run_application(argv: Iterable[str]) -> int:
    """Run the Qt application on a qasync loop until the user quits."""
    app = QApplication(list(argv))
    app.setApplicationName(APP_NAME)
    app.setQuitOnLastWindowClosed(False)

    loop = QEventLoop(app)
    asyncio.set_event_loop(loop)

    coordinator = AppCoordinator()
    quit_event = asyncio.Event()
    app.aboutToQuit.connect(quit_event.set)

    with loop:
        startup_task = loop.create_task(coordinator.bootstrap())

        def _observe_startup(task: asyncio.Task[None]) -> None:
            if task.cancelled():
                return
            error = task.exception()
            if error is None:
                return
            _LOGGER.opt(exception=error).error("Startup failed; exiting.")
            app.exit(1)

        startup_task.add_done_callback(_observe_startup)

        loop.run_until_complete(quit_event.wait())
        loop.run_until_complete(coordinator.shutdown())
    return 0 if coordinator.manual_shutdown_requested else 1


def main() -> int:
    """Launch the application unless another instance already runs."""
    guard = _InstanceGuard(LOCK_PATH)
    if not guard.acquire():
        _LOGGER.debug("{} instance already running; exiting silently.", APP_NAME)
        return 0

    try:
        return _run_application(sys.argv)
    finally:
        guard.release()


if __name__ == "__main__":
    raise SystemExit(main())
