"""
Application coordinator wiring the backend connection, unread tracking,
contact bubbles and the tray icon together.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Coroutine, Optional, Set

from PySide6.QtCore import QObject, Signal
from PySide6.QtGui import QAction
from PySide6.QtWidgets import QApplication, QMenu, QStyle, QSystemTrayIcon

from core.bubble_pool import BubblePool
from core.connection import ConnectionSupervisor
from core.events import CONNECTION_CHANGED, CONTACT_UNREAD_CHANGED, NEW_MESSAGE
from core.settings import SettingsStore
from core.tracker import NewMessageEvent, UnreadTracker
from core.watermark_store import WatermarkStore
from tray_companion import logger as app_logger

APP_NAME = "Chat Tray Companion"
APP_VERSION = "1.0.0"
NOTIFICATION_PREVIEW_CHARS = 200
NOTIFICATION_TIMEOUT_MS = 5000


@dataclass
class AppCoordinator(QObject):
    store: SettingsStore = field(default_factory=SettingsStore)
    watermarks: WatermarkStore = field(default_factory=WatermarkStore)
    supervisor: ConnectionSupervisor = field(default_factory=ConnectionSupervisor)

    # user_id, dialog_id, display_name; consumed by the chat popup.
    conversationRequested = Signal(str, str, str)

    def __post_init__(self) -> None:
        super().__init__()
        self._logger = app_logger.get_logger()
        self._manual_shutdown_requested = False
        self._login_required = False
        self._last_notified_user: Optional[str] = None
        self._tasks: Set[asyncio.Task[Any]] = set()

        self.tracker = UnreadTracker(self.supervisor, self.store, self.watermarks)
        self.pool = BubblePool(self.store, self.supervisor, open_conversation=self.open_conversation)

        self._tray = QSystemTrayIcon(self)
        self._tray.setIcon(self._standard_icon(QStyle.StandardPixmap.SP_ComputerIcon))
        self._tray.setToolTip(f"{APP_NAME} - Starting...")

        menu = QMenu()
        self._bubbles_action = QAction("Hide Bubbles", menu)
        self._side_action = QAction("Move Bubbles Left", menu)
        self._notifications_action = QAction("Show Notifications", menu)
        self._notifications_action.setCheckable(True)
        refresh_action = QAction("Refresh Now", menu)
        exit_action = QAction("Quit", menu)
        menu.addAction(self._bubbles_action)
        menu.addAction(self._side_action)
        menu.addSeparator()
        menu.addAction(self._notifications_action)
        menu.addAction(refresh_action)
        menu.addSeparator()
        menu.addAction(exit_action)
        self._menu = menu
        self._tray.setContextMenu(menu)

        menu.aboutToShow.connect(self._refresh_menu)
        self._bubbles_action.triggered.connect(self._toggle_bubbles)
        self._side_action.triggered.connect(self._toggle_bubble_side)
        self._notifications_action.toggled.connect(self._set_notifications)
        refresh_action.triggered.connect(self._manual_refresh)
        exit_action.triggered.connect(self.request_quit)
        self._tray.messageClicked.connect(self._on_notification_clicked)

    async def bootstrap(self) -> None:
        self._logger.info("Starting {} v{} against {}", APP_NAME, APP_VERSION, self.supervisor.base_url)
        self.store.load()
        self.watermarks.load()
        self._tray.show()

        await self._check_login()

        self.supervisor.events.on(CONNECTION_CHANGED, self._on_connection_changed)
        self.tracker.events.on(CONTACT_UNREAD_CHANGED, self._on_unreads_changed)
        self.tracker.events.on(NEW_MESSAGE, self._on_new_message)
        self.pool.attach(self.tracker.events)

        self.supervisor.start()
        self.tracker.start()
        self._update_tray()
        self._logger.info("Tray companion initialised with {} whitelisted contact(s).", len(self.store.contacts()))

    async def shutdown(self) -> None:
        self._logger.info("Shutting down tray companion.")
        self.tracker.stop()
        self.pool.detach()
        self.pool.destroy_all()
        await self.supervisor.stop()
        for task in list(self._tasks):
            task.cancel()
        self._tray.hide()

    def request_quit(self) -> None:
        self._logger.info("Quit requested from tray menu.")
        self._manual_shutdown_requested = True
        QApplication.instance().quit()

    @property
    def manual_shutdown_requested(self) -> bool:
        return self._manual_shutdown_requested

    def open_conversation(self, user_id: str) -> None:
        entry = self.tracker.get_unreads(user_id)
        contact = self.store.contact_info(user_id)
        dialog_id = entry.dialog_id or user_id
        display_name = contact.display_name if contact else user_id
        self._logger.info("Opening conversation with {} (dialog {})", display_name, dialog_id)
        self.tracker.mark_read(user_id)
        self.pool.remove_bubble(user_id)
        self.conversationRequested.emit(user_id, dialog_id, display_name)

    async def _check_login(self) -> None:
        me = await self.supervisor.get_me()
        if not me or not me.get("id"):
            self._login_required = True
            self._logger.warning("Backend has no logged-in account; login required.")
        else:
            self._login_required = False
            self._logger.info("Logged in as {}", me.get("username") or me.get("id"))
        self._update_tray()

    def _on_connection_changed(self, connected: bool) -> None:
        if connected and self._login_required:
            self._create_task(self._check_login())
        self._update_tray()

    def _on_unreads_changed(self, change: Any) -> None:
        self._update_tray()

    def _on_new_message(self, event: NewMessageEvent) -> None:
        if not self.store.settings.show_notifications:
            return
        contact = self.store.contact_info(event.user_id)
        title = contact.display_name if contact else "Unknown"
        body = (event.message.text or "New message")[:NOTIFICATION_PREVIEW_CHARS]
        self._last_notified_user = event.user_id
        self._tray.showMessage(title, body, QSystemTrayIcon.MessageIcon.Information, NOTIFICATION_TIMEOUT_MS)

    def _on_notification_clicked(self) -> None:
        if self._last_notified_user is None:
            return
        self.open_conversation(self._last_notified_user)

    def _update_tray(self) -> None:
        total = self.tracker.total_unread_count()
        if not self.supervisor.connected:
            icon = QStyle.StandardPixmap.SP_MessageBoxWarning
            tooltip = f"{APP_NAME} - Disconnected"
        elif self._login_required:
            icon = QStyle.StandardPixmap.SP_MessageBoxWarning
            tooltip = f"{APP_NAME} - Login required"
        elif total > 0:
            icon = QStyle.StandardPixmap.SP_MessageBoxInformation
            tooltip = f"{APP_NAME} - {total} unread"
        else:
            icon = QStyle.StandardPixmap.SP_ComputerIcon
            tooltip = f"{APP_NAME} - Connected"
        self._tray.setIcon(self._standard_icon(icon))
        self._tray.setToolTip(tooltip)

    def _refresh_menu(self) -> None:
        settings = self.store.settings
        self._bubbles_action.setText("Hide Bubbles" if self.pool.visible else "Show Bubbles")
        self._side_action.setText(
            "Move Bubbles Left" if settings.bubble_position == "right" else "Move Bubbles Right"
        )
        self._notifications_action.blockSignals(True)
        self._notifications_action.setChecked(settings.show_notifications)
        self._notifications_action.blockSignals(False)

    def _toggle_bubbles(self) -> None:
        visible = self.pool.toggle_visibility()
        self._logger.info("Bubbles {}.", "shown" if visible else "hidden")

    def _toggle_bubble_side(self) -> None:
        current = self.store.settings.bubble_position
        self.store.update_settings(bubble_position="left" if current == "right" else "right")

    def _set_notifications(self, enabled: bool) -> None:
        self.store.update_settings(show_notifications=bool(enabled))

    def _manual_refresh(self) -> None:
        self._logger.info("Manual refresh triggered from tray menu.")
        self._create_task(self._refresh())

    async def _refresh(self) -> None:
        await self.supervisor.get_health()
        await self.tracker.poll_once()

    def _create_task(self, coro: Coroutine[Any, Any, Any]) -> Optional[asyncio.Task[Any]]:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            return None
        task = loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @staticmethod
    def _standard_icon(pixmap: QStyle.StandardPixmap):
        return QApplication.style().standardIcon(pixmap)
