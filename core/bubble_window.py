"""
Round, always-on-top avatar bubble with an unread badge.
"""

from __future__ import annotations

from PySide6.QtCore import QPoint, QRectF, Qt, Signal
from PySide6.QtGui import QBrush, QColor, QFont, QMouseEvent, QPainter, QPainterPath, QPixmap
from PySide6.QtWidgets import QGraphicsDropShadowEffect, QLabel, QWidget

from core.bubble_pool import BubbleInit

AVATAR_COLORS = (
    "#e53935",
    "#d81b60",
    "#8e24aa",
    "#5e35b1",
    "#3949ab",
    "#1e88e5",
    "#00897b",
    "#43a047",
    "#f4511e",
    "#6d4c41",
)


def avatar_color(user_id: str) -> str:
    """Stable colour for a contact without a photo."""
    value = 0
    for char in str(user_id):
        value = (value * 31 + ord(char)) & 0xFFFFFFFF
    return AVATAR_COLORS[value % len(AVATAR_COLORS)]


class BubbleWindow(QWidget):
    clicked = Signal(str)

    def __init__(self, init: BubbleInit, size: int, parent: QWidget | None = None) -> None:
        flags = Qt.WindowType.Tool | Qt.WindowType.FramelessWindowHint | Qt.WindowType.WindowDoesNotAcceptFocus
        if init.always_on_top:
            flags |= Qt.WindowType.WindowStaysOnTopHint
        super().__init__(parent)
        self.setWindowFlags(flags)
        self.setObjectName("ContactBubble")
        self.setAttribute(Qt.WidgetAttribute.WA_TranslucentBackground, True)
        self.setAttribute(Qt.WidgetAttribute.WA_ShowWithoutActivating, True)
        self.setFixedSize(size, size)
        self.setCursor(Qt.CursorShape.PointingHandCursor)
        self.setToolTip(init.display_name)

        self.user_id = init.user_id
        self._size = size
        self._display_name = init.display_name
        self._avatar: QPixmap | None = None

        shadow = QGraphicsDropShadowEffect(self)
        shadow.setBlurRadius(16)
        shadow.setColor(QColor(0, 0, 0, 140))
        shadow.setOffset(0, 4)
        self.setGraphicsEffect(shadow)

        badge_size = max(18, size // 3)
        self._badge = QLabel(self)
        self._badge.setObjectName("UnreadBadge")
        self._badge.setAlignment(Qt.AlignmentFlag.AlignCenter)
        self._badge.setFixedSize(badge_size, badge_size)
        self._badge.move(size - badge_size, 0)
        self._badge.setStyleSheet(
            f"""
            QLabel#UnreadBadge {{
                background-color: #ef4444;
                color: white;
                font-weight: bold;
                font-size: {max(9, badge_size // 2)}px;
                border-radius: {badge_size // 2}px;
                border: 2px solid white;
            }}
            """
        )

        if init.avatar:
            self.set_avatar(init.avatar)
        self.update_count(init.count)

    def update_count(self, count: int) -> None:
        self._badge.setText("99+" if count > 99 else str(count))
        self._badge.setVisible(count > 0)

    def set_avatar(self, data: bytes) -> None:
        pixmap = QPixmap()
        if not pixmap.loadFromData(data):
            return
        self._avatar = pixmap.scaled(
            self._size,
            self._size,
            Qt.AspectRatioMode.KeepAspectRatioByExpanding,
            Qt.TransformationMode.SmoothTransformation,
        )
        self.update()

    def set_always_on_top(self, enabled: bool) -> None:
        # Changing window flags hides the window.
        was_visible = self.isVisible()
        self.setWindowFlag(Qt.WindowType.WindowStaysOnTopHint, enabled)
        if was_visible:
            self.show()

    def move_to(self, x: int, y: int) -> None:
        self.move(QPoint(x, y))

    def paintEvent(self, event) -> None:  # noqa: N802
        painter = QPainter(self)
        painter.setRenderHint(QPainter.RenderHint.Antialiasing, True)
        inset = 2
        circle = QRectF(inset, inset, self._size - 2 * inset, self._size - 2 * inset)
        path = QPainterPath()
        path.addEllipse(circle)
        painter.setClipPath(path)

        if self._avatar is not None and not self._avatar.isNull():
            x = (self._avatar.width() - self._size) // 2
            y = (self._avatar.height() - self._size) // 2
            painter.drawPixmap(0, 0, self._avatar, x, y, self._size, self._size)
        else:
            painter.fillPath(path, QBrush(QColor(avatar_color(self.user_id))))
            font = QFont()
            font.setBold(True)
            font.setPixelSize(self._size // 2 - 4)
            painter.setFont(font)
            painter.setPen(QColor("white"))
            initial = (self._display_name or "?")[0].upper()
            painter.drawText(circle, Qt.AlignmentFlag.AlignCenter, initial)
        painter.end()

    def mousePressEvent(self, event: QMouseEvent) -> None:  # noqa: N802
        super().mousePressEvent(event)
        if event.button() == Qt.MouseButton.LeftButton:
            self.clicked.emit(self.user_id)
