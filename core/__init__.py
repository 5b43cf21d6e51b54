"""
Connectivity and notification core shared by the tray companion.
"""

from .settings import AppSettings, ContactEntry, SettingsStore  # noqa: F401
from .watermark_store import WatermarkStore  # noqa: F401
