"""
tray_companion package.

Process entry point and logging setup for the chat tray companion.
"""

__all__ = [
    "logger",
    "main",
]
