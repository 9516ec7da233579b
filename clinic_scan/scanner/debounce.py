"""Suppression of repeated identical reads."""

from __future__ import annotations

from typing import Optional

DEFAULT_WINDOW_MS = 1500


class DebounceGate:
    """Collapse a decoded value seen again within ``window_ms``.

    A camera held over the same code decodes it on nearly every frame;
    only the first read inside the window is let through.
    """

    __slots__ = ("window_ms", "last_value", "last_timestamp_ms")

    def __init__(self, window_ms: float = DEFAULT_WINDOW_MS) -> None:
        self.window_ms = window_ms
        self.last_value: Optional[str] = None
        self.last_timestamp_ms: float = 0.0

    def accept(self, text: str, now_ms: float) -> bool:
        if text == self.last_value and now_ms - self.last_timestamp_ms < self.window_ms:
            return False
        self.last_value = text
        self.last_timestamp_ms = now_ms
        return True


__all__ = ["DebounceGate", "DEFAULT_WINDOW_MS"]
