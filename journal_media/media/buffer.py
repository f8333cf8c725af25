"""
Text Buffer — the markdown being edited, shared by the user and uploads.

The user types into it while upload completions rewrite placeholders in
it. Every mutation is a pure ``str -> str`` function applied to the value
current *at apply time*, never to a snapshot captured earlier, so text
typed while an upload was in flight survives reconciliation.

The transformations used by the placeholder manager live here as plain
functions so they can be tested without a buffer.
"""

from __future__ import annotations

import logging
import re
import threading
from typing import Callable, List, Sequence

from .references import placeholder_token

logger = logging.getLogger(__name__)

BufferListener = Callable[[str], None]
Transform = Callable[[str], str]


class TextBuffer:
    """A string value mutated only through functional updates."""

    def __init__(self, initial: str = ""):
        self._value = initial
        self._listeners: List[BufferListener] = []
        self._lock = threading.Lock()

    @property
    def value(self) -> str:
        return self._value

    def update(self, transform: Transform) -> str:
        """
        Apply *transform* to the current value and store the result.

        Listeners are notified only when the value actually changed.
        """
        with self._lock:
            previous = self._value
            self._value = transform(previous)
            current = self._value
        if current != previous:
            for listener in list(self._listeners):
                listener(current)
        return current

    def set(self, text: str) -> str:
        return self.update(lambda _: text)

    def insert(self, position: int, text: str) -> str:
        """Insert *text* at *position* (clamped to the buffer)."""
        return self.update(lambda current: splice(current, position, text))

    def subscribe(self, listener: BufferListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def __str__(self) -> str:
        return self._value


# ── Transformations ──────────────────────────────────────────


def splice(text: str, position: int, insertion: str) -> str:
    position = max(0, min(position, len(text)))
    return text[:position] + insertion + text[position:]


def placeholder_markdown(original_name: str, batch_id: int, index: int) -> str:
    return f"![Uploading {original_name}...]({placeholder_token(batch_id, index)})"


def image_markdown(filename: str) -> str:
    return f"![image]({filename})"


def placeholder_block(placeholders: Sequence[str]) -> str:
    """Placeholders one per line, wrapped in newlines."""
    return "\n" + "\n".join(placeholders) + "\n"


def _placeholder_pattern(batch_id: int, index: int) -> str:
    # Keyed by the reference, not the alt text: the user may edit the alt
    return r"!\[[^\]]*\]\(" + re.escape(placeholder_token(batch_id, index)) + r"\)"


def replace_placeholder(text: str, batch_id: int, index: int, filename: str) -> str:
    """Swap one placeholder for the canonical image reference."""
    pattern = _placeholder_pattern(batch_id, index)
    return re.sub(pattern, lambda _: image_markdown(filename), text, count=1)


def remove_placeholder(text: str, batch_id: int, index: int) -> str:
    """Delete one placeholder together with its trailing newline."""
    pattern = _placeholder_pattern(batch_id, index) + r"\n?"
    return re.sub(pattern, "", text, count=1)
