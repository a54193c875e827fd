"""Automation driver interface for the third-party intake surface.

A driver is one exclusive interactive session (e.g. one browser tab)
owned by a single session runner. Concrete drivers live outside this
package; anything exposing these coroutines can be plugged in.
"""

from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

# Computer-use key names mapped to the names browser drivers expect.
KEY_ALIASES: dict[str, str] = {
    "/": "Divide",
    "\\": "Backslash",
    "alt": "Alt",
    "arrowdown": "ArrowDown",
    "arrowleft": "ArrowLeft",
    "arrowright": "ArrowRight",
    "arrowup": "ArrowUp",
    "backspace": "Backspace",
    "capslock": "CapsLock",
    "cmd": "Meta",
    "ctrl": "Control",
    "delete": "Delete",
    "end": "End",
    "enter": "Enter",
    "esc": "Escape",
    "home": "Home",
    "insert": "Insert",
    "option": "Alt",
    "pagedown": "PageDown",
    "pageup": "PageUp",
    "shift": "Shift",
    "space": " ",
    "super": "Meta",
    "tab": "Tab",
    "win": "Meta",
}

SCROLL_DIRECTIONS = frozenset({"up", "down", "left", "right"})


@dataclass(frozen=True)
class ViewCapture:
    """One captured view of the intake surface.

    Attributes:
        image_b64: Base64-encoded screenshot, empty if capture failed.
        text: Visible text of the view, used to detect page state.
    """

    image_b64: str
    text: str = ""


class AutomationDriver(Protocol):
    """Capability set the session runner drives."""

    async def navigate(self, url: str) -> None: ...

    async def capture_view(self) -> ViewCapture: ...

    async def click(self, target: str) -> None: ...

    async def type_text(self, text: str) -> None: ...

    async def press_key(self, key: str) -> None: ...

    async def scroll(self, direction: str, amount: int) -> None: ...

    async def wait(self, seconds: float) -> None: ...

    async def dispose(self) -> None: ...


DriverFactory = Callable[[], AutomationDriver]


def normalize_key(key: str) -> str:
    """Translate a key name or chord to driver key names.

    Args:
        key: Key such as "enter" or chord such as "ctrl+a".

    Returns:
        Normalized key, e.g. "Enter" or "Control+a".
    """
    parts = [part.strip() for part in key.split("+")] if len(key) > 1 else [key]
    return "+".join(KEY_ALIASES.get(part.lower(), part) for part in parts)
