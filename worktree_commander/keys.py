"""Named keys and control chords for ``tmux send-keys``."""

import string

from .errors import PermanentFailure

# Accepted names (lowercase, without separators) -> tmux key names
SPECIAL_KEYS = {
    "enter": "Enter",
    "tab": "Tab",
    "escape": "Escape",
    "esc": "Escape",
    "backspace": "BSpace",
    "delete": "DC",
    "up": "Up",
    "down": "Down",
    "left": "Left",
    "right": "Right",
    "home": "Home",
    "end": "End",
    "pageup": "PPage",
    "pagedown": "NPage",
}

CONTROL_CHARS = set(string.ascii_lowercase) | set("@[\\]^_")


def special_key(name: str) -> str:
    """
    Map a key name such as ``Escape`` or ``page-up`` to its tmux name.

    Raises:
        PermanentFailure: unknown key
    """
    normalized = name.strip().lower().replace("-", "").replace("_", "").replace(" ", "")
    key = SPECIAL_KEYS.get(normalized)
    if key is None:
        raise PermanentFailure(f"Unknown key: {name!r}")
    return key


def control_key(char: str) -> str:
    """
    tmux name of the Ctrl chord for ``char`` (``c`` -> ``C-c``).

    Raises:
        PermanentFailure: not a single letter or one of ``@[\\]^_``
    """
    if len(char) != 1 or char.lower() not in CONTROL_CHARS:
        raise PermanentFailure(f"Invalid control character: {char!r}")
    return f"C-{char.lower()}"
