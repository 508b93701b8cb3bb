"""Input sanitization for untrusted client text.

Usernames and chat messages arrive straight from clients. These helpers
normalize them before they are stored on a participant or broadcast to a
room. They never raise: unusable input is replaced (usernames) or reduced to
an empty string that callers treat as "do not relay" (messages).
"""

import re
from typing import Any, Final

MAX_USERNAME_LENGTH: Final[int] = 50
MAX_MESSAGE_LENGTH: Final[int] = 1000
DEFAULT_USERNAME: Final[str] = "Anonymous"

# Anything outside ASCII letters, digits, whitespace, hyphen, underscore, period
_DISALLOWED_USERNAME_CHARS = re.compile(r"[^a-zA-Z0-9\s\-_.]")


def sanitize_username(value: Any) -> str:
    """Normalize a display name.

    The input is trimmed, cut to ``MAX_USERNAME_LENGTH`` characters, and then
    stripped of every disallowed character.

    Args:
        value: Raw username from the client (any type, possibly None)

    Returns:
        Sanitized username, or ``DEFAULT_USERNAME`` if nothing usable remains
    """
    if not value or not isinstance(value, str):
        return DEFAULT_USERNAME

    truncated = value.strip()[:MAX_USERNAME_LENGTH]
    cleaned = _DISALLOWED_USERNAME_CHARS.sub("", truncated)
    return cleaned or DEFAULT_USERNAME


def sanitize_message(value: Any) -> str:
    """Normalize a chat message.

    Args:
        value: Raw message text from the client (any type, possibly None)

    Returns:
        Trimmed text cut to ``MAX_MESSAGE_LENGTH`` characters, or ``""`` for
        non-string or absent input
    """
    if not value or not isinstance(value, str):
        return ""

    return value.strip()[:MAX_MESSAGE_LENGTH]
