"""Sanitizing provider messages before logging or returning them."""
import re

MAX_MESSAGE_LENGTH = 300

_SECRET_PATTERNS = [
    re.compile(r"(?i)\b(bearer)\s+[A-Za-z0-9._~+/=-]+"),
    re.compile(r"(?i)\b(authorization|api[_-]?key|access[_-]?token|token|secret|password|client[_-]?secret)\b\s*[:=]\s*\S+"),
    re.compile(r"(?i)(https?://)[^/\s:@]+:[^/\s@]+@"),
    re.compile(r"\b\d{22}\b"),
]


def sanitize_provider_message(message: object, limit: int = MAX_MESSAGE_LENGTH) -> str:
    """
    Strip credentials and account numbers from a provider message and cap its length.

    Args:
        message: Raw message or exception
        limit: Maximum length of the result

    Returns:
        Single-line sanitized message
    """
    text = " ".join(str(message or "").split())
    text = _SECRET_PATTERNS[0].sub(r"\1 [redacted]", text)
    text = _SECRET_PATTERNS[1].sub(lambda m: f"{m.group(1)}=[redacted]", text)
    text = _SECRET_PATTERNS[2].sub(r"\1[redacted]@", text)
    text = _SECRET_PATTERNS[3].sub("[redacted]", text)
    if len(text) > limit:
        text = text[: limit - 3] + "..."
    return text
