"""Error sanitization utilities to prevent information leakage."""

import re


# Patterns that might expose sensitive information
SENSITIVE_PATTERNS = [
    r"access[_\s]?key[_\s]?id[:\s]+([A-Z0-9]{20})",
    r"secret[_\s]?access[_\s]?key[:\s]+([A-Za-z0-9/+=]{40})",
    r"session[_\s]?token[:\s]+([A-Za-z0-9/+=]+)",
]

# Fields to redact completely
SENSITIVE_FIELDS = {
    "access_key_id",
    "secret_access_key",
    "session_token",
    "password",
    "secret",
    "credentials",
    "token",
}

# AWS access key IDs may show up bare in signature errors
_ACCESS_KEY_ID_RE = re.compile(r"\b(AKIA|ASIA)[A-Z0-9]{16}\b")

# Condition messages are shown by kubectl; keep them readable
MAX_MESSAGE_LENGTH = 1024


def sanitize_error_message(message: str) -> str:
    """Sanitize error message to remove sensitive information.

    Role and policy ARNs are kept: they are part of the Binding spec and
    users need them to act on a failure.

    Args:
        message: Original error message

    Returns:
        Sanitized error message with sensitive data redacted
    """
    sanitized = message

    for pattern in SENSITIVE_PATTERNS:
        sanitized = re.sub(pattern, "[REDACTED]", sanitized, flags=re.IGNORECASE)

    for field in SENSITIVE_FIELDS:
        sanitized = re.sub(
            rf"\b{field}[:=\s]+([^\s,;\)]+)",
            f"{field}: [REDACTED]",
            sanitized,
            flags=re.IGNORECASE,
        )

    sanitized = _ACCESS_KEY_ID_RE.sub("[REDACTED]", sanitized)

    if len(sanitized) > MAX_MESSAGE_LENGTH:
        sanitized = sanitized[: MAX_MESSAGE_LENGTH - 3] + "..."
    return sanitized


def sanitize_exception(error: Exception) -> str:
    """Sanitize exception message."""
    error_msg = str(error) or type(error).__name__
    return sanitize_error_message(error_msg)

