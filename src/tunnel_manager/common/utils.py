"""Validation and masking helpers shared across the tunnel manager."""

import re
from datetime import datetime, timezone
from typing import Any

MIN_PORT = 1
MAX_PORT = 65535

# RFC 1123 label: letters, digits, hyphens; no leading/trailing hyphen
_LABEL_RE = re.compile(r"^(?!-)[a-z0-9-]{1,63}(?<!-)$")


def utc_now() -> datetime:
    """Timezone-aware current time in UTC."""
    return datetime.now(timezone.utc)


def validate_port(port: int, port_name: str = "Port") -> None:
    """Validate port number range.

    Args:
        port: Port number to validate
        port_name: Name of the port for error messages

    Raises:
        ValueError: If port is not in valid range (1-65535)
    """
    if isinstance(port, bool) or not isinstance(port, int) or not (MIN_PORT <= port <= MAX_PORT):
        raise ValueError(f"{port_name} must be between {MIN_PORT} and {MAX_PORT}")


def validate_non_empty_string(value: str, field_name: str) -> str:
    """Validate that a string is not empty or only whitespace.

    Returns:
        Stripped string value

    Raises:
        ValueError: If string is empty or only whitespace
    """
    if not value or not value.strip():
        raise ValueError(f"{field_name} cannot be empty")
    return value.strip()


def normalize_subdomain(subdomain: str) -> str:
    """Lower-case and validate a single DNS label.

    Raises:
        ValueError: If the label is not a valid hostname label
    """
    label = validate_non_empty_string(subdomain, "Subdomain").lower()
    if not _LABEL_RE.match(label):
        raise ValueError(
            f"Invalid subdomain '{subdomain}': use letters, digits and hyphens only"
        )
    return label


def normalize_domain(domain: str) -> str:
    """Lower-case and validate a dotted domain name.

    Raises:
        ValueError: If any label is invalid or the name has no dot
    """
    name = validate_non_empty_string(domain, "Domain").lower().rstrip(".")
    parts = name.split(".")
    if len(parts) < 2:
        raise ValueError(f"Domain '{domain}' must contain at least one dot")
    for part in parts:
        if not _LABEL_RE.match(part):
            raise ValueError(f"Invalid domain part: {part}")
    return name


def mask_sensitive_data(
    value: str | None, mask_char: str = "*", show_chars: int = 4
) -> str:
    """Mask sensitive data for logging while keeping the tail for debugging.

    Args:
        value: Sensitive string to mask (e.g., API token)
        mask_char: Character to use for masking
        show_chars: Number of characters to show at the end

    Returns:
        Masked string safe for logging
    """
    if not value:
        return "<None>"

    if len(value) <= show_chars:
        return mask_char * len(value)

    masked_length = len(value) - show_chars
    return mask_char * masked_length + value[-show_chars:]


SENSITIVE_FIELDS = frozenset(
    {
        "api_token",
        "token",
        "password",
        "secret",
        "credential",
        "authorization",
    }
)


def sanitize_log_data(data: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of ``data`` with sensitive values masked.

    Args:
        data: Dictionary potentially containing sensitive data

    Returns:
        Sanitized dictionary safe for logging
    """
    sanitized = {}
    for key, value in data.items():
        if any(field in key.lower() for field in SENSITIVE_FIELDS):
            sanitized[key] = mask_sensitive_data(str(value) if value else None)
        else:
            sanitized[key] = value

    return sanitized
