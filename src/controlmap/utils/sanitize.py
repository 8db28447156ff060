"""Error message sanitization for job reports.

Job reports are published to external consumers, so messages raised by
catalog/registry backends are scrubbed before they are stored.
"""

from __future__ import annotations

import os
import re

MAX_ERROR_LENGTH = 500


def sanitize_error(message: str) -> str:
    """Redact credentials and local paths, and bound the message length."""
    if not message:
        return message

    sanitized = message
    # user:password@host in connection URLs
    sanitized = re.sub(r"(\w+://)[^/\s:@]+:[^/\s@]+@", r"\1[REDACTED]@", sanitized)
    sanitized = re.sub(r"Bearer\s+\S+", "Bearer [REDACTED]", sanitized)
    sanitized = re.sub(r"(?i)(api[-_]?key|token|secret|password)\s*[:=]\s*\S+", r"\1=[REDACTED]", sanitized)

    home = os.environ.get("USERPROFILE") or os.environ.get("HOME") or ""
    if home and home != "/":
        sanitized = sanitized.replace(home, "[USER_HOME]")

    if len(sanitized) > MAX_ERROR_LENGTH:
        sanitized = sanitized[: MAX_ERROR_LENGTH - 3] + "..."
    return sanitized
