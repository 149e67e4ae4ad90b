"""Logging filter that keeps platform tokens out of log output.

Two sources of secrets are scrubbed:

* configuration values whose *keys* match ``logging.redact_patterns``
  (shell-style globs), collected once at startup;
* auth and refresh tokens learned at runtime from INSTALL, UPDATE and EVENT
  messages, registered through :meth:`SecretRedactingFilter.add_secret`.

``Bearer <token>`` fragments are masked even when the token was never
registered.
"""

from __future__ import annotations

import fnmatch
import logging
import re
from typing import Any, Iterable

REDACTED = "[REDACTED]"

_BEARER_RE = re.compile(r"(Bearer:?\s+)[A-Za-z0-9._~+/=-]+")
_MIN_SECRET_LEN = 4


class SecretRedactingFilter(logging.Filter):
    """A :class:`logging.Filter` that scrubs secret values from records."""

    def __init__(self, secret_values: Iterable[str] | None = None) -> None:
        super().__init__()
        self._secrets: set[str] = set()
        for value in secret_values or []:
            self.add_secret(value)

    def add_secret(self, value: str) -> None:
        """Register a secret value at runtime. Very short values are ignored."""
        if isinstance(value, str) and len(value) >= _MIN_SECRET_LEN:
            self._secrets.add(value)

    def filter(self, record: logging.LogRecord) -> bool:
        # Render first so secrets passed as %-args are caught too.
        try:
            message = record.getMessage()
        except (TypeError, ValueError):
            return True  # let the handler report the formatting error
        redacted = self.redact(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True

    def redact(self, value: Any) -> Any:
        if not isinstance(value, str):
            return value
        # Longest first, so a token containing another secret is fully masked.
        for secret in sorted(self._secrets, key=len, reverse=True):
            if secret in value:
                value = value.replace(secret, REDACTED)
        return _BEARER_RE.sub(rf"\g<1>{REDACTED}", value)


def collect_secret_values(
    config_dict: dict[str, Any],
    patterns: list[str] | None = None,
) -> list[str]:
    """Walk a config dict and collect string values whose keys match *patterns*.

    Matching is case-insensitive. Empty values are skipped.
    """
    if not patterns:
        return []
    lowered = [p.lower() for p in patterns]
    found: list[str] = []

    def _walk(obj: Any) -> None:
        if isinstance(obj, dict):
            for key, val in obj.items():
                if isinstance(val, str) and val and any(
                    fnmatch.fnmatch(str(key).lower(), p) for p in lowered
                ):
                    found.append(val)
                _walk(val)
        elif isinstance(obj, (list, tuple)):
            for item in obj:
                _walk(item)

    _walk(config_dict)
    return found
