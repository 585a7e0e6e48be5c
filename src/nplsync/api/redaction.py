"""
Secret redaction for log lines and health/API error output.

Device credentials, ThingsBoard passwords, bearer tokens and broker URLs
must never reach a log sink or an HTTP response body. Two entry points:

    redact_text(message)      -- regex scrub of free text (exception messages,
                                 response bodies echoed by the legacy API)
    redact_mapping(record)    -- deep copy of a dict with secret-named keys
                                 replaced by ``[REDACTED]``

Usage:
    from nplsync.api.redaction import redact_mapping, redact_text

    logger.error(f"Legacy call failed: {redact_text(str(e))}")
    logger.debug(f"Payload: {redact_mapping(payload)}")

Patterns are compiled once. Order matters: URL credentials are scrubbed
before generic ``password=`` matches so the replacement stays readable.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Optional

REDACTED = "[REDACTED]"

# Keys whose values are always secrets, compared case-insensitively
SECRET_KEYS = frozenset({
    "credentials",
    "credentialsid",
    "credentialsvalue",
    "password",
    "token",
    "refreshtoken",
    "accesstoken",
    "authorization",
    "secret",
})


@dataclass
class RedactionResult:
    """Result of scrubbing one message.

    Attributes:
        text: Scrubbed message, safe to log or return
        redaction_count: Number of substitutions made
    """

    text: str
    redaction_count: int

    @property
    def was_redacted(self) -> bool:
        return self.redaction_count > 0


class Redactor:
    """Regex-based scrubber for free-text messages."""

    DEFAULT_PATTERNS: list[tuple[str, str]] = [
        # Broker and other URLs with embedded credentials
        (r'(amqps?|https?)://[^\s:/@]+:[^\s@]+@', r'\1://[REDACTED]@'),

        # Authentication tokens
        (r'bearer\s+[A-Za-z0-9_\-\.]+', 'Bearer [REDACTED]'),
        (r'\beyJ[A-Za-z0-9_-]*\.eyJ[A-Za-z0-9_-]*\.[A-Za-z0-9_-]+\b', '[JWT_REDACTED]'),
        (r'"(token|refreshToken)"\s*:\s*"[^"]*"', r'"\1": "[REDACTED]"'),
        (r'(refresh[-_]?token|access[-_]?token)[=:\s]+[^\s,;]+', r'\1=[REDACTED]'),

        # Credentials
        (r'"(password|credentials)"\s*:\s*"[^"]*"', r'"\1": "[REDACTED]"'),
        (r'password[=:\s]+[^\s,;]+', 'password=[REDACTED]'),
        (r'credentials[=:\s]+[^\s,;{]+', 'credentials=[REDACTED]'),

        # Environment variables holding secrets
        (r'\b(NPL_TOKEN|THINGSBOARD_PASSWORD|RABBITMQ_PASSWORD)=\S+', r'\1=[REDACTED]'),
    ]

    def __init__(
        self,
        patterns: Optional[list[tuple[str, str]]] = None,
        max_message_length: int = 1000,
    ):
        self.patterns = list(patterns or self.DEFAULT_PATTERNS)
        self.max_message_length = max_message_length
        self._compiled = [
            (re.compile(pattern, re.IGNORECASE), replacement)
            for pattern, replacement in self.patterns
        ]

    def redact(self, message: str) -> RedactionResult:
        if not message:
            return RedactionResult(text="", redaction_count=0)

        text = message
        count = 0
        for pattern, replacement in self._compiled:
            text, n = pattern.subn(replacement, text)
            count += n

        if len(text) > self.max_message_length:
            text = text[: self.max_message_length] + "... [TRUNCATED]"

        return RedactionResult(text=text, redaction_count=count)

    def is_safe(self, message: str) -> bool:
        return not any(pattern.search(message) for pattern, _ in self._compiled)


_default_redactor: Optional[Redactor] = None


def get_redactor() -> Redactor:
    global _default_redactor
    if _default_redactor is None:
        _default_redactor = Redactor()
    return _default_redactor


def redact_text(message: str) -> str:
    """Scrub secrets from a free-text message.

    Example:
        >>> redact_text("login failed: password=hunter2")
        'login failed: password=[REDACTED]'
    """
    return get_redactor().redact(message).text


def redact_mapping(value: Any) -> Any:
    """Return a copy of ``value`` with secret-named keys blanked, recursively."""
    if isinstance(value, dict):
        out = {}
        for key, item in value.items():
            if isinstance(key, str) and key.lower() in SECRET_KEYS and item not in (None, ""):
                out[key] = REDACTED
            else:
                out[key] = redact_mapping(item)
        return out
    if isinstance(value, list):
        return [redact_mapping(item) for item in value]
    return value
