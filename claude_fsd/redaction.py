"""Secret redaction for anything that is logged, persisted or sent back to the agent.

The default pattern list is not exhaustive. Projects can extend it through
`extra_secret_patterns` in fsd.toml.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable

REDACTED = "***REDACTED***"

# Order matters: specific key formats first, assignments next, generic hex last.
DEFAULT_SECRET_PATTERNS: list[str] = [
    # API keys with well-known prefixes
    r"\bsk-[a-zA-Z0-9_-]{20,}",                 # Anthropic (sk-ant-...), OpenAI
    r"\batk_[a-fA-F0-9]{64}\b",                 # platform usage key
    r"\b[sp]k_(?:live|test)_[a-zA-Z0-9_-]{20,}",  # Stripe
    r"\bgh[pousr]_[a-zA-Z0-9]{36}\b",           # GitHub tokens
    r"\bglpat-[a-zA-Z0-9_-]{20,}",              # GitLab PAT
    r"\bxox[baprs]-[a-zA-Z0-9-]{10,}",          # Slack
    r"\bAKIA[0-9A-Z]{16}\b",                    # AWS access key id
    r"\beyJ[a-zA-Z0-9_-]{20,}\.[a-zA-Z0-9_-]{20,}\.[a-zA-Z0-9_-]{20,}",  # JWT
    r"-----BEGIN (?:RSA |EC |OPENSSH |DSA )?PRIVATE KEY-----[\s\S]*?"
    r"(?:-----END (?:RSA |EC |OPENSSH |DSA )?PRIVATE KEY-----|\Z)",
    # Values assigned to secret-looking variables
    r"\b[A-Z0-9_]*(?:_KEY|_SECRET|_TOKEN|_PASSWORD)\s*=\s*[\"']?[^\"'\s]{8,}[\"']?",
    r"\b(?:password|passwd|pwd)\s*[=:]\s*[\"']?[^\"'\s]{4,}[\"']?",
    # Long hex strings (hex keys, raw hashes)
    r"\b[a-fA-F0-9]{32,64}\b",
]


class SecretRedactor:
    """Replace every match of a configurable pattern list with a fixed placeholder.

    Never raises, and applying it twice gives the same result as applying it
    once: the placeholder itself matches none of the patterns.
    """

    def __init__(
        self,
        patterns: Iterable[str | re.Pattern[str]] | None = None,
        placeholder: str = REDACTED,
    ):
        source = DEFAULT_SECRET_PATTERNS if patterns is None else patterns
        self.placeholder = placeholder
        self.patterns: list[re.Pattern[str]] = [
            p if isinstance(p, re.Pattern) else re.compile(p, re.IGNORECASE)
            for p in source
        ]

    def with_patterns(self, extra: Iterable[str | re.Pattern[str]]) -> SecretRedactor:
        """Return a new redactor with additional patterns appended."""
        return SecretRedactor([*self.patterns, *extra], placeholder=self.placeholder)

    def redact(self, text: str) -> str:
        if not text:
            return text
        result = text
        for pattern in self.patterns:
            result = pattern.sub(self.placeholder, result)
        return result

    __call__ = redact


_default_redactor = SecretRedactor()


def redact_secrets(text: str) -> str:
    """Redact with the default pattern list."""
    return _default_redactor.redact(text)


class RedactingFilter(logging.Filter):
    """Logging filter that scrubs secrets from the rendered message."""

    def __init__(self, redactor: SecretRedactor | None = None):
        super().__init__()
        self.redactor = redactor or _default_redactor

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = self.redactor.redact(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True
