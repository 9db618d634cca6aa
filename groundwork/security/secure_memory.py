"""
Sensitive values: variables declared `sensitive = true` and their copies
inside rendered plans, state listings and error messages.
"""

import json
import re
from typing import Any, Dict, Iterable, List, Optional

REDACTED = "[REDACTED]"

# shorter secrets only match as a whole token
SHORT_SECRET_LENGTH = 8


class SecureString:
    """
    Holds one sensitive value; str() and repr() never reveal it.

        >>> token = SecureString("abc123")
        >>> str(token)
        '[REDACTED]'
    """

    __slots__ = ("_value",)

    def __init__(self, value: str):
        self._value = value

    def __str__(self) -> str:
        return REDACTED

    def __repr__(self) -> str:
        return f"SecureString({REDACTED})"

    def get_value(self) -> str:
        return self._value


def _pattern(value: str) -> "re.Pattern":
    escaped = re.escape(value)
    if len(value) < SHORT_SECRET_LENGTH:
        return re.compile(rf"(?<![\w.-]){escaped}(?![\w.-])")
    return re.compile(escaped)


class OutputRedactor:
    """
    Replaces sensitive values in text shown to the user.

    Plans and state render attribute values as JSON, so each secret is
    matched both verbatim and in its JSON-escaped form. Secrets shorter
    than SHORT_SECRET_LENGTH are replaced only where they stand alone,
    so a value like "1" does not mangle "us-east-1".
    """

    def __init__(self, secrets: Optional[Iterable[SecureString]] = None):
        self.sensitive_values: List[str] = []
        self._patterns: Dict[str, "re.Pattern"] = {}
        for secret in secrets or []:
            self.add(secret)

    @classmethod
    def from_values(cls, values: Dict[str, Any]) -> "OutputRedactor":
        """Build a redactor from name -> value pairs; empty values are skipped."""
        return cls(
            SecureString(str(value))
            for value in values.values()
            if value is not None and str(value)
        )

    def add(self, secret: SecureString):
        value = secret.get_value()
        escaped = json.dumps(value)[1:-1]
        for candidate in {value, escaped}:
            if candidate and candidate not in self._patterns:
                self.sensitive_values.append(candidate)
                self._patterns[candidate] = _pattern(candidate)
        # a secret that contains another must be replaced first
        self.sensitive_values.sort(key=len, reverse=True)

    def redact(self, text: str) -> str:
        """Case-sensitive replacement of every known secret."""
        if not text:
            return text
        for value in self.sensitive_values:
            text = self._patterns[value].sub(REDACTED, text)
        return text
