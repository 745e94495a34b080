"""Log sanitization for credential extraction output.

Extractor commands print keychain payloads and OAuth JSON; their stderr can
end up in exception messages and logs. Everything derived from extractor
output passes through LogSanitizer before it is logged or raised.

Rules:
- Redact too much rather than too little
- Token-shaped values are matched by pattern
- A secret the caller already holds is removed verbatim, wherever it appears
"""

import re
from re import Pattern


class LogSanitizer:
    """Sanitize sensitive data from logs and error messages.

    All methods are class methods and can be called without instantiation.
    """

    REDACTED = "[REDACTED]"

    # Order matters: more specific patterns come first
    SECRET_PATTERNS: dict[str, Pattern] = {
        # OAuth credential JSON: "accessToken": "...", "refresh_token": "..."
        "json_token_field": re.compile(
            r'("(?:access|refresh|id)_?token"\s*:\s*")([^"]+)', re.IGNORECASE
        ),
        "authorization_bearer": re.compile(r"(Authorization:\s*Bearer\s+)([^\s]+)", re.IGNORECASE),
        "api_key_literal": re.compile(r"(\b)(sk-[A-Za-z0-9_\-]{16,})"),
        "password": re.compile(r'(password["\']?\s*[:=]\s*["\']?)([^\s"\'&,\)]+)', re.IGNORECASE),
        "token_assignment": re.compile(
            r'([^a-zA-Z]token["\']?\s*[:=]\s*["\']?)([^\s"\'&,\)]+)', re.IGNORECASE
        ),
        "secret_phrase": re.compile(r"(secret:\s*)([^\s,\)]+)", re.IGNORECASE),
    }

    @classmethod
    def sanitize(cls, message: str) -> str:
        """Redact secret-looking values from a message.

        Examples:
            >>> LogSanitizer.sanitize('{"accessToken": "abc123"}')
            '{"accessToken": "[REDACTED]"}'
            >>> LogSanitizer.sanitize("password=hunter2")
            'password=[REDACTED]'
        """
        if not isinstance(message, str):
            message = str(message)

        result = message
        for pattern in cls.SECRET_PATTERNS.values():
            result = pattern.sub(r"\1" + cls.REDACTED, result)
        return result

    @classmethod
    def redact_secret(cls, message: str, secret: str | None) -> str:
        """Remove a known secret verbatim, then apply pattern redaction."""
        if secret:
            message = message.replace(secret, cls.REDACTED)
        return cls.sanitize(message)

    @classmethod
    def create_safe_error_message(cls, error: Exception, context: str = "") -> str:
        """Create error message with secrets sanitized.

        Examples:
            >>> err = ValueError("keychain said password=abc123")
            >>> LogSanitizer.create_safe_error_message(err, "Extraction")
            'Extraction: keychain said password=[REDACTED]'
        """
        sanitized_msg = cls.sanitize(str(error))
        if context:
            return f"{context}: {sanitized_msg}"
        return sanitized_msg


__all__ = ["LogSanitizer"]
