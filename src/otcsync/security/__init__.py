from otcsync.security.redaction import REDACTED, redact_value, sanitize_text

__all__ = ["REDACTED", "redact_value", "sanitize_text"]
