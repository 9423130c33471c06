from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any

REDACTED = "***REDACTED***"

_SENSITIVE_PARTS = (
    "secret",
    "password",
    "passphrase",
    "token",
    "api_key",
    "apikey",
    "service_role",
    "authorization",
)
_SENSITIVE_EXACT_KEYS = {"auth", "keypair", "private_key"}

# Hosted RPC providers embed credentials in the URL query string.
_QUERY_PARAM_PATTERN = re.compile(
    r"([?&])(api-key|api_key|apikey|token|access_token)=([^&\s\"']+)", re.IGNORECASE
)
_BEARER_PATTERN = re.compile(r"(?i)(authorization\s*[:=]\s*)(bearer\s+)?([^\s,;]+)")


def _is_sensitive_key(key: object) -> bool:
    normalized = str(key).replace("-", "_").casefold()
    if normalized in _SENSITIVE_EXACT_KEYS:
        return True
    return any(part in normalized for part in _SENSITIVE_PARTS)


def _mask_secret(value: str) -> str:
    if not value:
        return REDACTED
    if len(value) > 8:
        return f"{value[:4]}{'*' * (len(value) - 8)}{value[-4:]}"
    return "*" * len(value)


def sanitize_text(text: str) -> str:
    redacted = _QUERY_PARAM_PATTERN.sub(
        lambda m: f"{m.group(1)}{m.group(2)}={_mask_secret(m.group(3))}", text
    )
    return _BEARER_PATTERN.sub(lambda m: f"{m.group(1)}{m.group(2) or ''}[REDACTED]", redacted)


def sanitize_mapping(d: Mapping[str, Any]) -> dict[str, Any]:
    sanitized: dict[str, Any] = {}
    for key, value in d.items():
        key_str = str(key)
        if _is_sensitive_key(key_str):
            sanitized[key_str] = _mask_secret(str(value)) if value is not None else REDACTED
            continue
        sanitized[key_str] = redact_value(value)
    return sanitized


def redact_value(value: Any) -> Any:
    if isinstance(value, Mapping):
        return sanitize_mapping(value)
    if isinstance(value, list):
        return [redact_value(item) for item in value]
    if isinstance(value, tuple):
        return tuple(redact_value(item) for item in value)
    if isinstance(value, str):
        return sanitize_text(value)
    return value
