"""Secret redaction helpers for logs, config snapshots and operator replies."""

from __future__ import annotations

import hashlib
import json
import re
from typing import Any, Mapping

__all__ = [
    "mask_email",
    "mask_secret",
    "mask_service_account",
    "mask_webhook",
    "sanitize_data",
    "sanitize_text",
]


_SECRET_FRAGMENT_RE = re.compile(
    r"(?<![A-Za-z0-9_-])"
    r"(?P<secret>(?=[A-Za-z0-9_-]*[A-Za-z])(?=[A-Za-z0-9_-]*\d)[A-Za-z0-9_-]{32,})"
    r"(?![A-Za-z0-9_-])"
)
_DISCORD_TOKEN_RE = re.compile(r"[A-Za-z0-9_-]{24}\.[A-Za-z0-9_-]{6}\.[A-Za-z0-9_-]{27,}")
_WEBHOOK_RE = re.compile(
    r"(?P<base>https://(?:ptb\.|canary\.)?discord(?:app)?\.com/api/webhooks/\d+/)(?P<token>[^\s?&\"']+)",
    re.I,
)
_PRIVATE_KEY_BLOCK_RE = re.compile(r"-----BEGIN [^-]+-----.*?-----END [^-]+-----", re.DOTALL)
_GOOGLE_API_KEY_RE = re.compile(r"AIza[0-9A-Za-z\-_]{35}")
_OAUTH_TOKEN_RE = re.compile(r"ya29\.[0-9A-Za-z\-_]{20,}")
_SECRET_FIELD_RE = re.compile(
    r"(?P<prefix>(token|secret|password|credential|key)\s*[=:]\s*)(?P<secret>[^\s,;]+)",
    re.IGNORECASE,
)
_JSON_SECRET_FIELD_RE = re.compile(
    r"(?P<prefix>\"(?:token|secret|password|credential|key)\"\s*:\s*\")(?P<secret>.*?)(?P<suffix>\")",
    re.IGNORECASE | re.DOTALL,
)
_SERVICE_ACCOUNT_INLINE_RE = re.compile(
    r"\{[^{}]*\"type\"\s*:\s*\"service_account\".*?\}",
    re.DOTALL,
)


def _stable_suffix(text: str) -> str:
    digest = hashlib.sha1(text.encode("utf-8", "ignore")).hexdigest()
    return digest[:4]


def mask_secret(text: str) -> str:
    suffix = _stable_suffix(text)
    return f"***{suffix}"


def mask_service_account(text: str) -> str:
    suffix = _stable_suffix(text)
    length = len(text)
    return f"***sa-json:len={length}-{suffix}"


def mask_webhook(url: str) -> str:
    """Keep the webhook host and id visible, hide the token."""

    return _WEBHOOK_RE.sub(
        lambda match: f"{match.group('base')}{mask_secret(match.group('token'))}", url
    )


def mask_email(address: str) -> str:
    local, sep, domain = str(address).partition("@")
    if not sep:
        return mask_secret(address)
    head = local[:1] or "*"
    return f"{head}***@{domain}"


def _looks_like_service_account(text: str) -> bool:
    if "service_account" not in text or "private_key" not in text:
        return False
    try:
        data = json.loads(text)
    except ValueError:
        return False
    if not isinstance(data, Mapping):
        return False
    type_value = data.get("type")
    return str(type_value) == "service_account" and "private_key" in data


def _replace(pattern: re.Pattern[str], text: str, replacer) -> str:
    return pattern.sub(lambda match: replacer(match.group(0), match), text)


def sanitize_text(value: Any) -> Any:
    if value is None:
        return value
    text = str(value)
    if not text:
        return text

    stripped = text.strip()
    if _looks_like_service_account(stripped):
        return mask_service_account(stripped)

    sanitized = text

    def generic(mask_target: str, _match: re.Match[str]) -> str:
        return mask_secret(mask_target)

    sanitized = _replace(_SERVICE_ACCOUNT_INLINE_RE, sanitized, lambda seg, _: mask_service_account(seg))
    sanitized = _replace(_PRIVATE_KEY_BLOCK_RE, sanitized, generic)
    sanitized = _replace(
        _WEBHOOK_RE,
        sanitized,
        lambda _seg, match: f"{match.group('base')}{mask_secret(match.group('token'))}",
    )
    sanitized = _replace(_DISCORD_TOKEN_RE, sanitized, generic)
    sanitized = _replace(_GOOGLE_API_KEY_RE, sanitized, generic)
    sanitized = _replace(_OAUTH_TOKEN_RE, sanitized, generic)
    sanitized = _replace(_JSON_SECRET_FIELD_RE, sanitized, lambda _seg, match: f"{match.group('prefix')}{mask_secret(match.group('secret'))}{match.group('suffix')}")
    sanitized = _replace(_SECRET_FIELD_RE, sanitized, lambda _seg, match: f"{match.group('prefix')}{mask_secret(match.group('secret'))}")
    sanitized = _replace(_SECRET_FRAGMENT_RE, sanitized, generic)

    return sanitized


def sanitize_data(value: Any) -> Any:
    if isinstance(value, str):
        return sanitize_text(value)
    if isinstance(value, Mapping):
        return {key: sanitize_data(val) for key, val in value.items()}
    if isinstance(value, tuple):
        return tuple(sanitize_data(item) for item in value)
    if isinstance(value, list):
        return [sanitize_data(item) for item in value]
    return value
