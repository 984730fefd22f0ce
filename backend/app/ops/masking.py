from __future__ import annotations

import json
import re
from typing import Any, Dict, Optional

EMAIL_PATTERN = re.compile(r"[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}", re.IGNORECASE)
URL_PATTERN = re.compile(r"https?://\S+", re.IGNORECASE)
# provider secrets and bearer-style tokens (sk_live_..., whsec_..., long hex/base64 blobs)
TOKEN_PATTERN = re.compile(r"\b(?:sk|pk|rk|whsec|cs|pi|cus)_[A-Za-z0-9_]{8,}\b|\b[A-Za-z0-9+/]{40,}={0,2}")

MAX_VALUE_LENGTH = 160
MAX_REASON_LENGTH = 120


def mask_email(email: Optional[str]) -> Optional[str]:
    if not email or "@" not in email:
        return None
    local, domain = email.split("@", 1)
    masked_local = "*" if len(local) <= 1 else f"{local[0]}***"
    parts = domain.split(".")
    masked_domain = ".".join(
        part if idx == len(parts) - 1 else f"{part[:1]}{'*' * max(0, len(part) - 1)}"
        for idx, part in enumerate(parts)
    )
    return f"{masked_local}@{masked_domain}"


def mask_text(value: Optional[str], *, max_length: int = MAX_VALUE_LENGTH) -> Optional[str]:
    """Redact emails, URLs and tokens inside free text, then truncate."""
    if value is None:
        return None
    text = str(value)
    text = URL_PATTERN.sub("[url-redacted]", text)
    text = EMAIL_PATTERN.sub("[email-redacted]", text)
    text = TOKEN_PATTERN.sub("[token-redacted]", text)
    text = re.sub(r"\s+", " ", text).strip()
    if len(text) > max_length:
        return f"{text[:max_length]}..."
    return text


def mask_reason(value: Optional[str]) -> Optional[str]:
    return mask_text(value, max_length=MAX_REASON_LENGTH)


def sanitize_note(note: Optional[str], *, max_length: int = 280) -> Optional[str]:
    if not note:
        return None
    trimmed = re.sub(r"\s+", " ", note).strip()[:max_length]
    if not trimmed:
        return None
    return URL_PATTERN.sub("[url-redacted]", trimmed)


def sanitize_case_text(value: Optional[str], *, max_length: int = 800, keep_urls: bool = False) -> Optional[str]:
    """
    Operator-authored case text: trimmed and truncated, emails and tokens
    redacted. Line breaks survive; URLs are redacted unless ``keep_urls``.
    """
    if not value:
        return None
    text = str(value).strip()[:max_length].strip()
    if not text:
        return None
    if not keep_urls:
        text = URL_PATTERN.sub("[url-redacted]", text)
    text = EMAIL_PATTERN.sub("[email-redacted]", text)
    return TOKEN_PATTERN.sub("[token-redacted]", text)


def mask_token(value: Optional[str]) -> str:
    """Collapse identifiers that look like URLs or emails; used when ranking repeat codes."""
    if not value:
        return "unknown"
    lowered = str(value).lower()
    if lowered.startswith("http") or "@" in lowered:
        return "[masked]"
    return str(value)


def mask_meta(meta: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Produce a JSON-safe copy of ``meta`` fit for persistence or outbound payloads.

    Strings matching an email or URL are replaced outright, other strings are
    token-redacted and truncated, nested dicts are masked recursively, and any
    other structure is serialized and kept only if short.
    """
    if not meta or not isinstance(meta, dict):
        return {}
    safe: Dict[str, Any] = {}
    for key, value in meta.items():
        if value is None:
            safe[key] = None
            continue
        if isinstance(value, bool) or isinstance(value, (int, float)):
            safe[key] = value
            continue
        if isinstance(value, str):
            if EMAIL_PATTERN.fullmatch(value.strip()):
                safe[key] = "[email-redacted]"
            elif URL_PATTERN.match(value.strip()):
                safe[key] = "[url-redacted]"
            else:
                safe[key] = mask_text(value)
            continue
        if isinstance(value, dict):
            safe[key] = mask_meta(value)
            continue
        if isinstance(value, (list, tuple)):
            items = [_mask_item(item) for item in value]
            try:
                summary = json.dumps(items, default=str)
            except (TypeError, ValueError):
                summary = ""
            safe[key] = items if summary and len(summary) <= MAX_VALUE_LENGTH * 4 else "[omitted]"
            continue
        safe[key] = mask_text(str(value))
    return safe


def _mask_item(item: Any) -> Any:
    if isinstance(item, dict):
        return mask_meta(item)
    if isinstance(item, str):
        return mask_text(item)
    return item
