"""Scrub credentials from text before it is stored, displayed or sent out."""

from __future__ import annotations

import re
from typing import Pattern

REDACTED = "[REDACTED]"

_SECRET_PATTERNS: tuple[Pattern[str], ...] = (
    re.compile(r"ghp_[A-Za-z0-9]{36}"),
    re.compile(r"gho_[A-Za-z0-9]{36}"),
    re.compile(r"github_pat_[A-Za-z0-9_]{82}"),
    re.compile(r"ghs_[A-Za-z0-9]{36}"),
    re.compile(r"ghr_[A-Za-z0-9]{76}"),
    re.compile(r"Bearer\s+[A-Za-z0-9\-._~+/]+=*"),
    re.compile(r"token\s*[:=]\s*[\"']?[A-Za-z0-9\-._~+/]{20,}[\"']?", re.IGNORECASE),
    re.compile(r"password\s*[:=]\s*[\"']?[^\s\"']{8,}[\"']?", re.IGNORECASE),
    re.compile(r"-----BEGIN\s+(?:RSA|DSA|EC|OPENSSH)?\s*PRIVATE KEY-----[\s\S]*?-----END"),
    re.compile(r"AKIA[0-9A-Z]{16}"),
    re.compile(r"sk-[A-Za-z0-9]{48}"),
    re.compile(r"npm_[A-Za-z0-9]{36}"),
)


def redact(text: str | None) -> str:
    """Replace anything that looks like a credential with ``[REDACTED]``."""
    if not text:
        return text or ""
    result = text
    for pattern in _SECRET_PATTERNS:
        result = pattern.sub(REDACTED, result)
    return result


__all__ = ["REDACTED", "redact"]
