"""Sanitization helpers for worker output persisted in task results and memory."""

from __future__ import annotations

import re
from collections.abc import Callable

_MAX_PREVIEW_CHARS = 2_000

_Replacement = str | Callable[[re.Match[str]], str]

_REPLACEMENTS: tuple[tuple[re.Pattern[str], _Replacement], ...] = (
    (
        re.compile(r"(?i)\b(bearer)\s+[a-z0-9._\-]{8,}\b"),
        r"\1 [redacted-token]",
    ),
    (
        re.compile(r"(?i)\b(sk-[a-z0-9\-]{8,})\b"),
        "[redacted-token]",
    ),
    (
        re.compile(r"\b(gh[pousr]_[A-Za-z0-9]{20,}|github_pat_[A-Za-z0-9_]{20,})\b"),
        "[redacted-token]",
    ),
    (
        re.compile(
            r"(?i)\b(agent_cluster|github|gh|openai|anthropic|gemini|zai)[a-z0-9_]*_?(api_)?"
            r"(key|token)\b\s*[:=]\s*['\"]?[^'\" \n\r\t]+['\"]?",
        ),
        "[redacted-secret]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|key|signature|auth)=[^&\s]+)"),
        lambda match: match.group(1).split("=")[0] + "=[redacted]",
    ),
)

_ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;?]*[ -/]*[@-~]")


def sanitize_preview(text: str, *, max_chars: int = _MAX_PREVIEW_CHARS) -> str:
    """Redact obvious secrets and clamp to the first ``max_chars``."""

    redacted = _redact(text)
    if len(redacted) <= max_chars:
        return redacted
    return redacted[:max_chars]


def sanitize_tail(text: str, *, max_chars: int = _MAX_PREVIEW_CHARS) -> str:
    """Redact obvious secrets and clamp to the last ``max_chars``."""

    redacted = _redact(text)
    if len(redacted) <= max_chars:
        return redacted
    return redacted[-max_chars:]


def _redact(text: str) -> str:
    compact = _ANSI_ESCAPE.sub("", text).strip()
    if not compact:
        return ""
    for pattern, replacement in _REPLACEMENTS:
        compact = pattern.sub(replacement, compact)
    return compact
