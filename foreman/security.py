"""Security helpers for foreman.

Provides project-root confinement for paths handed to the agent,
secret redaction for anything written to logs, comments and run
logs, and input sanitization for text forwarded to subprocesses.
"""

import posixpath
import re
import unicodedata
from pathlib import Path
from typing import Optional

import structlog

logger = structlog.get_logger("foreman.policy")

_REDACTED = "[REDACTED]"

_SECRET_PATTERNS = [
    # key: value / key=value assignments
    re.compile(r"password\s*[:=]\s*['\"]?[^'\"\s]+['\"]?", re.IGNORECASE),
    re.compile(r"api[_-]?key\s*[:=]\s*['\"]?[^'\"\s]+['\"]?", re.IGNORECASE),
    re.compile(r"secret\s*[:=]\s*['\"]?[^'\"\s]+['\"]?", re.IGNORECASE),
    re.compile(r"token\s*[:=]\s*['\"]?[^'\"\s]+['\"]?", re.IGNORECASE),
    # Bearer token values in headers
    re.compile(r"bearer\s+[a-zA-Z0-9._\-/]+", re.IGNORECASE),
    # Provider API keys (sk-..., sk-ant-..., xai-...)
    re.compile(r"sk-[a-zA-Z0-9_-]{20,}"),
    re.compile(r"xai-[a-zA-Z0-9_-]{20,}"),
    # PEM key material
    re.compile(r"-----BEGIN [A-Z ]+ KEY-----[\s\S]*?-----END [A-Z ]+ KEY-----"),
]

_BIDI_CHARS = set("\u202a\u202b\u202c\u202d\u202e\u2066\u2067\u2068\u2069")


def redact_secrets(text: str) -> str:
    """Replace passwords, API keys, bearer tokens and PEM blocks with a marker."""
    for pattern in _SECRET_PATTERNS:
        text = pattern.sub(_REDACTED, text)
    return text


def normalize_relative_path(path: str) -> Optional[str]:
    """Normalize an agent-supplied path to a POSIX path relative to the project root.

    Pure string manipulation, no filesystem access. Returns None if
    the path is absolute or escapes the root via ``..``.
    """
    candidate = path.replace("\\", "/").strip()
    if not candidate:
        return ""
    if candidate.startswith("/") or re.match(r"^[a-zA-Z]:/", candidate):
        return None
    normalized = posixpath.normpath(candidate)
    if normalized == ".":
        return ""
    if normalized == ".." or normalized.startswith("../"):
        return None
    return normalized


def resolve_within_root(project_root: Path, path: str) -> Optional[Path]:
    """Resolve a path against the project root, refusing anything outside it.

    Relative paths are joined to the root; absolute paths are accepted
    only when they already live beneath it. Symlinks are resolved so a
    link pointing out of the tree is rejected too.
    """
    root = Path(project_root).resolve()
    try:
        candidate = Path(path)
        if not candidate.is_absolute():
            candidate = root / candidate
        resolved = candidate.resolve()
    except (OSError, RuntimeError, ValueError) as e:
        logger.error("path_resolution_error", path=path, error=str(e))
        return None

    if resolved == root or root in resolved.parents:
        return resolved

    logger.warning(
        "path_outside_project_root",
        requested_path=str(path),
        resolved_path=str(resolved),
        project_root=str(root),
    )
    return None


def strip_control_chars(text: str) -> str:
    """Remove control and bidi-override characters; keeps newlines and tabs."""
    text = "".join(
        ch for ch in text
        if ch in ("\n", "\r", "\t") or not unicodedata.category(ch).startswith("C")
    )
    return "".join(ch for ch in text if ch not in _BIDI_CHARS)


def sanitize_input(text: str, max_length: int = 100_000) -> str:
    """Strip control and bidi-override characters and enforce a length limit."""
    text = strip_control_chars(text)
    if len(text) > max_length:
        text = text[:max_length]
    return text
