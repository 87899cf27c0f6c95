"""
Forge Utilities

File I/O helpers, live log, secret redaction and name validation.
"""
from __future__ import annotations

import datetime as dt
import json
import os
import re
import secrets
import tempfile
from pathlib import Path
from typing import Any, Dict, IO, Optional

import logging

logger = logging.getLogger("forge")

# Artifact and task names (security: prevent path traversal)
VALID_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]*$")

# Global live log file handle (set by the CLI)
_live_log: Optional[IO[str]] = None


def set_live_log(log_file: Optional[IO[str]]) -> None:
    """Set the global live log file handle."""
    global _live_log
    _live_log = log_file


def write_live(msg: str, prefix: str = "") -> None:
    """Write to live log file for real-time monitoring via tail -f."""
    if _live_log:
        ts = dt.datetime.now().strftime("%H:%M:%S")
        _live_log.write(f"[{ts}] {prefix}{msg}\n")
        _live_log.flush()


def utc_now_iso() -> str:
    """Return current UTC time in ISO format."""
    return dt.datetime.now(dt.timezone.utc).isoformat()


def short_nonce(n: int = 4) -> str:
    return secrets.token_hex(n)[:n]


def read_text(path: Path) -> str:
    """Read text from file, return empty string if file doesn't exist."""
    return path.read_text(encoding="utf-8") if path.exists() else ""


def write_text_atomic(path: Path, text: str) -> None:
    """Atomic write: write to temp file, fsync, then rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except Exception:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


def append_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as f:
        f.write(text)


def load_json(path: Path, default: Any) -> Any:
    """Load JSON from file. Returns default if file missing or invalid."""
    if not path.exists():
        return default
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        logger.warning(f"Invalid JSON in {path}: {e}")
        return default


def save_json_atomic(path: Path, obj: Any) -> None:
    """Save object as JSON with atomic write."""
    write_text_atomic(path, json.dumps(obj, indent=2, ensure_ascii=False))


def validate_name(name: str, kind: str) -> None:
    """Validate artifact/task name to prevent path traversal."""
    if not VALID_NAME_PATTERN.match(name) or ".." in name:
        raise ValueError(
            f"Invalid {kind} name '{name}': must contain only alphanumeric, dot, underscore, or hyphen"
        )


def is_subpath(path: Path, parent: Path) -> bool:
    """Check if path is within parent directory (security check)."""
    try:
        path.resolve().relative_to(parent.resolve())
        return True
    except ValueError:
        return False


def truncate(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


# =============================================================================
# Secret redaction
# =============================================================================

_SECRET_PATTERNS = [
    re.compile(r"(?i)(api[_-]?key\s*[:=]\s*['\"]?)([A-Za-z0-9_\-]{20,})"),
    re.compile(r"(?i)((?:secret|password|passwd|token)\s*[:=]\s*['\"]?)([^\s'\"]{8,})"),
    re.compile(r"((?:AWS_SECRET_ACCESS_KEY|ANTHROPIC_API_KEY|OPENAI_API_KEY)\s*=\s*['\"]?)([^\s'\"]+)"),
    re.compile(r"(Bearer\s+)([A-Za-z0-9_\-.=]+)"),
    re.compile(r"()(ghp_[A-Za-z0-9]{36})"),
    re.compile(r"()(sk-[A-Za-z0-9_\-]{32,})"),
]


def _redact(match: "re.Match[str]") -> str:
    prefix, value = match.group(1), match.group(2)
    keep = min(10, len(value) // 3)
    return f"{prefix}{value[:keep]}[REDACTED]"


def sanitize_content(text: str) -> str:
    """Redact credentials from text before it reaches disk."""
    if not text:
        return text
    for pattern in _SECRET_PATTERNS:
        text = pattern.sub(_redact, text)
    return text


def first_string_value(d: Dict[str, Any]) -> str:
    for value in d.values():
        if isinstance(value, str):
            return value
    return ""
