from __future__ import annotations

import re
from pathlib import Path

_SAFE_NAME_RE = re.compile(r"[^a-zA-Z0-9_.-]+")


def sanitize_session_name(raw: str, *, max_len: int = 64) -> str:
    s = str(raw or "").strip()
    if not s:
        return "default"
    s = _SAFE_NAME_RE.sub("-", s).strip("-.") or "default"
    return s[: max(8, int(max_len))]


def ensure_dir(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    return path


def session_file(sessions_dir: Path, name: str) -> Path:
    return sessions_dir / f"{sanitize_session_name(name)}.json"


def session_log_file(logs_dir: Path, name: str) -> Path:
    return logs_dir / f"{sanitize_session_name(name)}.log"


def start_lock_file(locks_dir: Path, name: str) -> Path:
    return locks_dir / f"start-{sanitize_session_name(name)}.lock"
