from __future__ import annotations

import os
from pathlib import Path
from typing import Tuple


def _safe_bot_id(bot_id: str) -> str:
    safe = "".join(ch for ch in str(bot_id) if ch.isalnum() or ch in ("-", "_")).strip()
    return safe or "bot"


def _dir_from_env(var: str, fallback: Path) -> Path:
    v = (os.environ.get(var) or "").strip()
    if v:
        return Path(v).expanduser()
    return fallback


def bot_paths(bot_id: str) -> Tuple[Path, Path]:
    """
    Returns: (logfile_path, lock_path)

    Defaults live under ~/.breakbot.
    Env overrides:
      - BREAKBOT_BASEDIR: base dir (log/ and lock/ subfolders)
      - BREAKBOT_DIR_LOG, BREAKBOT_DIR_LOCK: override each directory directly
    """
    safe = _safe_bot_id(bot_id)

    basedir = (os.environ.get("BREAKBOT_BASEDIR") or "").strip()
    base = Path(basedir).expanduser() if basedir else Path.home() / ".breakbot"

    log_dir = _dir_from_env("BREAKBOT_DIR_LOG", base / "log")
    lock_dir = _dir_from_env("BREAKBOT_DIR_LOCK", base / "lock")

    for d in (log_dir, lock_dir):
        try:
            d.mkdir(parents=True, exist_ok=True)
        except Exception:
            pass

    log = log_dir / f"breakbot_events_{safe}.log"
    lock = lock_dir / f".breakbot_lock_{safe}.lock"
    return log, lock
