import os
from pathlib import Path

_LOG_TZ = os.environ.get("BREAKBOT_LOG_TZ", "UTC")


def set_log_timezone(tz_name: str) -> None:
    global _LOG_TZ
    _LOG_TZ = str(tz_name or "UTC")


def _prefix() -> str:
    try:
        import pandas as pd
        ts_local = pd.Timestamp.now(tz="UTC").tz_convert(_LOG_TZ)
        return "[" + ts_local.isoformat() + "] "
    except Exception:
        try:
            from datetime import datetime
            import pytz
            return "[" + datetime.now(pytz.timezone(_LOG_TZ)).isoformat() + "] "
        except Exception:
            from datetime import datetime, timezone
            return "[" + datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S.%f")[:-3] + "Z] "


def log_line(logfile, msg: str) -> str:
    """Log with a timezone-aware prefix. Writes to stdout + logfile. Never raises."""
    line = _prefix() + str(msg)

    try:
        print(line, flush=True)
    except Exception:
        pass

    try:
        if logfile:
            _p = logfile if hasattr(logfile, "write_text") else Path(str(logfile))
            _p.parent.mkdir(parents=True, exist_ok=True)
            with open(str(_p), "a", encoding="utf-8") as fh:
                fh.write(line + "\n")
    except Exception:
        pass

    return line
