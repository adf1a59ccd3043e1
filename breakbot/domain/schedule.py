from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Tuple

import pandas as pd
import pytz


def _to_utc_ts(x: Any) -> pd.Timestamp:
    """
    Best-effort conversion to tz-aware UTC Timestamp.
    Accepts: pd.Timestamp, datetime, str, int/float epoch (s/ms).
    Returns pd.NaT on failure.
    """
    try:
        if x is None:
            return pd.NaT
        if isinstance(x, pd.Timestamp):
            ts = x
        elif isinstance(x, (int, float)):
            unit = "ms" if x > 10_000_000_000 else "s"
            ts = pd.to_datetime(x, unit=unit, utc=True, errors="coerce")
        else:
            ts = pd.to_datetime(x, utc=True, errors="coerce")

        if ts is pd.NaT:
            return pd.NaT
        if ts.tzinfo is None:
            return ts.tz_localize("UTC")
        return ts.tz_convert("UTC")
    except Exception:
        return pd.NaT


def _hhmm(s: str) -> Tuple[int, int]:
    hh, mm = str(s).strip().split(":", 1)
    h, m = int(hh), int(mm)
    if not (0 <= h <= 23 and 0 <= m <= 59):
        raise ValueError(f"Invalid HH:MM: {s!r}")
    return h, m


@dataclass(frozen=True)
class SessionWindow:
    """
    Optional trading-hours gate for new entries. Open positions are
    managed regardless of the window.
    """
    enabled: bool = False
    tz_name: str = "UTC"
    start: str = "00:00"
    end: str = "23:59"
    weekdays: Tuple[int, ...] = (0, 1, 2, 3, 4)

    def validate(self) -> None:
        _hhmm(self.start)
        _hhmm(self.end)
        pytz.timezone(self.tz_name)

    def is_open(self, ts_utc: Any) -> bool:
        """
        True if ts is inside [start, end] local time on an allowed weekday.
        A window whose end is before its start wraps midnight.
        Disabled window -> always True. Bad input -> False.
        """
        if not self.enabled:
            return True

        tsu = _to_utc_ts(ts_utc)
        if tsu is pd.NaT:
            return False

        try:
            local = tsu.tz_convert(pytz.timezone(self.tz_name))
        except Exception:
            return False

        if local.weekday() not in set(int(d) for d in self.weekdays):
            return False

        now = (local.hour, local.minute)
        start = _hhmm(self.start)
        end = _hhmm(self.end)
        if start <= end:
            return start <= now <= end
        return now >= start or now <= end
