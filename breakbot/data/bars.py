from pathlib import Path
from typing import List, Optional, Sequence, Tuple

import pandas as pd

from breakbot.domain.models import Bar


def frame_to_bars(df: pd.DataFrame) -> List[Bar]:
    """
    Oldest-first OHLC frame (UTC DatetimeIndex or 'time' column)
    -> list of Bar, most-recent-first.
    """
    if df is None or df.empty:
        return []
    d = df
    if "time" in d.columns:
        d = d.set_index("time")
    out = []
    for ts, row in d.iloc[::-1].iterrows():
        out.append(Bar(
            time=pd.Timestamp(ts),
            open=float(row["open"]),
            high=float(row["high"]),
            low=float(row["low"]),
            close=float(row["close"]),
        ))
    return out


def channel(bars: Sequence[Bar], lookback: int, skip: int = 1) -> Optional[Tuple[float, float]]:
    """
    (highest high, lowest low) over `lookback` bars starting at index `skip`.
    skip=1 excludes the forming bar. None on short history.
    """
    lookback = int(lookback)
    window = list(bars[skip:skip + lookback])
    if lookback <= 0 or len(window) < lookback:
        return None
    return max(b.high for b in window), min(b.low for b in window)


def load_bars_csv(path: str) -> pd.DataFrame:
    """
    CSV with time,open,high,low,close[,volume] -> clean oldest-first frame.

    Robustness:
      - parse timestamps as UTC, drop unparsable rows
      - drop rows with missing/invalid OHLC (high < low)
      - keep last row per timestamp
    """
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Bars file not found: {p}")

    df = pd.read_csv(p)
    cols = {c.lower().strip(): c for c in df.columns}
    need = ("time", "open", "high", "low", "close")
    missing = [c for c in need if c not in cols]
    if missing:
        raise ValueError(f"Bars file {p} missing columns: {missing}")
    df = df.rename(columns={v: k for k, v in cols.items()})

    df["time"] = pd.to_datetime(df["time"], utc=True, errors="coerce")
    df = df.dropna(subset=["time"])
    for col in ("open", "high", "low", "close"):
        df[col] = pd.to_numeric(df[col], errors="coerce")
    df = df.dropna(subset=["open", "high", "low", "close"])
    df = df.loc[df["high"] >= df["low"]]

    df = df.sort_values("time").groupby("time", as_index=False).tail(1)
    return df.sort_values("time").set_index("time")[["open", "high", "low", "close"]]
