import numpy as np
import pandas as pd


def rsi(series: pd.Series, period: int) -> pd.Series:
    delta = series.diff()
    up = delta.clip(lower=0).rolling(period).mean()
    dn = (-delta).clip(lower=0).rolling(period).mean()
    rs = up / dn.replace(0, np.nan)
    out = 100 - (100 / (1 + rs))
    # no losses in the window -> fully overbought
    return out.where(~((dn == 0) & (up > 0)), 100.0)


def atr(df: pd.DataFrame, period: int) -> pd.Series:
    prev_close = df["close"].shift(1)
    tr = pd.concat(
        [(df["high"] - df["low"]).abs(),
         (df["high"] - prev_close).abs(),
         (df["low"] - prev_close).abs()],
        axis=1,
    ).max(axis=1)
    return tr.rolling(period).mean()


def ema(series: pd.Series, period: int) -> pd.Series:
    return series.ewm(span=period, adjust=False, min_periods=period).mean()


INDICATORS = ("atr", "ema", "rsi")


def indicator_series(df: pd.DataFrame, name: str, period: int) -> pd.Series:
    """Dispatch by name over an oldest-first OHLC frame."""
    n = str(name).lower()
    if n == "atr":
        return atr(df, period)
    if n == "ema":
        return ema(df["close"].astype("float64"), period)
    if n == "rsi":
        return rsi(df["close"].astype("float64"), period)
    raise ValueError(f"Unknown indicator: {name!r}")
