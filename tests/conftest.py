import pandas as pd
import pytest

from breakbot.app.config import EngineConfig
from breakbot.domain.models import Bar

BASE_TIME = pd.Timestamp("2024-01-02 00:00", tz="UTC")  # Tuesday


def _make_bars(rows, step_minutes=15):
    """(open, high, low, close) tuples, most-recent-first -> list of Bar."""
    out = []
    for i, (o, h, l, c) in enumerate(rows):
        t = BASE_TIME - pd.Timedelta(minutes=step_minutes * i)
        out.append(Bar(time=t, open=float(o), high=float(h), low=float(l), close=float(c)))
    return out


def _make_frame(closes, half_range=0.5, step_minutes=15):
    """Oldest-first OHLC frame; each bar opens at the previous close."""
    idx = pd.date_range(BASE_TIME, periods=len(closes), freq=f"{step_minutes}min")
    rows = []
    prev = float(closes[0])
    for c in closes:
        c = float(c)
        rows.append({
            "open": prev,
            "high": max(prev, c) + half_range,
            "low": min(prev, c) - half_range,
            "close": c,
        })
        prev = c
    return pd.DataFrame(rows, index=idx)


def _make_config(**sections):
    raw = {
        "market": {"symbol": "XAUUSD", "timeframe": "M15", "history_bars": 300},
        "strategy": "breakout",
    }
    for key, value in sections.items():
        if isinstance(value, dict) and isinstance(raw.get(key), dict):
            raw[key] = {**raw[key], **value}
        else:
            raw[key] = value
    return EngineConfig.from_raw(raw)


@pytest.fixture
def bars_factory():
    return _make_bars


@pytest.fixture
def frame_factory():
    return _make_frame


@pytest.fixture
def config_factory():
    return _make_config


@pytest.fixture(autouse=True)
def _isolated_paths(tmp_path, monkeypatch):
    monkeypatch.setenv("BREAKBOT_BASEDIR", str(tmp_path / "breakbot"))
    monkeypatch.delenv("TELEGRAM_BOT_TOKEN", raising=False)
    monkeypatch.delenv("TELEGRAM_CHAT_ID", raising=False)
