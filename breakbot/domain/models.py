from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Literal, Optional

import pandas as pd

Direction = Literal["LONG", "SHORT", "NONE"]

LONG: Direction = "LONG"
SHORT: Direction = "SHORT"
NONE: Direction = "NONE"


def sign(direction: str) -> int:
    """+1 for LONG, -1 for SHORT, 0 otherwise."""
    if direction == LONG:
        return 1
    if direction == SHORT:
        return -1
    return 0


def parse_direction(x: Any) -> Direction:
    d = str(x or "").strip().upper()
    if d in ("LONG", "BUY"):
        return LONG
    if d in ("SHORT", "SELL"):
        return SHORT
    return NONE


@dataclass(frozen=True)
class Result:
    """
    Outcome of a fallible call. Adapter methods return one of these
    instead of raising.
    """
    ok: bool
    value: Any = None
    code: int = 0
    message: str = ""

    @classmethod
    def success(cls, value: Any = None) -> "Result":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, message: str = "", code: int = -1) -> "Result":
        return cls(ok=False, value=None, code=int(code), message=str(message))

    def describe(self) -> str:
        if self.ok:
            return "ok"
        return f"code={self.code} msg={self.message}"


def safe_call(fn: Callable[..., Any], *args, **kwargs) -> Result:
    """
    Call fn and normalise its outcome to a Result.
      - a Result coming back is passed through
      - any other return value is wrapped as success
      - any exception becomes a failure (never propagates)
    """
    try:
        out = fn(*args, **kwargs)
    except Exception as e:
        return Result.failure(f"{type(e).__name__}: {e}", code=-1)
    if isinstance(out, Result):
        return out
    return Result.success(out)


@dataclass(frozen=True)
class InstrumentConstraints:
    min_volume: float
    max_volume: float
    volume_step: float
    digits: int
    min_stop_points: float
    point: float
    tick_value: float = 0.0
    tick_size: float = 0.0

    @property
    def min_stop_distance(self) -> float:
        return max(0.0, float(self.min_stop_points)) * float(self.point)


@dataclass(frozen=True)
class Quote:
    bid: float
    ask: float
    spread_points: float
    time: Optional[pd.Timestamp] = None


@dataclass(frozen=True)
class Bar:
    time: pd.Timestamp
    open: float
    high: float
    low: float
    close: float


@dataclass(frozen=True)
class AccountFigures:
    equity: float
    free_margin: float


@dataclass(frozen=True)
class Signal:
    direction: Direction
    reference_price: float
    stop_distance: float
    bar_time: Optional[pd.Timestamp] = None
    meta: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_entry(self) -> bool:
        return self.direction in (LONG, SHORT)


@dataclass(frozen=True)
class Position:
    ticket: str
    symbol: str
    owner_tag: int
    direction: Direction
    entry_price: float
    stop_loss: Optional[float]
    take_profit: Optional[float]
    open_time: pd.Timestamp
    volume: float = 0.0


@dataclass(frozen=True)
class OrderLevels:
    entry: float
    stop: float
    target: Optional[float]

    @property
    def stop_distance(self) -> float:
        return abs(self.entry - self.stop)


@dataclass
class EngineRunState:
    """
    Process-lifetime state owned by the invocation loop.
    Reset only on restart.
    """
    last_bar_time: Optional[pd.Timestamp] = None
    bulk_done: bool = False
    initial_stops: Dict[str, float] = field(default_factory=dict)
    invocations: int = 0
