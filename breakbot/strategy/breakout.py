"""
Channel breakout with trend and momentum confirmation.

Entry (on bar close, bars[1]):
  LONG  close > highest high of the N bars before it
        AND close > EMA(trend_period) AND RSI >= rsi_long_min
  SHORT close < lowest low of the N bars before it
        AND close < EMA(trend_period) AND RSI <= rsi_short_max

Stop distance: ATR * atr_stop_mult.

Exit (live, any tick): long closes when bid drops below the lowest low of
the last M closed bars; short closes when ask rises above their highest high.
"""
from __future__ import annotations

import math
from typing import Optional, Sequence

from breakbot.app.config import SignalCfg
from breakbot.data.bars import channel
from breakbot.domain.models import LONG, NONE, SHORT, Bar, Position, Quote, Signal


def _finite(*xs) -> bool:
    try:
        return all(math.isfinite(float(x)) for x in xs)
    except (TypeError, ValueError):
        return False


def _none(bar: Optional[Bar], **meta) -> Signal:
    return Signal(
        direction=NONE,
        reference_price=float(bar.close) if bar is not None else 0.0,
        stop_distance=0.0,
        bar_time=bar.time if bar is not None else None,
        meta=meta,
    )


class BreakoutStrategy:
    """Donchian-style breakout filtered by EMA trend and RSI momentum."""

    def __init__(self, cfg: SignalCfg, atr_stop_mult: float):
        self.cfg = cfg
        self.atr_stop_mult = float(atr_stop_mult)

    @property
    def bars_needed(self) -> int:
        return max(self.cfg.entry_lookback + 2, self.cfg.exit_lookback + 1)

    def signal_on_bar_close(
        self,
        bars: Sequence[Bar],
        trend: float,
        momentum: float,
        atr: float,
    ) -> Signal:
        if bars is None or len(bars) < self.cfg.entry_lookback + 2:
            return _none(None, reason="history")

        last = bars[1]
        if not _finite(trend, momentum, atr, last.close):
            return _none(last, reason="indicators")

        ch = channel(bars, self.cfg.entry_lookback, skip=2)
        if ch is None:
            return _none(last, reason="history")
        upper, lower = ch
        close = float(last.close)
        meta = {"upper": upper, "lower": lower, "trend": float(trend),
                "rsi": float(momentum), "atr": float(atr)}

        direction = NONE
        if close > upper and close > trend and momentum >= self.cfg.rsi_long_min:
            direction = LONG
        elif close < lower and close < trend and momentum <= self.cfg.rsi_short_max:
            direction = SHORT

        if direction == NONE:
            return _none(last, **meta)

        return Signal(
            direction=direction,
            reference_price=close,
            stop_distance=float(atr) * self.atr_stop_mult,
            bar_time=last.time,
            meta=meta,
        )

    def exit_signal(self, position: Position, bars: Sequence[Bar], quote: Quote) -> bool:
        """True when price has crossed the short-lookback channel against the position."""
        if not self.cfg.exit_on_opposite_channel:
            return False
        ch = channel(bars, self.cfg.exit_lookback, skip=1)
        if ch is None:
            return False
        upper, lower = ch
        if position.direction == LONG:
            return float(quote.bid) < lower
        if position.direction == SHORT:
            return float(quote.ask) > upper
        return False
