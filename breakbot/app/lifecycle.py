"""
Position lifecycle: runs on every invocation over all owned positions.

Per position, re-derived from broker state each call:
    Open(no adjustment) -> Open(break-even) -> Open(trailing) -> Closed

  1. time exit     : oldest owned position older than time_exit_minutes
                     -> close everything under the owner tag
  2. signal exit   : strategy-supplied check (opposite channel) -> close
  3. break-even    : fav >= break_even_r * R -> stop to entry
  4. trailing      : fav >= trail_start_r * R -> stop to price -/+ ATR*mult
                     (or swing low/high), only if it tightens by min_step

A failed modify/close is logged and picked up again on the next call.
"""
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence

import pandas as pd

from breakbot.app.config import TrailingCfg
from breakbot.app.execution import OrderExecutor
from breakbot.domain.logger import log_line
from breakbot.domain.models import (
    Bar,
    EngineRunState,
    InstrumentConstraints,
    Position,
    Quote,
    sign,
)
from breakbot.domain.trailing import live_price, plan_stop_update, swing_stop

ExitCheck = Callable[[Position, Sequence[Bar], Quote], bool]


@dataclass
class ManageReport:
    closed: List[str] = field(default_factory=list)
    modified: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    time_exit: bool = False


def _utc(ts) -> pd.Timestamp:
    t = pd.Timestamp(ts)
    return t.tz_localize("UTC") if t.tzinfo is None else t.tz_convert("UTC")


def _now(quote: Quote) -> pd.Timestamp:
    return _utc(quote.time) if quote.time is not None else pd.Timestamp.now(tz="UTC")


class PositionManager:

    def __init__(
        self,
        executor: OrderExecutor,
        cfg: TrailingCfg,
        *,
        logfile=None,
        exit_check: Optional[ExitCheck] = None,
    ):
        self.executor = executor
        self.cfg = cfg
        self.logfile = logfile
        self.exit_check = exit_check

    def trail_reference(
        self,
        position: Position,
        quote: Quote,
        bars: Sequence[Bar],
        atr: Optional[float],
        c: InstrumentConstraints,
    ) -> Optional[float]:
        """Where the trailing stop would go right now, before any monotonic check."""
        if self.cfg.mode == "swing":
            buffer = float(self.cfg.swing_buffer_points) * float(c.point)
            return swing_stop(position.direction, bars, self.cfg.swing_lookback, buffer)
        if atr is None or not atr > 0:
            return None
        return live_price(position.direction, quote) - sign(position.direction) * float(atr) * float(self.cfg.atr_mult)

    def _time_exit_due(self, positions: Sequence[Position], quote: Quote) -> Optional[Position]:
        minutes = float(self.cfg.time_exit_minutes)
        if minutes <= 0 or not positions:
            return None
        tracked = min(positions, key=lambda p: _utc(p.open_time))
        elapsed = _now(quote) - _utc(tracked.open_time)
        if elapsed >= pd.Timedelta(minutes=minutes):
            return tracked
        return None

    def manage(
        self,
        state: EngineRunState,
        positions: Sequence[Position],
        quote: Quote,
        c: InstrumentConstraints,
        bars: Sequence[Bar],
        atr: Optional[float],
    ) -> ManageReport:
        report = ManageReport()
        live = {p.ticket for p in positions}
        for t in list(state.initial_stops):
            if t not in live:
                state.initial_stops.pop(t, None)

        tracked = self._time_exit_due(positions, quote)
        if tracked is not None:
            report.time_exit = True
            log_line(self.logfile, f"TIME_EXIT ticket={tracked.ticket} opened={_utc(tracked.open_time).isoformat()} -> closing {len(positions)} position(s)")
            for p in positions:
                self._close(p, "TIME_EXIT", report)
            return report

        for p in positions:
            if p.stop_loss is not None:
                state.initial_stops.setdefault(p.ticket, float(p.stop_loss))

            if self.exit_check is not None and self.exit_check(p, bars, quote):
                self._close(p, "EXIT_CHANNEL", report)
                continue

            if not self.cfg.enabled:
                continue

            plan = plan_stop_update(
                p.direction,
                p.entry_price,
                state.initial_stops.get(p.ticket),
                p.stop_loss,
                quote,
                break_even_r=float(self.cfg.break_even_r),
                trail_start_r=float(self.cfg.trail_start_r),
                trail_ref=self.trail_reference(p, quote, bars, atr, c),
                min_stop_distance=c.min_stop_distance,
                min_step=float(self.cfg.min_step_points) * float(c.point),
                digits=int(c.digits),
            )
            if plan is None:
                continue

            res = self.executor.modify_stop(p, plan.stop, quote, c, reason=plan.stage)
            if res.ok:
                report.modified.append(p.ticket)
            elif res.code != 0:
                report.failed.append(p.ticket)

        return report

    def _close(self, p: Position, reason: str, report: ManageReport) -> None:
        res = self.executor.close(p, reason)
        if res.ok:
            report.closed.append(p.ticket)
        else:
            report.failed.append(p.ticket)

