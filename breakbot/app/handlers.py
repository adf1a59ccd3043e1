"""
Invocation handlers: what one engine tick does for each strategy.

Both handlers share the same snapshot -> manage -> maybe-enter shape and
the same Execution/Lifecycle components; they differ only in the entry path.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import pandas as pd

from breakbot.app.bulk import BulkOpenController
from breakbot.app.config import EngineConfig
from breakbot.app.execution import OrderExecutor, compute_levels
from breakbot.app.lifecycle import ManageReport, PositionManager
from breakbot.broker.adapter import MarketAdapter
from breakbot.domain.logger import log_line
from breakbot.domain.models import (
    LONG,
    AccountFigures,
    Bar,
    EngineRunState,
    InstrumentConstraints,
    Position,
    Quote,
    safe_call,
)
from breakbot.domain.risk import calc_volume, max_positions_by_margin
from breakbot.strategy.breakout import BreakoutStrategy


@dataclass
class Snapshot:
    """Broker state for one invocation. Never reused across invocations."""
    constraints: InstrumentConstraints
    quote: Quote
    bars: List[Bar]
    positions: List[Position]

    @property
    def now(self) -> pd.Timestamp:
        if self.quote.time is not None:
            return pd.Timestamp(self.quote.time)
        return pd.Timestamp.now(tz="UTC")


@dataclass
class EngineContext:
    cfg: EngineConfig
    adapter: MarketAdapter
    executor: OrderExecutor
    manager: PositionManager
    handles: Dict[str, Any] = field(default_factory=dict)
    logfile: Any = None


class InvocationHandler:
    """One tick of the engine. Subclasses add the entry path."""

    def __init__(self, ctx: EngineContext):
        self.ctx = ctx
        self.cfg = ctx.cfg
        self.adapter = ctx.adapter
        self.logfile = ctx.logfile

    @property
    def symbol(self) -> str:
        return self.cfg.market.symbol

    def _log(self, msg: str) -> None:
        log_line(self.logfile, msg)

    def _get(self, what: str, call, *args) -> Optional[Any]:
        res = safe_call(call, *args)
        if not res.ok:
            self._log(f"SKIP: {what} unavailable ({res.describe()})")
            return None
        return res.value

    def indicator(self, name: str, offset: int = 1) -> Optional[float]:
        handle = self.ctx.handles.get(name)
        if handle is None:
            return None
        return self._get(f"{name}[{offset}]", self.adapter.indicator, handle, offset)

    def positions(self) -> Optional[List[Position]]:
        return self._get("positions", self.adapter.owned_positions, self.symbol, self.cfg.owner_tag)

    def snapshot(self) -> Optional[Snapshot]:
        c = self._get("constraints", self.adapter.constraints, self.symbol)
        if c is None:
            return None
        q = self._get("quote", self.adapter.quote, self.symbol)
        if q is None:
            return None
        bars = self._get("bars", self.adapter.bars, self.symbol, self.cfg.market.timeframe, self.cfg.market.history_bars)
        if not bars or len(bars) < 2:
            return None
        positions = self.positions()
        if positions is None:
            return None
        return Snapshot(constraints=c, quote=q, bars=list(bars), positions=list(positions))

    def manage(self, state: EngineRunState, snap: Snapshot) -> ManageReport:
        atr = self.indicator("atr", 1) if self.cfg.trailing.mode == "atr" and snap.positions else None
        return self.ctx.manager.manage(state, snap.positions, snap.quote, snap.constraints, snap.bars, atr)

    def entry_gates_open(self, snap: Snapshot) -> bool:
        max_spread = float(self.cfg.risk.max_spread_points)
        if max_spread > 0 and float(snap.quote.spread_points) > max_spread:
            self._log(f"GATE: spread {snap.quote.spread_points} > {max_spread} points")
            return False
        if not self.cfg.session.is_open(snap.now):
            self._log(f"GATE: outside session ({self.cfg.session.start}-{self.cfg.session.end} {self.cfg.session.tz_name})")
            return False
        return True

    def on_invocation(self, state: EngineRunState) -> None:
        raise NotImplementedError


class BreakoutHandler(InvocationHandler):
    """Strategy A: at most one breakout entry per closed bar."""

    def __init__(self, ctx: EngineContext, strategy: BreakoutStrategy):
        super().__init__(ctx)
        self.strategy = strategy

    def on_invocation(self, state: EngineRunState) -> None:
        state.invocations += 1
        snap = self.snapshot()
        if snap is None:
            return

        report = self.manage(state, snap)

        bar_time = snap.bars[1].time
        if state.last_bar_time is not None and bar_time <= state.last_bar_time:
            return

        atr = self.indicator("atr", 1)
        trend = self.indicator("ema", 1)
        rsi = self.indicator("rsi", 1)
        if atr is None or trend is None or rsi is None:
            return

        state.last_bar_time = bar_time
        sig = self.strategy.signal_on_bar_close(snap.bars, trend, rsi, atr)
        if not sig.is_entry:
            self._log(f"SIGNAL: none bar={pd.Timestamp(bar_time).isoformat()}")
            return

        self._log(
            f"SIGNAL {sig.direction} bar={pd.Timestamp(bar_time).isoformat()} close={sig.reference_price} "
            f"upper={sig.meta.get('upper')} lower={sig.meta.get('lower')} ema={trend:.5f} rsi={rsi:.1f} atr={atr:.5f}"
        )

        if self.cfg.risk.single_position:
            still_open = len(snap.positions) - len(report.closed)
            if still_open > 0:
                self._log(f"GATE: single position, {still_open} owned -> skip")
                return

        if not self.entry_gates_open(snap):
            return

        acct: Optional[AccountFigures] = self._get("account", self.adapter.account)
        if acct is None:
            return

        c = snap.constraints
        volume = calc_volume(
            c,
            equity=acct.equity,
            risk_fraction=self.cfg.risk.risk_fraction,
            stop_distance=sig.stop_distance,
            fixed_volume=self.cfg.risk.fixed_volume,
        )
        if volume <= 0:
            self._log(f"ENTRY skipped: cannot size (equity={acct.equity} stop_distance={sig.stop_distance})")
            return

        if not self.cfg.risk.single_position and not self._margin_allows(snap, report, sig.direction, volume):
            return

        exe = self.cfg.execution
        direction = sig.direction

        def levels_fn(q: Quote):
            return compute_levels(direction, q, atr, exe.atr_stop_mult, exe.reward_multiple, int(c.digits))

        self.ctx.executor.place_entry(direction, volume, levels_fn)

    def _margin_allows(self, snap: Snapshot, report: ManageReport, direction: str, volume: float) -> bool:
        """Owned count must stay below the margin capacity at this moment."""
        acct: Optional[AccountFigures] = self._get("account", self.adapter.account)
        price = snap.quote.ask if direction == LONG else snap.quote.bid
        margin = self._get("margin estimate", self.adapter.estimate_margin, self.symbol, direction, volume, price)
        if acct is None or margin is None:
            return False
        cap = max_positions_by_margin(acct.free_margin, self.cfg.risk.margin_safety_fraction, float(margin))
        owned = len(snap.positions) - len(report.closed)
        if owned >= cap:
            self._log(f"GATE: margin capacity {cap} reached (owned={owned})")
            return False
        return True


class BulkOpenHandler(InvocationHandler):
    """Strategy B: margin-bounded batch at startup, then manage."""

    def __init__(self, ctx: EngineContext, bulk: BulkOpenController):
        super().__init__(ctx)
        self.bulk = bulk

    def on_invocation(self, state: EngineRunState) -> None:
        state.invocations += 1
        snap = self.snapshot()
        if snap is None:
            return

        self.manage(state, snap)

        if state.bulk_done and self.bulk.cfg.one_shot:
            return
        if not self.entry_gates_open(snap):
            return
        self.bulk.run(state)
