"""
Bulk-open controller.

Opens target_count - owned positions back-to-back on the first invocation.
Margin capacity is recomputed before every unit (free margin shrinks with
each fill); the batch stops as soon as the owned count reaches it. Each
unit gets its own swing-based stop from the bars at the moment it is sent.

Once the loop exits, for whatever reason, the controller latches dormant.
With one_shot it never runs again in this process; otherwise it re-arms
when every owned position has been closed.
"""
from dataclasses import dataclass
from typing import Callable, List, Optional

from breakbot.app.config import BulkCfg, ExecutionCfg, MarketCfg, RiskCfg
from breakbot.app.execution import OrderExecutor, swing_levels
from breakbot.broker.adapter import MarketAdapter
from breakbot.domain.logger import log_line
from breakbot.domain.models import (
    AccountFigures,
    Bar,
    EngineRunState,
    InstrumentConstraints,
    OrderLevels,
    Quote,
    Result,
    safe_call,
)
from breakbot.domain.risk import calc_volume, max_positions_by_margin


@dataclass(frozen=True)
class UnitPlan:
    levels: OrderLevels
    volume: float
    margin: float
    capacity: int
    bars: List[Bar]
    constraints: InstrumentConstraints


class BulkOpenController:

    def __init__(
        self,
        adapter: MarketAdapter,
        executor: OrderExecutor,
        market: MarketCfg,
        bulk: BulkCfg,
        risk: RiskCfg,
        execution: ExecutionCfg,
        owner_tag: int,
        *,
        logfile=None,
        notify: Optional[Callable[[str, dict], None]] = None,
    ):
        self.adapter = adapter
        self.executor = executor
        self.market = market
        self.cfg = bulk
        self.risk = risk
        self.execution = execution
        self.owner_tag = int(owner_tag)
        self.logfile = logfile
        self.notify = notify

    @property
    def symbol(self) -> str:
        return self.market.symbol

    def _levels_fn(self, bars: List[Bar], c: InstrumentConstraints):
        buffer = float(self.cfg.swing_buffer_points) * float(c.point)

        def _fn(q: Quote) -> Optional[OrderLevels]:
            return swing_levels(
                self.cfg.direction, q, bars, self.cfg.swing_lookback, buffer,
                float(self.execution.reward_multiple), int(c.digits),
            )
        return _fn

    def _fetch(self, call, *args) -> Optional[object]:
        res = safe_call(call, *args)
        if not res.ok:
            log_line(self.logfile, f"BULK data unavailable ({getattr(call, '__name__', call)}): {res.describe()}")
            return None
        return res.value

    def plan_unit(self) -> Result:
        """
        Levels, volume and margin capacity for the next unit, all from fresh
        broker data. Failure means "do not send".
        """
        c: InstrumentConstraints = self._fetch(self.adapter.constraints, self.symbol)
        q: Quote = self._fetch(self.adapter.quote, self.symbol)
        acct: AccountFigures = self._fetch(self.adapter.account)
        bars = self._fetch(self.adapter.bars, self.symbol, self.market.timeframe, self.cfg.swing_lookback + 1)
        if c is None or q is None or acct is None or bars is None:
            return Result.failure("data unavailable")

        levels = self._levels_fn(bars, c)(q)
        if levels is None:
            return Result.failure("invalid swing stop")

        volume = calc_volume(
            c,
            equity=acct.equity,
            risk_fraction=self.risk.risk_fraction,
            stop_distance=levels.stop_distance,
            fixed_volume=self.risk.fixed_volume,
        )
        if volume <= 0:
            return Result.failure("cannot size")

        m = safe_call(self.adapter.estimate_margin, self.symbol, self.cfg.direction, volume, levels.entry)
        if not m.ok:
            return Result.failure(f"margin estimate unavailable: {m.describe()}")

        cap = max_positions_by_margin(acct.free_margin, self.risk.margin_safety_fraction, float(m.value))
        return Result.success(UnitPlan(levels=levels, volume=volume, margin=float(m.value), capacity=cap,
                                       bars=bars, constraints=c))

    def check_capacity(self) -> Result:
        """Startup gate: target_count must fit in the margin-derived ceiling."""
        pr = self.plan_unit()
        if not pr.ok:
            return pr
        plan: UnitPlan = pr.value
        if self.cfg.target_count > plan.capacity:
            return Result.failure(
                f"target_count={self.cfg.target_count} exceeds margin capacity={plan.capacity} "
                f"(margin/pos={plan.margin:.2f} safety={self.risk.margin_safety_fraction})"
            )
        return Result.success(plan.capacity)

    def _owned_count(self) -> Optional[int]:
        res = safe_call(self.adapter.owned_positions, self.symbol, self.owner_tag)
        if not res.ok:
            log_line(self.logfile, f"BULK positions unavailable: {res.describe()}")
            return None
        return len(res.value)

    def run(self, state: EngineRunState) -> int:
        """One pass. Returns the number of positions opened."""
        owned = self._owned_count()
        if owned is None:
            return 0

        if state.bulk_done:
            if self.cfg.one_shot or owned > 0:
                return 0
            log_line(self.logfile, "BULK re-armed: no owned positions left")
            state.bulk_done = False

        to_open = int(self.cfg.target_count) - owned
        opened = 0
        log_line(self.logfile, f"BULK start {self.cfg.direction} target={self.cfg.target_count} owned={owned} to_open={max(0, to_open)}")

        for unit in range(1, max(0, to_open) + 1):
            pr = self.plan_unit()
            if not pr.ok:
                log_line(self.logfile, f"BULK stop at unit {unit}: {pr.message}")
                break
            plan: UnitPlan = pr.value

            owned_now = self._owned_count()
            if owned_now is None:
                break
            if owned_now >= plan.capacity:
                log_line(self.logfile, f"BULK_ABORT unit {unit}: owned={owned_now} >= capacity={plan.capacity}")
                break

            out = self.executor.place_entry(self.cfg.direction, plan.volume, self._levels_fn(plan.bars, plan.constraints))
            if not out.ok:
                log_line(self.logfile, f"BULK stop at unit {unit}: entry failed ({out.message})")
                break
            opened += 1

        state.bulk_done = True
        log_line(self.logfile, f"BULK done opened={opened} one_shot={self.cfg.one_shot}")
        if self.notify is not None:
            try:
                self.notify("BULK_DONE", {"symbol": self.symbol, "opened": opened,
                                          "target": self.cfg.target_count, "direction": self.cfg.direction})
            except Exception as e:
                log_line(self.logfile, f"NOTIFY warning: {repr(e)}")
        return opened
