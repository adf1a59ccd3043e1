"""
In-memory broker for dry runs and tests.

Replays an oldest-first OHLC frame. The bar at `cursor` is the forming
bar: its close is the current bid and its open time is "now". Stops and
targets of open positions are checked against each new bar's range on
advance(), the way a broker would fill them server-side.

Failure scripting for tests:
  - order_failures: list of broker codes; each place_order pops one and fails
  - modify_failures / close_failures: number of next calls that fail
  - quote_down / bars_down: make the data calls fail
  - missing_indicators: indicator names whose handles cannot be created
"""
import itertools
from dataclasses import replace
from typing import Any, Dict, List, Optional, Set

import numpy as np
import pandas as pd

from breakbot.broker.adapter import (
    RET_INVALID_STOPS,
    RET_INVALID_VOLUME,
    RET_NO_MONEY,
    RET_POSITION_NOT_FOUND,
    RET_REJECT,
    MarketAdapter,
    describe_code,
)
from breakbot.data.bars import frame_to_bars
from breakbot.data.indicators import INDICATORS, indicator_series
from breakbot.domain.models import (
    LONG,
    SHORT,
    AccountFigures,
    InstrumentConstraints,
    Position,
    Quote,
    Result,
    parse_direction,
    sign,
)

DEFAULT_CONSTRAINTS = InstrumentConstraints(
    min_volume=0.01,
    max_volume=100.0,
    volume_step=0.01,
    digits=2,
    min_stop_points=0,
    point=0.01,
    tick_value=1.0,
    tick_size=0.01,
)


class PaperBroker(MarketAdapter):

    def __init__(
        self,
        bars: pd.DataFrame,
        *,
        symbol: str = "XAUUSD",
        constraints: InstrumentConstraints = DEFAULT_CONSTRAINTS,
        balance: float = 10_000.0,
        leverage: float = 100.0,
        contract_size: float = 100.0,
        spread_points: float = 10.0,
        cursor: Optional[int] = None,
    ):
        if bars is None or bars.empty:
            raise ValueError("PaperBroker needs at least one bar")
        df = bars.copy()
        if "time" in df.columns:
            df = df.set_index("time")
        df.index = pd.to_datetime(df.index, utc=True)
        self.df = df.sort_index()[["open", "high", "low", "close"]].astype("float64")

        self.symbol = symbol
        self.c = constraints
        self.balance = float(balance)
        self.leverage = float(leverage)
        self.contract_size = float(contract_size)
        self.spread_points = float(spread_points)
        self.cursor = len(self.df) - 1 if cursor is None else int(cursor)

        self.positions: Dict[str, Position] = {}
        self._margins: Dict[str, float] = {}
        self._tickets = itertools.count(1)
        self._bid_override: Optional[float] = None

        self.order_failures: List[int] = []
        self.modify_failures = 0
        self.close_failures = 0
        self.quote_down = False
        self.bars_down = False
        self.missing_indicators: Set[str] = set()

        self.orders: List[Dict[str, Any]] = []
        self.modifies: List[Dict[str, Any]] = []
        self.closes: List[Dict[str, Any]] = []

    # ── simulation controls ──

    @property
    def now(self) -> pd.Timestamp:
        return self.df.index[self.cursor]

    def set_bid(self, bid: Optional[float]) -> None:
        """Pin the current bid (None restores the forming bar's close)."""
        self._bid_override = None if bid is None else float(bid)

    def advance(self, n: int = 1) -> bool:
        """Move to the next bar(s). Fills stops/targets hit by each new bar."""
        moved = False
        for _ in range(int(n)):
            if self.cursor >= len(self.df) - 1:
                break
            self.cursor += 1
            self._bid_override = None
            moved = True
            self._fill_protective_levels(self.df.iloc[self.cursor])
        return moved

    def _fill_protective_levels(self, bar: pd.Series) -> None:
        hi, lo = float(bar["high"]), float(bar["low"])
        for ticket, p in list(self.positions.items()):
            if p.direction == LONG:
                if p.stop_loss is not None and lo <= p.stop_loss:
                    self._realize(ticket, p.stop_loss)
                elif p.take_profit is not None and hi >= p.take_profit:
                    self._realize(ticket, p.take_profit)
            else:
                if p.stop_loss is not None and hi + self._spread() >= p.stop_loss:
                    self._realize(ticket, p.stop_loss)
                elif p.take_profit is not None and lo + self._spread() <= p.take_profit:
                    self._realize(ticket, p.take_profit)

    # ── pricing ──

    def _spread(self) -> float:
        return self.spread_points * float(self.c.point)

    def _bid(self) -> float:
        if self._bid_override is not None:
            return self._bid_override
        return float(self.df["close"].iloc[self.cursor])

    def _quote(self) -> Quote:
        bid = round(self._bid(), self.c.digits)
        ask = round(bid + self._spread(), self.c.digits)
        return Quote(bid=bid, ask=ask, spread_points=self.spread_points, time=self.now)

    def _pnl(self, p: Position, exit_px: float) -> float:
        per_unit = float(self.c.tick_value) / float(self.c.tick_size) if self.c.tick_size else 0.0
        return (exit_px - p.entry_price) * sign(p.direction) * p.volume * per_unit

    def _floating(self) -> float:
        q = self._quote()
        total = 0.0
        for p in self.positions.values():
            px = q.bid if p.direction == LONG else q.ask
            total += self._pnl(p, px)
        return total

    def _margin(self, volume: float, price: float) -> float:
        return float(volume) * self.contract_size * float(price) / self.leverage

    def _realize(self, ticket: str, exit_px: float) -> None:
        p = self.positions.pop(ticket)
        self._margins.pop(ticket, None)
        self.balance += self._pnl(p, float(exit_px))

    # ── MarketAdapter ──

    def select_symbol(self, symbol: str) -> Result:
        if symbol != self.symbol:
            return Result.failure(f"unknown symbol {symbol}")
        return Result.success(True)

    def quote(self, symbol: str) -> Result:
        if self.quote_down or symbol != self.symbol:
            return Result.failure("quote unavailable")
        return Result.success(self._quote())

    def bars(self, symbol: str, timeframe: str, count: int) -> Result:
        if self.bars_down or symbol != self.symbol:
            return Result.failure("bars unavailable")
        lo = max(0, self.cursor + 1 - int(count))
        return Result.success(frame_to_bars(self.df.iloc[lo:self.cursor + 1]))

    def create_indicator(self, symbol: str, timeframe: str, name: str, period: int) -> Result:
        n = str(name).lower()
        if symbol != self.symbol or n not in INDICATORS or n in self.missing_indicators:
            return Result.failure(f"cannot create {name}({period})")
        return Result.success((n, int(period)))

    def indicator(self, handle: Any, offset: int) -> Result:
        name, period = handle
        if name in self.missing_indicators:
            return Result.failure(f"{name} unavailable")
        idx = self.cursor - int(offset)
        if idx < 0:
            return Result.failure("offset beyond history")
        s = indicator_series(self.df.iloc[:self.cursor + 1], name, period)
        v = float(s.iloc[idx])
        if np.isnan(v) or np.isinf(v):
            return Result.failure(f"{name}({period}) not ready at offset {offset}")
        return Result.success(v)

    def constraints(self, symbol: str) -> Result:
        if symbol != self.symbol:
            return Result.failure(f"unknown symbol {symbol}")
        return Result.success(self.c)

    def account(self) -> Result:
        equity = self.balance + self._floating()
        used = sum(self._margins.values())
        return Result.success(AccountFigures(equity=equity, free_margin=equity - used))

    def estimate_margin(self, symbol: str, direction: str, volume: float, price: float) -> Result:
        if symbol != self.symbol or volume <= 0 or price <= 0:
            return Result.failure("cannot estimate margin")
        return Result.success(self._margin(volume, price))

    def _stops_ok(self, direction: str, q: Quote, stop: Optional[float], target: Optional[float]) -> bool:
        gap = self.c.min_stop_distance
        if direction == LONG:
            if stop is not None and not stop < q.bid - gap + 1e-12:
                return False
            if target is not None and not target > q.bid + gap - 1e-12:
                return False
        else:
            if stop is not None and not stop > q.ask + gap - 1e-12:
                return False
            if target is not None and not target < q.ask - gap + 1e-12:
                return False
        return True

    def place_order(self, symbol, direction, volume, stop, target, owner_tag) -> Result:
        direction = parse_direction(direction)
        req = {"symbol": symbol, "direction": direction, "volume": volume,
               "stop": stop, "target": target, "owner_tag": owner_tag}
        self.orders.append(req)

        if self.order_failures:
            code = self.order_failures.pop(0)
            return Result.failure(describe_code(code), code=code)
        if symbol != self.symbol or direction not in (LONG, SHORT):
            return Result.failure("bad request")
        if not (self.c.min_volume <= volume <= self.c.max_volume):
            return Result.failure(describe_code(RET_INVALID_VOLUME), code=RET_INVALID_VOLUME)

        q = self._quote()
        if not self._stops_ok(direction, q, stop, target):
            return Result.failure(describe_code(RET_INVALID_STOPS), code=RET_INVALID_STOPS)

        entry = q.ask if direction == LONG else q.bid
        margin = self._margin(volume, entry)
        if margin > self.account().value.free_margin:
            return Result.failure(describe_code(RET_NO_MONEY), code=RET_NO_MONEY)

        ticket = str(next(self._tickets))
        self.positions[ticket] = Position(
            ticket=ticket,
            symbol=symbol,
            owner_tag=int(owner_tag),
            direction=direction,
            entry_price=float(entry),
            stop_loss=None if stop is None else float(stop),
            take_profit=None if target is None else float(target),
            open_time=self.now,
            volume=float(volume),
        )
        self._margins[ticket] = margin
        return Result.success(ticket)

    def modify_position(self, ticket, stop, target) -> Result:
        self.modifies.append({"ticket": ticket, "stop": stop, "target": target})
        if self.modify_failures > 0:
            self.modify_failures -= 1
            return Result.failure(describe_code(RET_REJECT), code=RET_REJECT)
        p = self.positions.get(str(ticket))
        if p is None:
            return Result.failure(describe_code(RET_POSITION_NOT_FOUND), code=RET_POSITION_NOT_FOUND)
        if not self._stops_ok(p.direction, self._quote(), stop, target):
            return Result.failure(describe_code(RET_INVALID_STOPS), code=RET_INVALID_STOPS)
        self.positions[p.ticket] = replace(p, stop_loss=stop, take_profit=target)
        return Result.success(True)

    def close_position(self, ticket) -> Result:
        self.closes.append({"ticket": ticket})
        if self.close_failures > 0:
            self.close_failures -= 1
            return Result.failure(describe_code(RET_REJECT), code=RET_REJECT)
        p = self.positions.get(str(ticket))
        if p is None:
            return Result.failure(describe_code(RET_POSITION_NOT_FOUND), code=RET_POSITION_NOT_FOUND)
        q = self._quote()
        self._realize(p.ticket, q.bid if p.direction == LONG else q.ask)
        return Result.success(True)

    def owned_positions(self, symbol, owner_tag) -> Result:
        return Result.success([
            p for p in self.positions.values()
            if p.symbol == symbol and int(p.owner_tag) == int(owner_tag)
        ])
