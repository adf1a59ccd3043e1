"""
Order execution: entries with bounded retry, stop modifications, closes.

Prices move between attempts, so stop/target are recomputed from a fresh
quote before every resend. The recompute step is a pure function
(quote -> OrderLevels) supplied by the caller.
"""
import time
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

from breakbot.app.config import ExecutionCfg
from breakbot.broker.adapter import MarketAdapter
from breakbot.domain.logger import log_line
from breakbot.domain.models import (
    LONG,
    SHORT,
    Bar,
    InstrumentConstraints,
    OrderLevels,
    Position,
    Quote,
    Result,
    safe_call,
    sign,
)
from breakbot.domain.trailing import better, clamp_to_min_stop, swing_stop

LevelsFn = Callable[[Quote], Optional[OrderLevels]]
Notify = Callable[[str, dict], None]


def _entry_price(direction: str, quote: Quote) -> float:
    return float(quote.ask) if direction == LONG else float(quote.bid)


def _target(entry: float, direction: str, distance: float, reward_multiple: float, digits: int) -> Optional[float]:
    if reward_multiple <= 0:
        return None
    return round(entry + sign(direction) * distance * float(reward_multiple), digits)


def compute_levels(
    direction: str,
    quote: Quote,
    atr: float,
    stop_mult: float,
    reward_multiple: float,
    digits: int,
) -> Optional[OrderLevels]:
    """
    Entry at the side of the book we trade into.
      stop   = entry -/+ atr * stop_mult
      target = entry +/- stop_distance * reward_multiple (None if reward <= 0)
    None when the stop distance is not positive.
    """
    if direction not in (LONG, SHORT):
        return None
    distance = float(atr) * float(stop_mult)
    if not distance > 0:
        return None
    entry = _entry_price(direction, quote)
    stop = round(entry - sign(direction) * distance, digits)
    dist = abs(entry - stop)
    if dist <= 0:
        return None
    return OrderLevels(entry=entry, stop=stop, target=_target(entry, direction, dist, reward_multiple, digits))


def swing_levels(
    direction: str,
    quote: Quote,
    bars: Sequence[Bar],
    lookback: int,
    buffer: float,
    reward_multiple: float,
    digits: int,
) -> Optional[OrderLevels]:
    """Stop beyond the lookback swing low (long) / high (short)."""
    if direction not in (LONG, SHORT):
        return None
    stop = swing_stop(direction, bars, lookback, buffer)
    if stop is None:
        return None
    entry = _entry_price(direction, quote)
    stop = round(stop, digits)
    dist = (entry - stop) * sign(direction)
    if dist <= 0:
        return None
    return OrderLevels(entry=entry, stop=stop, target=_target(entry, direction, dist, reward_multiple, digits))


@dataclass(frozen=True)
class EntryOutcome:
    ok: bool
    ticket: Optional[str] = None
    levels: Optional[OrderLevels] = None
    attempts: int = 0
    recomputes: int = 0
    code: int = 0
    message: str = ""


class OrderExecutor:

    def __init__(
        self,
        adapter: MarketAdapter,
        symbol: str,
        owner_tag: int,
        cfg: ExecutionCfg,
        *,
        logfile=None,
        sleep: Callable[[float], None] = time.sleep,
        notify: Optional[Notify] = None,
    ):
        self.adapter = adapter
        self.symbol = symbol
        self.owner_tag = int(owner_tag)
        self.cfg = cfg
        self.logfile = logfile
        self.sleep = sleep
        self.notify = notify

    def _notify(self, event: str, payload: dict) -> None:
        if self.notify is not None:
            try:
                self.notify(event, payload)
            except Exception as e:
                log_line(self.logfile, f"NOTIFY warning: {repr(e)}")

    def _quote(self) -> Optional[Quote]:
        res = safe_call(self.adapter.quote, self.symbol)
        if not res.ok:
            log_line(self.logfile, f"QUOTE unavailable: {res.describe()}")
            return None
        return res.value

    def place_entry(self, direction: str, volume: float, levels_fn: LevelsFn) -> EntryOutcome:
        """
        Send a market entry, retrying up to cfg.max_attempts.

        Before each resend: blocking wait of retry_delay_sec, fresh quote,
        levels_fn(quote). Never raises; exhaustion is a failed outcome.
        """
        if volume <= 0:
            return EntryOutcome(ok=False, message="zero volume")

        q = self._quote()
        if q is None:
            return EntryOutcome(ok=False, message="quote unavailable")
        levels = levels_fn(q)
        if levels is None:
            log_line(self.logfile, f"ENTRY skipped {direction}: invalid stop distance")
            return EntryOutcome(ok=False, message="invalid levels")

        max_attempts = max(1, int(self.cfg.max_attempts))
        recomputes = 0
        last = Result.failure("not sent")

        for attempt in range(1, max_attempts + 1):
            last = safe_call(
                self.adapter.place_order,
                self.symbol, direction, float(volume), levels.stop, levels.target, self.owner_tag,
            )
            if last.ok:
                ticket = str(last.value)
                log_line(
                    self.logfile,
                    f"ENTRY ✅ ticket={ticket} {direction} vol={volume} entry~{levels.entry} "
                    f"SL={levels.stop} TP={levels.target} attempt={attempt}",
                )
                self._notify("TRADE_OPEN", {
                    "symbol": self.symbol, "direction": direction, "volume": volume,
                    "entry_price": levels.entry, "sl": levels.stop, "tp": levels.target,
                    "ticket": ticket,
                })
                return EntryOutcome(ok=True, ticket=ticket, levels=levels, attempts=attempt,
                                    recomputes=recomputes, code=last.code)

            log_line(self.logfile, f"ORDER_REJECTED attempt={attempt}/{max_attempts} {direction} vol={volume} {last.describe()}")
            if attempt == max_attempts:
                break

            self.sleep(float(self.cfg.retry_delay_sec))
            fresh = self._quote()
            if fresh is None:
                log_line(self.logfile, f"ENTRY aborted {direction}: quote unavailable after attempt {attempt}")
                return EntryOutcome(ok=False, levels=levels, attempts=attempt, recomputes=recomputes,
                                    code=last.code, message="quote unavailable")
            new_levels = levels_fn(fresh)
            recomputes += 1
            if new_levels is None:
                log_line(self.logfile, f"ENTRY aborted {direction}: invalid stop distance after requote")
                return EntryOutcome(ok=False, levels=levels, attempts=attempt, recomputes=recomputes,
                                    code=last.code, message="invalid levels")
            levels = new_levels

        log_line(self.logfile, f"ENTRY ❌ {direction} gave up after {max_attempts} attempts: {last.describe()}")
        self._notify("ENTRY_FAILED", {"symbol": self.symbol, "direction": direction,
                                      "attempts": max_attempts, "code": last.code, "message": last.message})
        return EntryOutcome(ok=False, levels=levels, attempts=max_attempts, recomputes=recomputes,
                            code=last.code, message=last.message)

    def modify_stop(
        self,
        position: Position,
        new_stop: float,
        quote: Quote,
        c: InstrumentConstraints,
        reason: str = "",
    ) -> Result:
        """
        Move the stop of an open position, keeping its take-profit.

        The candidate is clamped to the broker's minimum stop distance and
        must still tighten the current stop, otherwise nothing is sent.
        Failures are logged and left for the next invocation.
        """
        d = position.direction
        stop = round(clamp_to_min_stop(d, float(new_stop), quote, c.min_stop_distance), int(c.digits))
        if not better(d, stop, position.stop_loss):
            return Result.failure("no improvement after min-stop clamp", code=0)

        res = safe_call(self.adapter.modify_position, position.ticket, stop, position.take_profit)
        if res.ok:
            log_line(self.logfile, f"TRAIL ticket={position.ticket} {reason} SL {position.stop_loss} -> {stop}")
            self._notify("TRAIL_SL", {"symbol": self.symbol, "ticket": position.ticket, "sl": stop, "stage": reason})
            return Result.success(stop)
        log_line(self.logfile, f"MODIFY_FAILED ticket={position.ticket} SL->{stop} {res.describe()} (retry next cycle)")
        return res

    def close(self, position: Position, reason: str) -> Result:
        res = safe_call(self.adapter.close_position, position.ticket)
        if res.ok:
            log_line(self.logfile, f"EXIT {reason} ticket={position.ticket} {position.direction} vol={position.volume}")
            self._notify("TRADE_CLOSE", {"symbol": self.symbol, "ticket": position.ticket,
                                         "direction": position.direction, "reason": reason})
        else:
            log_line(self.logfile, f"CLOSE_FAILED ticket={position.ticket} reason={reason} {res.describe()} (retry next cycle)")
        return res
