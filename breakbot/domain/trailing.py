from dataclasses import dataclass
from typing import Optional, Sequence

from breakbot.domain.models import LONG, Bar, Quote


def profit_points(direction: str, entry_px: float, live_px: float) -> float:
    return (live_px - entry_px) if direction == LONG else (entry_px - live_px)


def live_price(direction: str, quote: Quote) -> float:
    """Price a position would close at: bid for longs, ask for shorts."""
    return float(quote.bid) if direction == LONG else float(quote.ask)


def better(direction: str, new: float, old: Optional[float], min_step: float = 0.0) -> bool:
    """True if `new` tightens `old` by more than min_step. A missing stop is always improved."""
    if old is None:
        return True
    if direction == LONG:
        return float(new) > float(old) + float(min_step)
    return float(new) < float(old) - float(min_step)


def clamp_to_min_stop(direction: str, stop: float, quote: Quote, min_distance: float) -> float:
    """Pull a stop back to the nearest level the broker accepts."""
    if min_distance <= 0:
        return float(stop)
    if direction == LONG:
        return min(float(stop), float(quote.bid) - float(min_distance))
    return max(float(stop), float(quote.ask) + float(min_distance))


def swing_stop(direction: str, bars: Sequence[Bar], lookback: int, buffer: float = 0.0) -> Optional[float]:
    """
    Lowest low (long) / highest high (short) over the last `lookback`
    closed bars, pushed out by `buffer`. bars are most-recent-first,
    bars[0] is the forming bar and is ignored.
    """
    closed = list(bars[1:1 + int(lookback)])
    if lookback <= 0 or len(closed) < int(lookback):
        return None
    if direction == LONG:
        return min(float(b.low) for b in closed) - float(buffer)
    return max(float(b.high) for b in closed) + float(buffer)


@dataclass(frozen=True)
class StopPlan:
    stop: float
    stage: str  # "break_even" | "trailing"
    fav: float
    r_points: float


def plan_stop_update(
    direction: str,
    entry: float,
    initial_stop: Optional[float],
    current_stop: Optional[float],
    quote: Quote,
    *,
    break_even_r: float,
    trail_start_r: float,
    trail_ref: Optional[float],
    min_stop_distance: float = 0.0,
    min_step: float = 0.0,
    digits: int = 5,
) -> Optional[StopPlan]:
    """
    Break-even + trailing for one position. Pure.

      R   = |entry - initial_stop|
      fav = bid - entry (long) / entry - ask (short)

      fav >= break_even_r * R  -> stop to entry unless already at/beyond it
      fav >= trail_start_r * R -> stop to trail_ref (price -/+ ATR*mult or swing)

    Both steps run in order; trailing sees the break-even result.
    Never worsens the stop. Returns None when nothing should be sent.
    """
    if initial_stop is None:
        return None
    r_points = abs(float(entry) - float(initial_stop))
    if r_points <= 0:
        return None

    fav = profit_points(direction, float(entry), live_price(direction, quote))
    if fav <= 0:
        return None

    sl = current_stop
    stage = None

    if break_even_r > 0 and fav >= break_even_r * r_points:
        be = round(float(entry), digits)
        # too close to price for the broker: wait for more room
        reachable = clamp_to_min_stop(direction, be, quote, min_stop_distance) == be
        if reachable and better(direction, be, sl):
            sl = be
            stage = "break_even"

    if trail_ref is not None and trail_start_r > 0 and fav >= trail_start_r * r_points:
        cand = clamp_to_min_stop(direction, float(trail_ref), quote, min_stop_distance)
        cand = round(cand, digits)
        if better(direction, cand, sl, min_step):
            sl = cand
            stage = "trailing"

    if stage is None or sl is None:
        return None
    return StopPlan(stop=float(sl), stage=stage, fav=float(fav), r_points=float(r_points))
