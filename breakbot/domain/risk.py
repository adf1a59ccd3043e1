import math
from typing import Optional

from breakbot.domain.models import InstrumentConstraints


def _isfinite(x) -> bool:
    try:
        return math.isfinite(float(x))
    except Exception:
        return False


def _f(x, default: float = 0.0) -> float:
    return float(x) if _isfinite(x) else float(default)


def _step_decimals(step: float) -> int:
    s = f"{step:.10f}".rstrip("0")
    return len(s.split(".", 1)[1]) if "." in s else 0


def normalize_volume(volume: float, c: InstrumentConstraints) -> float:
    """
    Broker-valid volume.

      1. clamp into [min, max]
      2. snap to the NEAREST step counted from min
      3. re-clamp (stepping down if rounding overshot max)

    Idempotent: normalize(normalize(v)) == normalize(v).
    """
    vmin = max(0.0, _f(c.min_volume))
    vmax = max(vmin, _f(c.max_volume, vmin))
    step = _f(c.volume_step)
    v = min(vmax, max(vmin, _f(volume)))

    if step <= 0:
        return float(v)

    nd = _step_decimals(step)
    k = int(round((v - vmin) / step))
    out = round(vmin + k * step, nd + 2)
    if out > vmax + 1e-12:
        k = int(math.floor((vmax - vmin) / step + 1e-9))
        out = round(vmin + k * step, nd + 2)
    if out < vmin:
        out = vmin
    return float(out)


def raw_risk_volume(
    equity: float,
    risk_fraction: float,
    stop_distance: float,
    tick_value: float,
    tick_size: float,
) -> float:
    """
    Fixed fractional risk, before any broker constraint.

    risk_money = equity * risk_fraction
    money_per_unit_per_lot = tick_value / tick_size
    volume = risk_money / (stop_distance * money_per_unit_per_lot)

    Returns 0.0 when any input is non-positive or not finite ("cannot size").
    """
    equity = _f(equity)
    risk_fraction = max(0.0, min(1.0, _f(risk_fraction)))
    stop_distance = _f(stop_distance)
    tick_value = _f(tick_value)
    tick_size = _f(tick_size)

    if equity <= 0 or risk_fraction <= 0 or stop_distance <= 0 or tick_value <= 0 or tick_size <= 0:
        return 0.0

    risk_money = equity * risk_fraction
    per_unit = tick_value / tick_size
    raw = risk_money / (stop_distance * per_unit)
    if not _isfinite(raw) or raw <= 0:
        return 0.0
    return float(raw)


def calc_volume(
    c: InstrumentConstraints,
    *,
    equity: float,
    risk_fraction: float,
    stop_distance: float,
    fixed_volume: Optional[float] = None,
) -> float:
    """
    Order volume for one entry. fixed_volume > 0 bypasses risk sizing.
    Returns 0.0 when the trade cannot be sized; callers skip the entry.
    """
    fixed = _f(fixed_volume)
    if fixed > 0:
        return normalize_volume(fixed, c)

    raw = raw_risk_volume(equity, risk_fraction, stop_distance, c.tick_value, c.tick_size)
    if raw <= 0:
        return 0.0
    return normalize_volume(raw, c)


def max_positions_by_margin(free_margin: float, safety_fraction: float, margin_per_position: float) -> int:
    """
    floor(free_margin * (1 - safety_fraction) / margin_per_position)
    0 when margin per position is unknown or non-positive.
    """
    free_margin = _f(free_margin)
    safety = max(0.0, min(1.0, _f(safety_fraction)))
    mpp = _f(margin_per_position)
    if free_margin <= 0 or mpp <= 0:
        return 0
    usable = free_margin * (1.0 - safety)
    # guard against 900/100 -> 8.999999
    return int(math.floor(usable / mpp + 1e-9))
