import json
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Tuple

from breakbot.domain.models import LONG, SHORT, parse_direction
from breakbot.domain.schedule import SessionWindow


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class BotConfig:
    raw: Dict[str, Any]


_ENV_RE = re.compile(r"^\$\{([A-Z0-9_]+)\}$")


def _expand_env_value(v: Any) -> Any:
    """
    Conservative env expansion:
      - only replaces strings that are EXACTLY '${VAR}'
      - leaves everything else unchanged
    """
    if isinstance(v, str):
        m = _ENV_RE.fullmatch(v.strip())
        if m:
            return os.environ.get(m.group(1), v)
    return v


def _expand_env_tree(x: Any) -> Any:
    if isinstance(x, dict):
        return {k: _expand_env_tree(_expand_env_value(v)) for k, v in x.items()}
    if isinstance(x, list):
        return [_expand_env_tree(_expand_env_value(v)) for v in x]
    return _expand_env_value(x)


def load_config(path: str) -> BotConfig:
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Config file not found: {p}")

    try:
        raw = json.loads(p.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in config {p}: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigError(f"Config {p} must be a JSON object at top-level")

    return BotConfig(raw=_expand_env_tree(raw))


# ──────────────────────────────────────────────────
# Typed sections
# ──────────────────────────────────────────────────

@dataclass(frozen=True)
class MarketCfg:
    symbol: str
    timeframe: str = "M15"
    history_bars: int = 300


@dataclass(frozen=True)
class SignalCfg:
    entry_lookback: int = 20
    exit_lookback: int = 10
    trend_period: int = 200
    rsi_period: int = 14
    rsi_long_min: float = 55.0
    rsi_short_max: float = 45.0
    atr_period: int = 14
    exit_on_opposite_channel: bool = True


@dataclass(frozen=True)
class RiskCfg:
    risk_fraction: float = 0.0075
    fixed_volume: float = 0.0
    single_position: bool = True
    max_spread_points: float = 0.0
    margin_safety_fraction: float = 0.10


@dataclass(frozen=True)
class ExecutionCfg:
    atr_stop_mult: float = 2.0
    reward_multiple: float = 2.0
    max_attempts: int = 3
    retry_delay_sec: float = 1.0


@dataclass(frozen=True)
class TrailingCfg:
    enabled: bool = True
    mode: str = "atr"
    break_even_r: float = 1.0
    trail_start_r: float = 1.5
    atr_mult: float = 2.0
    swing_lookback: int = 10
    swing_buffer_points: float = 0.0
    min_step_points: float = 2.0
    time_exit_minutes: float = 0.0


@dataclass(frozen=True)
class BulkCfg:
    target_count: int = 5
    direction: str = LONG
    one_shot: bool = True
    swing_lookback: int = 20
    swing_buffer_points: float = 0.0


@dataclass(frozen=True)
class EngineConfig:
    market: MarketCfg
    strategy: str = "breakout"
    bot_id: str = "breakbot"
    owner_tag: int = 20240101
    poll_seconds: float = 5.0
    signal: SignalCfg = field(default_factory=SignalCfg)
    risk: RiskCfg = field(default_factory=RiskCfg)
    execution: ExecutionCfg = field(default_factory=ExecutionCfg)
    trailing: TrailingCfg = field(default_factory=TrailingCfg)
    bulk: BulkCfg = field(default_factory=BulkCfg)
    session: SessionWindow = field(default_factory=SessionWindow)
    telegram_enabled: bool = False
    log_timezone: str = "UTC"

    @classmethod
    def from_raw(cls, raw: Dict[str, Any]) -> "EngineConfig":
        """Validate a raw config dict. Raises ConfigError on anything unusable."""
        try:
            return _build(raw or {})
        except ConfigError:
            raise
        except (TypeError, ValueError, KeyError) as e:
            raise ConfigError(f"Config error: {e}") from e


def _section(raw: Dict[str, Any], name: str) -> Dict[str, Any]:
    v = raw.get(name) or {}
    if not isinstance(v, dict):
        raise ConfigError(f"Config error: '{name}' must be an object")
    return v


def _bool(v: Any) -> bool:
    if isinstance(v, str):
        return v.strip().lower() in ("1", "true", "yes", "y", "on")
    return bool(v)


def _pick(sec: Dict[str, Any], defaults: Any, casts: Dict[str, Any]) -> Dict[str, Any]:
    out = {}
    for key, cast in casts.items():
        out[key] = cast(sec[key]) if key in sec else getattr(defaults, key)
    return out


def _weekdays(v: Any) -> Tuple[int, ...]:
    days = tuple(int(d) for d in v)
    if any(d < 0 or d > 6 for d in days):
        raise ConfigError(f"Config error: weekdays must be 0..6, got {list(days)}")
    return days


def _build(raw: Dict[str, Any]) -> EngineConfig:
    market = _section(raw, "market")
    symbol = str(market.get("symbol") or "").strip()
    if not symbol:
        raise ConfigError("Config error: market.symbol is missing")

    strategy = str(raw.get("strategy") or "breakout").strip().lower()
    if strategy not in ("breakout", "bulk"):
        raise ConfigError(f"Config error: unknown strategy {strategy!r}")

    sig = SignalCfg(**_pick(_section(raw, "signal"), SignalCfg(), {
        "entry_lookback": int, "exit_lookback": int, "trend_period": int,
        "rsi_period": int, "rsi_long_min": float, "rsi_short_max": float,
        "atr_period": int, "exit_on_opposite_channel": _bool,
    }))
    risk = RiskCfg(**_pick(_section(raw, "risk"), RiskCfg(), {
        "risk_fraction": float, "fixed_volume": float,
        "single_position": _bool, "max_spread_points": float,
        "margin_safety_fraction": float,
    }))
    exe = ExecutionCfg(**_pick(_section(raw, "execution"), ExecutionCfg(), {
        "atr_stop_mult": float, "reward_multiple": float,
        "max_attempts": int, "retry_delay_sec": float,
    }))
    trail = TrailingCfg(**_pick(_section(raw, "trailing"), TrailingCfg(), {
        "enabled": _bool, "mode": lambda v: str(v).strip().lower(),
        "break_even_r": float, "trail_start_r": float, "atr_mult": float,
        "swing_lookback": int, "swing_buffer_points": float,
        "min_step_points": float, "time_exit_minutes": float,
    }))
    bulk = BulkCfg(**_pick(_section(raw, "bulk"), BulkCfg(), {
        "target_count": int, "direction": parse_direction,
        "one_shot": _bool, "swing_lookback": int, "swing_buffer_points": float,
    }))

    sched = _section(raw, "schedule")
    session = SessionWindow(
        enabled=_bool(sched.get("session_enabled", False)),
        tz_name=str(sched.get("timezone") or "UTC"),
        start=str(sched.get("session_start") or "00:00"),
        end=str(sched.get("session_end") or "23:59"),
        weekdays=_weekdays(sched.get("weekdays", (0, 1, 2, 3, 4))),
    )
    session.validate()

    for name, val in (("signal.entry_lookback", sig.entry_lookback),
                      ("signal.exit_lookback", sig.exit_lookback),
                      ("signal.atr_period", sig.atr_period),
                      ("signal.trend_period", sig.trend_period),
                      ("signal.rsi_period", sig.rsi_period),
                      ("execution.max_attempts", exe.max_attempts)):
        if val < 1:
            raise ConfigError(f"Config error: {name} must be >= 1")
    if exe.atr_stop_mult <= 0:
        raise ConfigError("Config error: execution.atr_stop_mult must be > 0")
    if exe.retry_delay_sec < 0:
        raise ConfigError("Config error: execution.retry_delay_sec must be >= 0")
    if risk.fixed_volume <= 0 and risk.risk_fraction <= 0:
        raise ConfigError("Config error: set risk.risk_fraction or risk.fixed_volume")
    if trail.mode not in ("atr", "swing"):
        raise ConfigError(f"Config error: trailing.mode must be 'atr' or 'swing', got {trail.mode!r}")
    if not 0.0 <= risk.margin_safety_fraction < 1.0:
        raise ConfigError("Config error: risk.margin_safety_fraction must be in [0, 1)")
    history_bars = int(market.get("history_bars", 300))
    if history_bars < 2:
        raise ConfigError("Config error: market.history_bars must be >= 2")
    if trail.enabled and trail.mode == "swing" and history_bars < trail.swing_lookback + 1:
        raise ConfigError(
            f"Config error: market.history_bars={history_bars} is below trailing.swing_lookback + 1 "
            f"({trail.swing_lookback + 1})")
    if strategy == "bulk":
        if bulk.direction not in (LONG, SHORT):
            raise ConfigError("Config error: bulk.direction must be LONG or SHORT")
        if bulk.target_count < 1:
            raise ConfigError("Config error: bulk.target_count must be >= 1")
        if bulk.swing_lookback < 1:
            raise ConfigError("Config error: bulk.swing_lookback must be >= 1")

    notif = _section(raw, "notifications")
    log_cfg = _section(raw, "log")

    return EngineConfig(
        market=MarketCfg(
            symbol=symbol,
            timeframe=str(market.get("timeframe") or "M15"),
            history_bars=history_bars,
        ),
        strategy=strategy,
        bot_id=str(raw.get("bot_id") or symbol),
        owner_tag=int(raw.get("owner_tag", 20240101)),
        poll_seconds=float(raw.get("poll_seconds", 5)),
        signal=sig,
        risk=risk,
        execution=exe,
        trailing=trail,
        bulk=bulk,
        session=session,
        telegram_enabled=_bool(notif.get("telegram_enabled", False)),
        log_timezone=str(log_cfg.get("timezone") or "UTC"),
    )
