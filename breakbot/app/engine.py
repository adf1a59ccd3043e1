import signal
import threading
import time
from typing import Any, Callable, Dict, Optional

import pandas as pd

from breakbot.app.bulk import BulkOpenController
from breakbot.app.config import EngineConfig
from breakbot.app.execution import OrderExecutor
from breakbot.app.handlers import (
    BreakoutHandler,
    BulkOpenHandler,
    EngineContext,
    InvocationHandler,
)
from breakbot.app.lifecycle import PositionManager
from breakbot.app.loader import load_object
from breakbot.app.telegram_notifier import telegram_event
from breakbot.broker.adapter import MarketAdapter
from breakbot.broker.paper import PaperBroker
from breakbot.data.bars import load_bars_csv
from breakbot.domain.lock import InstanceLock
from breakbot.domain.logger import log_line, set_log_timezone
from breakbot.domain.models import EngineRunState, safe_call
from breakbot.domain.paths import bot_paths
from breakbot.strategy.breakout import BreakoutStrategy

Notify = Callable[[str, dict], None]


class InitError(RuntimeError):
    """The engine cannot start: bad environment, missing data or no margin."""


# ──────────────────────────────────────────────────
# Build
# ──────────────────────────────────────────────────

def _indicator_handles(cfg: EngineConfig, adapter: MarketAdapter) -> Dict[str, Any]:
    sym, tf = cfg.market.symbol, cfg.market.timeframe
    wanted = {"atr": cfg.signal.atr_period}
    if cfg.strategy == "breakout":
        wanted["ema"] = cfg.signal.trend_period
        wanted["rsi"] = cfg.signal.rsi_period

    handles = {}
    for name, period in wanted.items():
        res = safe_call(adapter.create_indicator, sym, tf, name, int(period))
        if not res.ok:
            raise InitError(f"Indicator {name}({period}) unavailable for {sym}: {res.describe()}")
        handles[name] = res.value
    return handles


class Engine:
    """A built handler plus its run state. invoke() is one timer tick."""

    def __init__(self, cfg: EngineConfig, handler: InvocationHandler, *, logfile=None):
        self.cfg = cfg
        self.handler = handler
        self.logfile = logfile
        self.state = EngineRunState()

    def invoke(self) -> None:
        try:
            self.handler.on_invocation(self.state)
        except Exception as e:
            log_line(self.logfile, f"INVOCATION error: {repr(e)} (next tick continues)")


def build_engine(
    cfg: EngineConfig,
    adapter: MarketAdapter,
    *,
    logfile=None,
    sleep: Callable[[float], None] = time.sleep,
    notify: Optional[Notify] = None,
) -> Engine:
    """
    Wire adapter, executor, lifecycle manager and the strategy handler.

    Raises InitError when the symbol cannot be selected, an indicator handle
    cannot be created, history_bars cannot cover the breakout channels, or
    (bulk) target_count exceeds the margin capacity.
    """
    sym = cfg.market.symbol

    res = safe_call(adapter.select_symbol, sym)
    if not res.ok:
        raise InitError(f"Symbol {sym} not selectable: {res.describe()}")
    res = safe_call(adapter.constraints, sym)
    if not res.ok:
        raise InitError(f"Instrument constraints unavailable for {sym}: {res.describe()}")

    handles = _indicator_handles(cfg, adapter)

    executor = OrderExecutor(adapter, sym, cfg.owner_tag, cfg.execution,
                             logfile=logfile, sleep=sleep, notify=notify)

    if cfg.strategy == "breakout":
        strategy = BreakoutStrategy(cfg.signal, cfg.execution.atr_stop_mult)
        if cfg.market.history_bars < strategy.bars_needed:
            raise InitError(f"market.history_bars={cfg.market.history_bars} is below the {strategy.bars_needed} bars "
                            f"the breakout channels need")
        exit_check = strategy.exit_signal if cfg.signal.exit_on_opposite_channel else None
        manager = PositionManager(executor, cfg.trailing, logfile=logfile, exit_check=exit_check)
        ctx = EngineContext(cfg=cfg, adapter=adapter, executor=executor, manager=manager,
                            handles=handles, logfile=logfile)
        handler: InvocationHandler = BreakoutHandler(ctx, strategy)
    else:
        manager = PositionManager(executor, cfg.trailing, logfile=logfile)
        ctx = EngineContext(cfg=cfg, adapter=adapter, executor=executor, manager=manager,
                            handles=handles, logfile=logfile)
        bulk = BulkOpenController(adapter, executor, cfg.market, cfg.bulk, cfg.risk, cfg.execution,
                                  cfg.owner_tag, logfile=logfile, notify=notify)
        cap = bulk.check_capacity()
        if not cap.ok:
            raise InitError(f"Bulk capacity check failed: {cap.message}")
        log_line(logfile, f"BULK capacity={cap.value} target={cfg.bulk.target_count}")
        handler = BulkOpenHandler(ctx, bulk)

    log_line(logfile, f"ENGINE ready strategy={cfg.strategy} symbol={sym} tf={cfg.market.timeframe} owner_tag={cfg.owner_tag}")
    return Engine(cfg, handler, logfile=logfile)


# ──────────────────────────────────────────────────
# Graceful shutdown
# ──────────────────────────────────────────────────

_shutdown_flag = threading.Event()


def _install_signal_handlers(logfile) -> Dict[int, Any]:
    """SIGTERM/SIGINT set the shutdown flag; the loop exits after the current tick."""
    previous = {s: signal.getsignal(s) for s in (signal.SIGTERM, signal.SIGINT)}

    def _handler(signum, frame):
        name = signal.Signals(signum).name
        log_line(logfile, f"SHUTDOWN: received {name}, shutting down gracefully...")
        _shutdown_flag.set()
    signal.signal(signal.SIGTERM, _handler)
    signal.signal(signal.SIGINT, _handler)
    return previous


# ──────────────────────────────────────────────────
# Run loop
# ──────────────────────────────────────────────────

def _make_adapter(raw: Dict[str, Any], cfg: EngineConfig, paper_bars: Optional[str]) -> MarketAdapter:
    if paper_bars:
        try:
            df = load_bars_csv(paper_bars)
        except (OSError, ValueError) as e:
            raise InitError(f"Cannot load paper bars: {e}") from e
        if len(df) < 2:
            raise InitError(f"Paper bars file {paper_bars} has fewer than 2 usable rows")
        warmup = min(len(df) - 1, int(cfg.market.history_bars))
        return PaperBroker(df, symbol=cfg.market.symbol, cursor=warmup)

    adapter_cfg = raw.get("adapter") or {}
    spec = adapter_cfg.get("class")
    if not spec:
        raise InitError("Config error: adapter.class is missing (or run with --paper-bars)")
    try:
        return load_object(str(spec), adapter_cfg.get("params") or {})
    except (ImportError, AttributeError, TypeError, ValueError) as e:
        raise InitError(f"Cannot load adapter {spec!r}: {e}") from e


def run_bot(raw: Dict[str, Any], once: bool = False, paper_bars: Optional[str] = None) -> None:
    cfg = EngineConfig.from_raw(raw)
    set_log_timezone(cfg.log_timezone)
    logfile, lock_path = bot_paths(cfg.bot_id)

    lock = InstanceLock(lock_path)
    lock.acquire()
    previous_handlers: Dict[int, Any] = {}
    try:
        adapter = _make_adapter(raw, cfg, paper_bars)

        def notify(event: str, payload: dict) -> None:
            if cfg.telegram_enabled:
                telegram_event(cfg.bot_id, event, payload)

        engine = build_engine(cfg, adapter, logfile=logfile, notify=notify)

        notify("STARTUP", {"symbol": cfg.market.symbol, "timeframe": cfg.market.timeframe,
                           "strategy": cfg.strategy})

        _shutdown_flag.clear()
        previous_handlers = _install_signal_handlers(logfile)

        paper = isinstance(adapter, PaperBroker)
        poll = float(cfg.poll_seconds)

        while not _shutdown_flag.is_set():
            t0 = time.monotonic()
            engine.invoke()
            if once:
                break
            if paper:
                if not adapter.advance():
                    log_line(logfile, f"PAPER end of data at {pd.Timestamp(adapter.now).isoformat()} "
                                      f"balance={adapter.balance:.2f} open={len(adapter.positions)}")
                    break
                continue
            _shutdown_flag.wait(max(0.0, poll - (time.monotonic() - t0)))

        log_line(logfile, f"SHUTDOWN complete invocations={engine.state.invocations}")
    finally:
        for signum, handler in previous_handlers.items():
            signal.signal(signum, handler)
        lock.release()
