"""
Tests for the breakout invocation path wired through build_engine.

The frame is 25 flat bars at 100, one breakout bar closing at 102 and a
forming bar. With period-5 indicators the breakout bar gives
EMA < 102, RSI = 100 and ATR = 1.4, so a LONG signal fires on it.
"""

import pytest

from breakbot.app.engine import Engine, InitError, build_engine
from breakbot.app.handlers import InvocationHandler
from breakbot.broker.paper import PaperBroker
from breakbot.domain.models import LONG

SYMBOL = "XAUUSD"
CLOSES = [100.0] * 25 + [102.0, 102.0]


def _breakout_config(config_factory, **sections):
    base = dict(
        signal={"entry_lookback": 5, "exit_lookback": 3, "trend_period": 5,
                "rsi_period": 5, "atr_period": 5},
        execution={"atr_stop_mult": 2.0, "reward_multiple": 2.0, "max_attempts": 2, "retry_delay_sec": 0},
    )
    base.update(sections)
    return config_factory(**base)


def _setup(frame_factory, config_factory, closes=CLOSES, **sections):
    broker = PaperBroker(frame_factory(closes), symbol=SYMBOL)
    engine = build_engine(_breakout_config(config_factory, **sections), broker, sleep=lambda s: None)
    return broker, engine


class TestBreakoutEntry:

    def test_enters_long_on_breakout(self, frame_factory, config_factory):
        broker, engine = _setup(frame_factory, config_factory)
        engine.invoke()

        assert len(broker.orders) == 1
        order = broker.orders[0]
        assert order["direction"] == LONG
        # entry at ask 102.10, stop distance ATR 1.4 * 2
        assert order["stop"] == pytest.approx(99.3)
        assert order["target"] == pytest.approx(107.7)
        # 75 risk / (2.8 * 100 per lot) = 0.2678 -> 0.27
        assert order["volume"] == pytest.approx(0.27)
        assert engine.state.last_bar_time == broker.df.index[-2]

    def test_fires_once_per_closed_bar(self, frame_factory, config_factory):
        broker, engine = _setup(frame_factory, config_factory)
        _close = broker.close_position
        engine.invoke()
        for ticket in list(broker.positions):
            _close(ticket)
        engine.invoke()
        engine.invoke()
        assert len(broker.orders) == 1
        assert engine.state.invocations == 3

    def test_single_position_gate(self, frame_factory, config_factory):
        broker, engine = _setup(frame_factory, config_factory)
        engine.invoke()
        engine.state.last_bar_time = None
        engine.invoke()
        assert len(broker.orders) == 1

    def test_multi_position_bounded_by_margin(self, frame_factory, config_factory):
        broker, engine = _setup(frame_factory, config_factory, risk={"single_position": False, "fixed_volume": 1.0})
        broker.balance = 250.0
        engine.invoke()
        engine.state.last_bar_time = None
        engine.invoke()
        # first entry: capacity floor(225 / 102.1) = 2; after the fill free margin drops and capacity is 1
        assert len(broker.positions) == 1

    def test_spread_gate_blocks_entry(self, frame_factory, config_factory):
        broker, engine = _setup(frame_factory, config_factory, risk={"max_spread_points": 5})
        engine.invoke()
        assert broker.orders == []
        assert engine.state.last_bar_time is not None

    def test_session_gate_blocks_entry(self, frame_factory, config_factory):
        broker, engine = _setup(
            frame_factory, config_factory,
            schedule={"session_enabled": True, "timezone": "UTC", "weekdays": [5, 6]},
        )
        engine.invoke()
        assert broker.orders == []

    def test_no_signal_on_flat_market(self, frame_factory, config_factory):
        broker, engine = _setup(frame_factory, config_factory, closes=[100.0, 100.2] * 15)
        engine.invoke()
        assert broker.orders == []
        assert engine.state.last_bar_time is not None

    def test_unavailable_bars_skip_without_consuming_bar(self, frame_factory, config_factory):
        broker, engine = _setup(frame_factory, config_factory)
        broker.bars_down = True
        engine.invoke()
        assert broker.orders == []
        assert engine.state.last_bar_time is None

        broker.bars_down = False
        engine.invoke()
        assert len(broker.orders) == 1

    def test_unavailable_indicator_skips_without_consuming_bar(self, frame_factory, config_factory):
        broker, engine = _setup(frame_factory, config_factory)
        broker.missing_indicators = {"rsi"}
        engine.invoke()
        assert broker.orders == []
        assert engine.state.last_bar_time is None

    def test_retry_exhaustion_keeps_running(self, frame_factory, config_factory):
        broker, engine = _setup(frame_factory, config_factory)
        broker.order_failures = [10006, 10006]
        engine.invoke()
        assert len(broker.orders) == 2
        assert broker.positions == {}
        engine.invoke()
        assert len(broker.orders) == 2


class TestInitialization:

    def test_unknown_symbol_is_fatal(self, frame_factory, config_factory):
        broker = PaperBroker(frame_factory(CLOSES), symbol="EURUSD")
        with pytest.raises(InitError, match="not selectable"):
            build_engine(_breakout_config(config_factory), broker)

    def test_missing_indicator_is_fatal(self, frame_factory, config_factory):
        broker = PaperBroker(frame_factory(CLOSES), symbol=SYMBOL)
        broker.missing_indicators = {"ema"}
        with pytest.raises(InitError, match="ema"):
            build_engine(_breakout_config(config_factory), broker)

    def test_history_shorter_than_channels_is_fatal(self, frame_factory, config_factory):
        broker = PaperBroker(frame_factory(CLOSES), symbol=SYMBOL)
        cfg = _breakout_config(config_factory, market={"history_bars": 6})
        with pytest.raises(InitError, match="history_bars=6 is below the 7 bars"):
            build_engine(cfg, broker)


class _Boom(InvocationHandler):
    def __init__(self):
        self.logfile = None

    def on_invocation(self, state):
        state.invocations += 1
        raise RuntimeError("boom")


class TestEngineInvoke:

    def test_handler_exception_does_not_escape(self, config_factory):
        engine = Engine(_breakout_config(config_factory), _Boom())
        engine.invoke()
        engine.invoke()
        assert engine.state.invocations == 2
