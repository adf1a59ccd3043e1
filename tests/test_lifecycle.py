"""
Tests for breakbot.app.lifecycle: per-invocation management of owned positions.
"""

import pytest

from breakbot.app.config import ExecutionCfg, TrailingCfg
from breakbot.app.execution import OrderExecutor
from breakbot.app.lifecycle import PositionManager
from breakbot.broker.paper import DEFAULT_CONSTRAINTS, PaperBroker
from breakbot.domain.models import LONG, SHORT, EngineRunState

SYMBOL = "XAUUSD"
TAG = 42


def _setup(frame_factory, closes=None, cursor=10, exit_check=None, **trailing):
    closes = closes or [100.0] * 40
    broker = PaperBroker(frame_factory(closes), symbol=SYMBOL, cursor=cursor)
    exe = OrderExecutor(broker, SYMBOL, TAG, ExecutionCfg(), sleep=lambda s: None)
    cfg = TrailingCfg(**trailing)
    return broker, PositionManager(exe, cfg, exit_check=exit_check)


def _manage(broker, manager, state, atr=None):
    positions = broker.owned_positions(SYMBOL, TAG).value
    q = broker.quote(SYMBOL).value
    bars = broker.bars(SYMBOL, "M15", 50).value
    return manager.manage(state, positions, q, DEFAULT_CONSTRAINTS, bars, atr)


class TestBreakEvenAndTrailing:

    def test_break_even_then_trailing(self, frame_factory):
        broker, mgr = _setup(frame_factory, atr_mult=1.0)
        state = EngineRunState()
        t = broker.place_order(SYMBOL, LONG, 0.1, 98.1, None, TAG).value  # entry 100.10, R = 2.0

        broker.set_bid(102.2)
        rep = _manage(broker, mgr, state, atr=1.0)
        assert rep.modified == [t]
        assert broker.positions[t].stop_loss == pytest.approx(100.1)

        broker.set_bid(104.0)
        _manage(broker, mgr, state, atr=1.0)
        assert broker.positions[t].stop_loss == pytest.approx(103.0)

        broker.set_bid(103.2)
        rep = _manage(broker, mgr, state, atr=1.0)
        assert rep.modified == []
        assert broker.positions[t].stop_loss == pytest.approx(103.0)

    def test_short_trails_downwards(self, frame_factory):
        broker, mgr = _setup(frame_factory, atr_mult=1.0)
        state = EngineRunState()
        t = broker.place_order(SYMBOL, SHORT, 0.1, 102.0, None, TAG).value  # entry 100.00, R = 2.0

        broker.set_bid(96.9)  # ask 97.00
        _manage(broker, mgr, state, atr=1.0)
        assert broker.positions[t].stop_loss == pytest.approx(98.0)

    def test_initial_stop_remembered_after_break_even(self, frame_factory):
        broker, mgr = _setup(frame_factory, atr_mult=1.0)
        state = EngineRunState()
        t = broker.place_order(SYMBOL, LONG, 0.1, 98.1, None, TAG).value
        broker.set_bid(102.2)
        _manage(broker, mgr, state, atr=1.0)
        assert state.initial_stops[t] == pytest.approx(98.1)

    def test_swing_mode_uses_bar_lows(self, frame_factory):
        closes = [100.0] * 11 + [104.0, 105.0, 106.0, 107.0, 108.0]
        broker, mgr = _setup(frame_factory, closes=closes, mode="swing", swing_lookback=2, swing_buffer_points=10)
        state = EngineRunState()
        t = broker.place_order(SYMBOL, LONG, 0.1, 97.0, None, TAG).value  # entry 100.10, R = 3.1
        broker.advance(4)

        _manage(broker, mgr, state)
        # closed bars 106 and 105 have lows 104.5 and 103.5, minus a 0.10 buffer
        assert broker.positions[t].stop_loss == pytest.approx(103.4)

    def test_disabled_trailing_leaves_stops(self, frame_factory):
        broker, mgr = _setup(frame_factory, enabled=False)
        state = EngineRunState()
        t = broker.place_order(SYMBOL, LONG, 0.1, 98.1, None, TAG).value
        broker.set_bid(110.0)
        _manage(broker, mgr, state, atr=1.0)
        assert broker.modifies == []
        assert broker.positions[t].stop_loss == 98.1


class TestFailures:

    def test_failed_modify_retried_next_invocation(self, frame_factory):
        broker, mgr = _setup(frame_factory)
        state = EngineRunState()
        t = broker.place_order(SYMBOL, LONG, 0.1, 98.1, None, TAG).value
        broker.set_bid(102.2)
        broker.modify_failures = 1

        rep = _manage(broker, mgr, state)
        assert rep.failed == [t]
        assert broker.positions[t].stop_loss == 98.1

        rep = _manage(broker, mgr, state)
        assert rep.modified == [t]
        assert broker.positions[t].stop_loss == pytest.approx(100.1)

    def test_failed_close_retried_next_invocation(self, frame_factory):
        broker, mgr = _setup(frame_factory, exit_check=lambda p, bars, q: True)
        state = EngineRunState()
        t = broker.place_order(SYMBOL, LONG, 0.1, 98.1, None, TAG).value
        broker.close_failures = 1

        rep = _manage(broker, mgr, state)
        assert rep.failed == [t]
        assert t in broker.positions

        rep = _manage(broker, mgr, state)
        assert rep.closed == [t]
        assert t not in broker.positions


class TestExits:

    def test_time_exit_closes_every_owned_position(self, frame_factory):
        broker, mgr = _setup(frame_factory, time_exit_minutes=30)
        state = EngineRunState()
        a = broker.place_order(SYMBOL, LONG, 0.1, 98.1, None, TAG).value
        broker.advance(1)
        b = broker.place_order(SYMBOL, LONG, 0.1, 98.1, None, TAG).value

        rep = _manage(broker, mgr, state)
        assert not rep.time_exit

        broker.advance(1)
        rep = _manage(broker, mgr, state)
        assert rep.time_exit
        assert sorted(rep.closed) == sorted([a, b])
        assert broker.positions == {}

    def test_time_exit_disabled_by_zero(self, frame_factory):
        broker, mgr = _setup(frame_factory, time_exit_minutes=0)
        broker.place_order(SYMBOL, LONG, 0.1, 98.1, None, TAG)
        broker.advance(20)
        rep = _manage(broker, mgr, EngineRunState())
        assert not rep.time_exit
        assert len(broker.positions) == 1

    def test_exit_check_closes_position(self, frame_factory):
        broker, mgr = _setup(frame_factory, exit_check=lambda p, bars, q: p.direction == LONG)
        t = broker.place_order(SYMBOL, LONG, 0.1, 98.1, None, TAG).value
        rep = _manage(broker, mgr, EngineRunState())
        assert rep.closed == [t]

    def test_closed_tickets_pruned_from_state(self, frame_factory):
        broker, mgr = _setup(frame_factory)
        state = EngineRunState(initial_stops={"gone": 1.0})
        _manage(broker, mgr, state)
        assert state.initial_stops == {}

    def test_other_owner_tags_are_ignored(self, frame_factory):
        broker, mgr = _setup(frame_factory, exit_check=lambda p, bars, q: True)
        broker.place_order(SYMBOL, LONG, 0.1, 98.1, None, TAG + 1)
        rep = _manage(broker, mgr, EngineRunState())
        assert rep.closed == []
        assert len(broker.positions) == 1
