"""
Tests for breakbot.app.execution: level computation, entry retry, stop modify.
"""

from dataclasses import replace

import pytest

from breakbot.app.config import ExecutionCfg
from breakbot.app.execution import OrderExecutor, compute_levels, swing_levels
from breakbot.broker.adapter import RET_REJECT, RET_REQUOTE
from breakbot.broker.paper import DEFAULT_CONSTRAINTS, PaperBroker
from breakbot.domain.models import LONG, SHORT, Quote

SYMBOL = "XAUUSD"
TAG = 777


def _broker(frame_factory, **kw):
    return PaperBroker(frame_factory([100.0] * 30), symbol=SYMBOL, **kw)


def _executor(broker, events=None, sleeps=None, **cfg):
    base = dict(max_attempts=3, retry_delay_sec=0.5)
    base.update(cfg)

    def notify(event, payload):
        if events is not None:
            events.append((event, payload))

    def sleep(s):
        if sleeps is not None:
            sleeps.append(s)

    return OrderExecutor(broker, SYMBOL, TAG, ExecutionCfg(**base), sleep=sleep, notify=notify)


class TestComputeLevels:

    def test_long_levels(self):
        q = Quote(bid=100.0, ask=100.2, spread_points=20)
        lv = compute_levels(LONG, q, atr=1.0, stop_mult=2.0, reward_multiple=2.0, digits=2)
        assert lv.entry == 100.2
        assert lv.stop == pytest.approx(98.2)
        assert lv.target == pytest.approx(104.2)

    def test_short_levels(self):
        q = Quote(bid=100.0, ask=100.2, spread_points=20)
        lv = compute_levels(SHORT, q, atr=1.0, stop_mult=1.5, reward_multiple=1.0, digits=2)
        assert lv.entry == 100.0
        assert lv.stop == pytest.approx(101.5)
        assert lv.target == pytest.approx(98.5)

    def test_no_reward_means_no_target(self):
        q = Quote(bid=100.0, ask=100.2, spread_points=20)
        assert compute_levels(LONG, q, 1.0, 2.0, 0.0, 2).target is None

    @pytest.mark.parametrize("atr", [0.0, -1.0])
    def test_invalid_distance(self, atr):
        q = Quote(bid=100.0, ask=100.2, spread_points=20)
        assert compute_levels(LONG, q, atr, 2.0, 2.0, 2) is None

    def test_swing_levels(self, bars_factory):
        bars = bars_factory([(100, 101, 50, 100), (100, 101, 98, 100), (100, 102, 97, 100)])
        q = Quote(bid=100.0, ask=100.2, spread_points=20)
        lv = swing_levels(LONG, q, bars, 2, 0.5, 1.0, 2)
        assert lv.stop == pytest.approx(96.5)
        assert lv.target == pytest.approx(100.2 + 3.7)
        assert swing_levels(SHORT, q, bars, 2, 0.5, 0.0, 2).stop == pytest.approx(102.5)

    def test_swing_stop_on_wrong_side_is_invalid(self, bars_factory):
        bars = bars_factory([(100, 101, 99, 100), (100, 101, 100.5, 100.8), (100, 101, 100.6, 100.9)])
        q = Quote(bid=100.0, ask=100.2, spread_points=20)
        assert swing_levels(LONG, q, bars, 2, 0.0, 1.0, 2) is None


class TestEntryRetry:

    def test_succeeds_on_fifth_attempt_with_four_recomputes(self, frame_factory):
        broker = _broker(frame_factory)
        broker.order_failures = [RET_REQUOTE, RET_REJECT, RET_REQUOTE, RET_REJECT]
        sleeps = []
        calls = []

        def levels_fn(q):
            calls.append(q)
            return compute_levels(LONG, q, 1.0, 2.0, 2.0, 2)

        exe = _executor(broker, sleeps=sleeps, max_attempts=5)
        out = exe.place_entry(LONG, 0.1, levels_fn)

        assert out.ok
        assert out.attempts == 5
        assert out.recomputes == 4
        assert len(calls) == 5
        assert sleeps == [0.5] * 4
        assert len(broker.orders) == 5
        assert out.ticket in broker.positions

    def test_levels_follow_the_fresh_quote(self, frame_factory):
        broker = _broker(frame_factory)
        broker.order_failures = [RET_REQUOTE]
        exe = _executor(broker, max_attempts=2)

        def levels_fn(q):
            broker.set_bid(q.bid + 1.0)
            return compute_levels(LONG, q, 1.0, 2.0, 2.0, 2)

        exe.place_entry(LONG, 0.1, levels_fn)
        assert broker.orders[1]["stop"] > broker.orders[0]["stop"]

    def test_lost_quote_after_failure_aborts_without_resending(self, frame_factory):
        broker = _broker(frame_factory)
        broker.order_failures = [RET_REQUOTE]
        calls = []

        def levels_fn(q):
            calls.append(q)
            return compute_levels(LONG, q, 1.0, 2.0, 2.0, 2)

        exe = OrderExecutor(broker, SYMBOL, TAG, ExecutionCfg(max_attempts=2, retry_delay_sec=0),
                            sleep=lambda s: setattr(broker, "quote_down", True))
        out = exe.place_entry(LONG, 0.1, levels_fn)

        assert not out.ok
        assert out.message == "quote unavailable"
        assert out.attempts == 1
        assert out.recomputes == 0
        assert len(calls) == 1
        assert len(broker.orders) == 1
        assert broker.positions == {}

    def test_exhaustion_is_not_fatal(self, frame_factory):
        broker = _broker(frame_factory)
        broker.order_failures = [RET_REJECT] * 3
        events = []
        exe = _executor(broker, events=events)

        out = exe.place_entry(LONG, 0.1, lambda q: compute_levels(LONG, q, 1.0, 2.0, 2.0, 2))

        assert not out.ok
        assert out.attempts == 3
        assert out.code == RET_REJECT
        assert not broker.positions
        assert events[-1][0] == "ENTRY_FAILED"

    def test_invalid_levels_send_nothing(self, frame_factory):
        broker = _broker(frame_factory)
        out = _executor(broker).place_entry(LONG, 0.1, lambda q: None)
        assert not out.ok
        assert broker.orders == []

    def test_zero_volume_sends_nothing(self, frame_factory):
        broker = _broker(frame_factory)
        out = _executor(broker).place_entry(LONG, 0.0, lambda q: compute_levels(LONG, q, 1.0, 2.0, 2.0, 2))
        assert not out.ok
        assert broker.orders == []

    def test_adapter_exception_becomes_failed_attempt(self, frame_factory):
        broker = _broker(frame_factory)
        original = broker.place_order
        calls = {"n": 0}

        def flaky(*args):
            calls["n"] += 1
            if calls["n"] == 1:
                raise ConnectionError("terminal gone")
            return original(*args)

        broker.place_order = flaky
        out = _executor(broker).place_entry(LONG, 0.1, lambda q: compute_levels(LONG, q, 1.0, 2.0, 2.0, 2))
        assert out.ok
        assert out.attempts == 2

    def test_success_notifies_trade_open(self, frame_factory):
        broker = _broker(frame_factory)
        events = []
        _executor(broker, events=events).place_entry(LONG, 0.1, lambda q: compute_levels(LONG, q, 1.0, 2.0, 2.0, 2))
        assert [e for e, _ in events] == ["TRADE_OPEN"]


class TestModifyStop:

    def _open(self, broker, stop=98.0):
        ticket = broker.place_order(SYMBOL, LONG, 0.1, stop, None, TAG).value
        return broker.positions[ticket]

    def test_candidate_clamped_to_min_stop_distance(self, frame_factory):
        c = replace(DEFAULT_CONSTRAINTS, min_stop_points=100)  # 1.00 price units
        broker = _broker(frame_factory, constraints=c)
        pos = self._open(broker)
        q = broker.quote(SYMBOL).value

        res = _executor(broker).modify_stop(pos, 99.8, q, c, reason="trailing")

        assert res.ok
        assert broker.modifies[-1]["stop"] == pytest.approx(99.0)
        assert broker.positions[pos.ticket].stop_loss == pytest.approx(99.0)

    def test_take_profit_is_kept(self, frame_factory):
        broker = _broker(frame_factory)
        ticket = broker.place_order(SYMBOL, LONG, 0.1, 98.0, 104.0, TAG).value
        pos = broker.positions[ticket]
        q = broker.quote(SYMBOL).value
        _executor(broker).modify_stop(pos, 99.0, q, DEFAULT_CONSTRAINTS)
        assert broker.positions[ticket].take_profit == 104.0

    def test_looser_stop_is_not_sent(self, frame_factory):
        broker = _broker(frame_factory)
        pos = self._open(broker)
        q = broker.quote(SYMBOL).value
        res = _executor(broker).modify_stop(pos, 97.0, q, DEFAULT_CONSTRAINTS)
        assert not res.ok
        assert res.code == 0
        assert broker.modifies == []

    def test_rejected_modify_is_reported(self, frame_factory):
        broker = _broker(frame_factory)
        pos = self._open(broker)
        broker.modify_failures = 1
        q = broker.quote(SYMBOL).value
        res = _executor(broker).modify_stop(pos, 99.0, q, DEFAULT_CONSTRAINTS)
        assert not res.ok
        assert res.code == RET_REJECT
        assert broker.positions[pos.ticket].stop_loss == 98.0
