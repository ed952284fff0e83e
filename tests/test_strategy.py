"""Tests for rangebot/strategy.py — sizing, policies and trade bookkeeping"""
from datetime import datetime

import pytest

from core.types import SystemStats, TradeRecord, TradeStatus
from helpers import HOUR, NOW
from rangebot.exchange import InstrumentLimits
from rangebot.strategy import (
    BREACH_LOWER, BREACH_UPPER, DAY_MS, calculate_profit, check_protection,
    complete_trade, discard_trade, fail_trade, floor_to_step, is_in_cutover_window,
    is_in_warning_window, is_timed_out, price_deviation_pct, record_partial_sale,
    snap_order, stop_loss_hit,
)


def _at(hour, minute=0):
    return int(datetime(2026, 3, 10, hour, minute).timestamp() * 1000)


def _record(amount=1.0, buy_price=100.0, start_time=NOW - HOUR):
    return TradeRecord(id="t1", symbol="ETH/USDT", buy_order_id="b",
                       buy_price=buy_price, amount=amount, start_time=start_time)


class TestWindows:
    def test_cutover(self):
        assert is_in_cutover_window("23:30", _at(23, 30)) is True
        assert is_in_cutover_window("23:30", _at(23, 29)) is False
        assert is_in_cutover_window("23:30", _at(0, 5)) is False

    def test_warning_ends_at_cutover(self):
        assert is_in_warning_window("23:00", "23:30", _at(23, 10)) is True
        assert is_in_warning_window("23:00", "23:30", _at(23, 40)) is False
        assert is_in_warning_window("23:00", "23:30", _at(12, 0)) is False


class TestSizing:
    def test_floor_to_step(self):
        assert floor_to_step(0.123456, 0.001) == 0.123
        assert floor_to_step(101.239, 0.01) == 101.23
        assert floor_to_step(5.5, 0) == 5.5

    def test_snap_order_ok(self):
        limits = InstrumentLimits(min_amount=0.001, min_notional=5.0,
                                  amount_step=0.001, price_tick=0.01)
        assert snap_order(0.0996, 101.019, limits) == (0.099, 101.01, "")

    @pytest.mark.parametrize("limits,amount,price", [
        (InstrumentLimits(amount_step=1.0), 0.5, 100.0),
        (InstrumentLimits(min_amount=1.0), 0.5, 100.0),
        (InstrumentLimits(max_amount=1.0), 2.0, 100.0),
        (InstrumentLimits(min_notional=10.0), 0.05, 100.0),
    ])
    def test_snap_order_violations(self, limits, amount, price):
        snapped_amount, snapped_price, problem = snap_order(amount, price, limits)
        assert snapped_amount is None and snapped_price is None
        assert problem


class TestPolicies:
    def test_profit(self):
        assert calculate_profit(1.0, 100.0, 108.0) == (8.0, 8.0)
        assert calculate_profit(2.0, 50.0, 49.0) == (-2.0, -2.0)

    def test_protection(self):
        assert check_protection(111.0, 110.0, 100.0) == BREACH_UPPER
        assert check_protection(99.0, 110.0, 100.0) == BREACH_LOWER
        assert check_protection(105.0, 110.0, 100.0) is None
        assert check_protection(105.0, None, None) is None

    def test_timeout_is_strict(self):
        assert is_timed_out(NOW - 3600 * 1000, 3600, NOW) is False
        assert is_timed_out(NOW - 3600 * 1000 - 1, 3600, NOW) is True

    def test_stop_loss_threshold_inclusive(self):
        assert stop_loss_hit(98.0, 100.0, -2.0)[0] is True
        assert stop_loss_hit(98.5, 100.0, -2.0)[0] is False

    def test_deviation(self):
        assert price_deviation_pct(102.0, 100.0) == pytest.approx(2.0)


class TestBookkeeping:
    def test_complete_updates_stats(self):
        r = _record()
        stats = SystemStats(total_trades=1)
        complete_trade(r, 105.0, [r], stats, investment=100.0, now=NOW)
        assert r.status == TradeStatus.COMPLETED
        assert (r.profit, r.profit_rate) == (5.0, 5.0)
        assert r.end_time == NOW
        assert stats.successful_trades == 1
        assert stats.total_profit == 5.0
        assert stats.total_profit_rate == 5.0
        # one active day → annualized over 365
        assert stats.annualized_return == pytest.approx(5.0 * 365)

    def test_annualized_over_active_days(self):
        r = _record(start_time=NOW - 10 * DAY_MS + 1)
        stats = SystemStats()
        complete_trade(r, 110.0, [r], stats, investment=100.0, now=NOW)
        assert stats.annualized_return == pytest.approx(10.0 / 10 * 365)

    def test_partial_sales_count_toward_profit(self):
        r = _record(amount=1.0)
        record_partial_sale(r, 0.4, 110.0)
        assert r.remaining_amount == 0.6
        complete_trade(r, 100.0, [r], SystemStats(), investment=100.0, now=NOW)
        assert r.profit == 4.0
        assert r.sell_price == pytest.approx(104.0)

    def test_completed_only_once(self):
        r = _record()
        stats = SystemStats()
        complete_trade(r, 105.0, [r], stats, 100.0, NOW)
        complete_trade(r, 90.0, [r], stats, 100.0, NOW)
        assert stats.successful_trades == 1
        assert r.profit == 5.0

    def test_fail(self):
        r = _record()
        stats = SystemStats()
        fail_trade(r, "timeout", stats, NOW)
        assert r.status == TradeStatus.FAILED
        assert r.failure_reason == "timeout"
        assert stats.failed_trades == 1
        fail_trade(r, "again", stats, NOW)
        assert stats.failed_trades == 1

    def test_discard_undoes_open(self):
        r = _record()
        records = [r]
        stats = SystemStats(total_trades=3, traded_symbols={"ETH/USDT": 2})
        discard_trade(r, records, stats)
        assert records == []
        assert stats.total_trades == 2
        assert stats.traded_symbols == {"ETH/USDT": 1}
