"""
Tests for rangebot/handlers.py — the state machine.

Each test builds a context, points the mocked gateway at a market situation,
runs one handler and checks the returned status plus record/stats effects.
"""
from datetime import datetime
from unittest.mock import AsyncMock, MagicMock

import pytest

from core.types import (
    Advice, Recommendation, RiskLevel, TradeRecord, TradeStatus,
    TradingState, TradingStatus,
)
from helpers import HOUR, MINUTE, NOW, make_config, make_ctx, make_gateway, open_trade, raw_order, run
from rangebot.exchange import ExchangeError, InstrumentLimits, OrderNotFoundError
from rangebot.handlers import ManualOrderError, StateHandlers
from rangebot.orders import OrderManager
from rangebot.scorer import ScanResult, analyze_candles


def _analysis(symbol="ETH/USDT", high=110.0, low=100.0):
    span = [{"h": high, "l": low, "c": (high + low) / 2}]
    return analyze_candles(symbol, span, amplitude_threshold=2.0, trend_threshold=10.0)


def _handlers(gw, best=None, refreshed=None, advisor=None):
    scanner = MagicMock()
    scanner.find_best = AsyncMock(return_value=ScanResult(best=best))
    scanner.refresh = AsyncMock(return_value=refreshed or _analysis())
    return StateHandlers(OrderManager(gw), scanner, advisor, sleep=AsyncMock())


def _completed(end_time, profit=1.0, start_time=None):
    return TradeRecord(id=f"t{end_time}", symbol="ETH/USDT", buy_order_id="x",
                       buy_price=100.0, amount=1.0, start_time=start_time or end_time - HOUR,
                       status=TradeStatus.COMPLETED, profit=profit, end_time=end_time)


# === IDLE ===

class TestIdle:
    def test_opens_position_on_best_candidate(self):
        gw = make_gateway()
        h = _handlers(gw, best=_analysis())
        ctx = make_ctx()

        status = run(h.handle_idle(ctx))

        assert status.state == TradingState.BUY_ORDER_PLACED
        assert status.symbol == "ETH/USDT"
        assert (status.high, status.low) == (110.0, 100.0)
        # 100 USDT / 101.0 = 0.990099.. floored to the 0.0001 lot step
        gw.create_limit_buy.assert_awaited_once_with("ETH/USDT", 0.99, 101.0)
        assert len(ctx.records) == 1
        assert ctx.records[0].status == TradeStatus.IN_PROGRESS
        assert status.current_trade_id == ctx.records[0].id
        assert ctx.stats.total_trades == 1
        assert ctx.stats.traded_symbols == {"ETH/USDT": 1}

    def test_no_candidate_stays_idle(self):
        gw = make_gateway()
        ctx = make_ctx()
        status = run(_handlers(gw, best=None).handle_idle(ctx))
        assert status.state == TradingState.IDLE
        gw.create_limit_buy.assert_not_awaited()

    def test_daily_limit_reached(self):
        gw = make_gateway()
        h = _handlers(gw, best=_analysis())
        records = [_completed(NOW - 5 * HOUR + i) for i in range(3)]
        ctx = make_ctx(records=records)

        status = run(h.handle_idle(ctx))

        assert status.state == TradingState.IDLE
        h.scanner.find_best.assert_not_awaited()

    def test_cooldown_after_last_trade(self):
        gw = make_gateway()
        h = _handlers(gw, best=_analysis())
        ctx = make_ctx(records=[_completed(NOW - 10 * MINUTE)])
        status = run(h.handle_idle(ctx))
        assert status.state == TradingState.IDLE
        h.scanner.find_best.assert_not_awaited()

    def test_cooldown_over(self):
        gw = make_gateway()
        h = _handlers(gw, best=_analysis())
        ctx = make_ctx(records=[_completed(NOW - 2 * HOUR)])
        assert run(h.handle_idle(ctx)).state == TradingState.BUY_ORDER_PLACED

    def test_inside_cutover_window(self):
        gw = make_gateway()
        h = _handlers(gw, best=_analysis())
        late = int(datetime(2026, 3, 10, 23, 45).timestamp() * 1000)
        status = run(h.handle_idle(make_ctx(now=late)))
        assert status.state == TradingState.IDLE
        h.scanner.find_best.assert_not_awaited()

    def test_insufficient_balance(self):
        gw = make_gateway(balances={"USDT": {"free": 100.0}})  # buffer needs 105
        ctx = make_ctx()
        status = run(_handlers(gw, best=_analysis()).handle_idle(ctx))
        assert status.state == TradingState.IDLE
        assert ctx.records == []
        gw.create_limit_buy.assert_not_awaited()

    def test_below_min_notional_not_placed(self):
        gw = make_gateway(limits=InstrumentLimits(min_notional=500.0, amount_step=0.0001,
                                                  price_tick=0.01))
        ctx = make_ctx()
        status = run(_handlers(gw, best=_analysis()).handle_idle(ctx))
        assert status.state == TradingState.IDLE
        assert ctx.records == []

    def test_buy_rejected_by_exchange(self):
        gw = make_gateway()
        gw.create_limit_buy = AsyncMock(side_effect=ExchangeError("insufficient"))
        ctx = make_ctx()
        status = run(_handlers(gw, best=_analysis()).handle_idle(ctx))
        assert status.state == TradingState.IDLE
        assert ctx.records == []
        assert ctx.stats.total_trades == 0

    def test_advisory_avoid_blocks_buy(self):
        gw = make_gateway()
        advisor = MagicMock()
        advisor.evaluate = AsyncMock(return_value=Advice(
            "ETH/USDT", Recommendation.AVOID, 90.0, RiskLevel.LOW))
        h = _handlers(gw, best=_analysis(), advisor=advisor)
        ctx = make_ctx(config=make_config(ai={"enabled": True}))

        status = run(h.handle_idle(ctx))

        assert status.state == TradingState.IDLE
        gw.create_limit_buy.assert_not_awaited()

    def test_advisory_failure_does_not_block(self):
        gw = make_gateway()
        advisor = MagicMock()
        advisor.evaluate = AsyncMock(side_effect=RuntimeError("api down"))
        h = _handlers(gw, best=_analysis(), advisor=advisor)
        ctx = make_ctx(config=make_config(ai={"enabled": True}))
        assert run(h.handle_idle(ctx)).state == TradingState.BUY_ORDER_PLACED


# === BUY_ORDER_PLACED ===

class TestBuyOrderPlaced:
    def _setup(self, price=100.0, created_at=NOW - 10 * MINUTE):
        gw = make_gateway(price=price)
        status, record = open_trade(created_at=created_at, high=110.0, low=95.0)
        ctx = make_ctx(status=status, records=[record])
        ctx.stats.traded_symbols = {"ETH/USDT": 1}
        return gw, ctx, record

    def test_filled_moves_to_bought(self):
        gw, ctx, record = self._setup()
        gw.fetch_order = AsyncMock(return_value=raw_order("B1", "closed", 1.0, 1.0, 99.8))

        status = run(_handlers(gw).handle_buy_order_placed(ctx))

        assert status.state == TradingState.BOUGHT
        assert status.buy_order.filled == 1.0
        assert record.buy_price == 99.8

    def test_still_open_within_range_waits(self):
        gw, ctx, _ = self._setup()
        status = run(_handlers(gw).handle_buy_order_placed(ctx))
        assert status is ctx.status
        gw.cancel_order.assert_not_awaited()

    def test_timeout_with_zero_fill_fails_trade(self):
        """Buy open past the buy timeout with nothing filled → failed, IDLE."""
        gw, ctx, record = self._setup(created_at=NOW - 2 * HOUR)
        gw.cancel_order = AsyncMock(return_value=raw_order("B1", "canceled", 1.0, 0.0))

        status = run(_handlers(gw).handle_buy_order_placed(ctx))

        gw.cancel_order.assert_awaited_once_with("ETH/USDT", "B1")
        assert status.state == TradingState.IDLE
        assert status.symbol is None
        assert record.status == TradeStatus.FAILED
        assert ctx.stats.failed_trades == 1

    def test_upper_breach_discards_trade(self):
        """Price 111 above recorded high 110 → cancel, record removed, not a failure."""
        gw, ctx, record = self._setup(price=111.0)

        status = run(_handlers(gw).handle_buy_order_placed(ctx))

        gw.cancel_order.assert_awaited_once()
        assert status.state == TradingState.IDLE
        assert ctx.records == []
        assert ctx.stats.total_trades == 0
        assert ctx.stats.failed_trades == 0
        assert ctx.stats.traded_symbols == {}

    def test_upper_breach_after_partial_fill_keeps_position(self):
        gw, ctx, record = self._setup(price=111.0)
        gw.cancel_order = AsyncMock(return_value=raw_order("B1", "canceled", 1.0, 0.3, 100.0))
        status = run(_handlers(gw).handle_buy_order_placed(ctx))
        assert status.state == TradingState.BOUGHT
        assert record.amount == 0.3
        assert ctx.records == [record]

    def test_lower_breach_fails_trade(self):
        gw, ctx, record = self._setup(price=90.0)
        status = run(_handlers(gw).handle_buy_order_placed(ctx))
        assert status.state == TradingState.IDLE
        assert record.status == TradeStatus.FAILED

    def test_timeout_with_majority_fill_keeps_position(self):
        gw, ctx, record = self._setup(created_at=NOW - 2 * HOUR)
        gw.fetch_order = AsyncMock(return_value=raw_order("B1", "open", 1.0, 0.6))
        gw.cancel_order = AsyncMock(return_value=raw_order("B1", "canceled", 1.0, 0.6, 100.0))

        status = run(_handlers(gw).handle_buy_order_placed(ctx))

        assert status.state == TradingState.BOUGHT
        assert record.amount == 0.6
        gw.create_market_sell.assert_not_awaited()

    def test_timeout_with_small_fill_sells_residue(self):
        gw, ctx, record = self._setup(created_at=NOW - 2 * HOUR)
        gw.fetch_order = AsyncMock(return_value=raw_order("B1", "open", 1.0, 0.2))
        gw.cancel_order = AsyncMock(return_value=raw_order("B1", "canceled", 1.0, 0.2, 100.0))

        status = run(_handlers(gw).handle_buy_order_placed(ctx))

        gw.create_market_sell.assert_awaited_once_with("ETH/USDT", 0.2)
        assert status.state == TradingState.DONE
        assert record.status == TradeStatus.COMPLETED
        assert record.amount == 0.2

    def test_residue_sell_failure_manages_position(self):
        gw, ctx, record = self._setup(created_at=NOW - 2 * HOUR)
        gw.fetch_order = AsyncMock(return_value=raw_order("B1", "open", 1.0, 0.2))
        gw.cancel_order = AsyncMock(return_value=raw_order("B1", "canceled", 1.0, 0.2, 100.0))
        gw.create_market_sell = AsyncMock(side_effect=ExchangeError("busy"))

        status = run(_handlers(gw).handle_buy_order_placed(ctx))

        assert status.state == TradingState.BOUGHT
        assert record.status == TradeStatus.IN_PROGRESS

    def test_query_error_keeps_state(self):
        gw, ctx, record = self._setup()
        gw.fetch_order = AsyncMock(side_effect=ExchangeError("timeout"))
        status = run(_handlers(gw).handle_buy_order_placed(ctx))
        assert status is ctx.status
        assert record.status == TradeStatus.IN_PROGRESS

    def test_cancel_error_keeps_state(self):
        gw, ctx, record = self._setup(price=111.0)
        gw.cancel_order = AsyncMock(side_effect=ExchangeError("timeout"))
        status = run(_handlers(gw).handle_buy_order_placed(ctx))
        assert status is ctx.status
        assert ctx.records == [record]

    def test_missing_order_inferred_filled_from_balance(self):
        gw, ctx, _ = self._setup()
        gw.fetch_order = AsyncMock(side_effect=OrderNotFoundError("gone", code=-2013))
        gw.fetch_balance = AsyncMock(return_value={"ETH": {"free": 1.0}})
        status = run(_handlers(gw).handle_buy_order_placed(ctx))
        assert status.state == TradingState.BOUGHT

    def test_missing_order_without_balance_fails(self):
        gw, ctx, record = self._setup()
        gw.fetch_order = AsyncMock(side_effect=OrderNotFoundError("gone", code=-2013))
        gw.fetch_balance = AsyncMock(return_value={})
        status = run(_handlers(gw).handle_buy_order_placed(ctx))
        assert status.state == TradingState.IDLE
        assert record.status == TradeStatus.FAILED

    def test_cancelled_externally(self):
        gw, ctx, record = self._setup()
        gw.fetch_order = AsyncMock(return_value=raw_order("B1", "canceled", 1.0, 0.0))
        status = run(_handlers(gw).handle_buy_order_placed(ctx))
        assert status.state == TradingState.IDLE
        assert record.status == TradeStatus.FAILED


# === BOUGHT ===

class TestBought:
    def _setup(self, price, buy_price=100.0, low=95.0):
        gw = make_gateway(price=price)
        status, record = open_trade(state=TradingState.BOUGHT, buy_price=buy_price, low=low)
        return gw, make_ctx(status=status, records=[record]), record

    def test_stop_loss_market_sells(self):
        """Bought at 100, -2% threshold, price 97.5 → market sell, completed at a loss."""
        gw, ctx, record = self._setup(price=97.5)
        h = _handlers(gw)

        status = run(h.handle_bought(ctx))

        gw.create_market_sell.assert_awaited_once_with("ETH/USDT", 1.0)
        assert status.state == TradingState.DONE
        assert record.status == TradeStatus.COMPLETED
        assert record.sell_price == pytest.approx(97.5 * 0.998)
        assert record.profit < 0
        assert ctx.stats.successful_trades == 1
        h._sleep.assert_awaited_once_with(5.0)

    def test_stop_loss_sell_failure_retries_next_tick(self):
        gw, ctx, record = self._setup(price=97.5)
        gw.create_market_sell = AsyncMock(side_effect=ExchangeError("busy"))
        status = run(_handlers(gw).handle_bought(ctx))
        assert status.state == TradingState.BOUGHT
        assert record.status == TradeStatus.IN_PROGRESS

    def test_stop_loss_disabled(self):
        gw, ctx, _ = self._setup(price=97.5)
        ctx.config = make_config(stop_loss={"enabled": False})
        status = run(_handlers(gw).handle_bought(ctx))
        assert status.state == TradingState.SELL_ORDER_PLACED
        gw.create_market_sell.assert_not_awaited()

    def test_places_limit_sell_at_range_top(self):
        gw, ctx, record = self._setup(price=104.0)

        status = run(_handlers(gw).handle_bought(ctx))

        gw.create_limit_sell.assert_awaited_once_with("ETH/USDT", 1.0, 109.0)
        assert status.state == TradingState.SELL_ORDER_PLACED
        assert status.sell_order.order_id == "S1"
        assert record.sell_order_id == "S1"
        assert record.sell_price == 109.0

    def test_reversal_below_low_replaces_bounds(self):
        gw, ctx, _ = self._setup(price=94.0, buy_price=93.5, low=95.0)
        refreshed = _analysis(high=100.0, low=90.0)

        status = run(_handlers(gw, refreshed=refreshed).handle_bought(ctx))

        assert (status.high, status.low) == (100.0, 90.0)
        gw.create_limit_sell.assert_awaited_once_with("ETH/USDT", 1.0, 99.0)

    def test_bounds_kept_when_inside_range(self):
        gw, ctx, _ = self._setup(price=104.0)
        status = run(_handlers(gw, refreshed=_analysis(high=120.0, low=80.0)).handle_bought(ctx))
        assert (status.high, status.low) == (110.0, 95.0)

    def test_sell_deferred_on_confident_buy_advice(self):
        gw, ctx, _ = self._setup(price=104.0)
        ctx.config = make_config(ai={"enabled": True})
        advisor = MagicMock()
        advisor.evaluate = AsyncMock(return_value=Advice(
            "ETH/USDT", Recommendation.BUY, 80.0, RiskLevel.LOW))

        status = run(_handlers(gw, advisor=advisor).handle_bought(ctx))

        assert status.state == TradingState.BOUGHT
        gw.create_limit_sell.assert_not_awaited()

    def test_sell_placement_failure_stays_bought(self):
        gw, ctx, record = self._setup(price=104.0)
        gw.create_limit_sell = AsyncMock(side_effect=ExchangeError("rejected"))
        status = run(_handlers(gw).handle_bought(ctx))
        assert status.state == TradingState.BOUGHT
        assert record.sell_order_id is None


# === SELL_ORDER_PLACED ===

class TestSellOrderPlaced:
    def _setup(self, price=107.0, created_at=NOW - 10 * MINUTE):
        gw = make_gateway(price=price)
        status, record = open_trade(state=TradingState.SELL_ORDER_PLACED,
                                    created_at=created_at, sell_price=108.0)
        gw.fetch_order = AsyncMock(return_value=raw_order("S1", "open", 1.0, 0.0))
        return gw, make_ctx(status=status, records=[record]), record

    def test_filled_completes_trade(self):
        gw, ctx, record = self._setup()
        gw.fetch_order = AsyncMock(return_value=raw_order("S1", "closed", 1.0, 1.0, 108.0))

        status = run(_handlers(gw).handle_sell_order_placed(ctx))

        assert status.state == TradingState.DONE
        assert record.status == TradeStatus.COMPLETED
        assert record.profit == 8.0
        assert record.profit_rate == 8.0
        assert ctx.stats.successful_trades == 1
        assert ctx.stats.total_profit == 8.0

    def test_waiting_sell(self):
        gw, ctx, _ = self._setup()
        status = run(_handlers(gw).handle_sell_order_placed(ctx))
        assert status is ctx.status

    def test_timeout_nearly_filled_counts_as_complete(self):
        gw, ctx, record = self._setup(created_at=NOW - 3 * HOUR)
        gw.fetch_order = AsyncMock(return_value=raw_order("S1", "open", 1.0, 0.99))
        gw.cancel_order = AsyncMock(return_value=raw_order("S1", "canceled", 1.0, 0.99, 108.0))

        status = run(_handlers(gw).handle_sell_order_placed(ctx))

        assert status.state == TradingState.DONE
        assert record.status == TradeStatus.COMPLETED
        assert record.amount == 0.99
        assert record.profit == pytest.approx(7.92)

    def test_timeout_half_filled_requotes_remainder(self):
        gw, ctx, record = self._setup(created_at=NOW - 3 * HOUR)
        gw.fetch_order = AsyncMock(return_value=raw_order("S1", "open", 1.0, 0.5))
        gw.cancel_order = AsyncMock(return_value=raw_order("S1", "canceled", 1.0, 0.5, 108.0))

        status = run(_handlers(gw).handle_sell_order_placed(ctx))

        assert status.state == TradingState.BOUGHT
        assert status.sell_order is None
        assert record.partial_amount == 0.5
        assert record.remaining_amount == 0.5
        assert record.status == TradeStatus.IN_PROGRESS

    def test_price_deviation_cancels_sell(self):
        gw, ctx, _ = self._setup(price=104.0)  # 108 vs 104 → 3.8% > 2%
        gw.cancel_order = AsyncMock(return_value=raw_order("S1", "canceled", 1.0, 0.0))
        status = run(_handlers(gw).handle_sell_order_placed(ctx))
        gw.cancel_order.assert_awaited_once_with("ETH/USDT", "S1")
        assert status.state == TradingState.BOUGHT

    def test_reversal_below_low_cancels_sell(self):
        """Price 98.5 under the range low 99 (stop-loss not hit) → cancel, back to BOUGHT."""
        gw = make_gateway(price=98.5)
        status, record = open_trade(state=TradingState.SELL_ORDER_PLACED, low=99.0,
                                    sell_price=108.0)
        gw.fetch_order = AsyncMock(return_value=raw_order("S1", "open", 1.0, 0.0))
        gw.cancel_order = AsyncMock(return_value=raw_order("S1", "canceled", 1.0, 0.0))
        ctx = make_ctx(status=status, records=[record])

        new = run(_handlers(gw).handle_sell_order_placed(ctx))

        gw.cancel_order.assert_awaited_once_with("ETH/USDT", "S1")
        gw.create_market_sell.assert_not_awaited()
        assert new.state == TradingState.BOUGHT
        assert new.sell_order is None
        assert record.status == TradeStatus.IN_PROGRESS

    def test_stop_loss_cancels_then_market_sells(self):
        gw, ctx, record = self._setup(price=97.0)
        gw.cancel_order = AsyncMock(return_value=raw_order("S1", "canceled", 1.0, 0.0))

        status = run(_handlers(gw).handle_sell_order_placed(ctx))

        gw.cancel_order.assert_awaited_once()
        gw.create_market_sell.assert_awaited_once_with("ETH/USDT", 1.0)
        assert status.state == TradingState.DONE
        assert status.sell_order is None
        assert record.profit < 0

    def test_cancelled_externally_back_to_bought(self):
        gw, ctx, record = self._setup()
        gw.fetch_order = AsyncMock(return_value=raw_order("S1", "canceled", 1.0, 0.0))
        status = run(_handlers(gw).handle_sell_order_placed(ctx))
        assert status.state == TradingState.BOUGHT
        assert record.status == TradeStatus.IN_PROGRESS

    def test_missing_sell_with_balance_gone_is_filled(self):
        gw, ctx, record = self._setup()
        gw.fetch_order = AsyncMock(side_effect=OrderNotFoundError("gone", code=-2013))
        gw.fetch_balance = AsyncMock(return_value={"USDT": {"free": 500.0}})
        status = run(_handlers(gw).handle_sell_order_placed(ctx))
        assert status.state == TradingState.DONE
        assert record.status == TradeStatus.COMPLETED


# === DONE / manual ===

class TestDone:
    def test_returns_to_idle(self):
        ctx = make_ctx(status=TradingStatus(state=TradingState.DONE, symbol="ETH/USDT"))
        new = run(_handlers(make_gateway()).handle_done(ctx))
        assert new.state == TradingState.IDLE
        assert new.symbol is None
        assert new.buy_order is None


class TestManualSell:
    def test_market_exit(self):
        gw = make_gateway(price=105.0)
        status, record = open_trade(state=TradingState.BOUGHT)
        ctx = make_ctx(status=status, records=[record])
        new = run(_handlers(gw).manual_sell(ctx))
        assert new.state == TradingState.DONE
        assert record.status == TradeStatus.COMPLETED

    def test_limit_exit(self):
        gw = make_gateway()
        status, record = open_trade(state=TradingState.BOUGHT)
        ctx = make_ctx(status=status, records=[record])
        new = run(_handlers(gw).manual_sell(ctx, price=112.0))
        gw.create_limit_sell.assert_awaited_once_with("ETH/USDT", 1.0, 112.0)
        assert new.state == TradingState.SELL_ORDER_PLACED

    def test_requires_position(self):
        with pytest.raises(ManualOrderError):
            run(_handlers(make_gateway()).manual_sell(make_ctx()))


class TestDispatch:
    @pytest.mark.parametrize("state", list(TradingState))
    def test_every_state_has_a_handler(self, state):
        h = _handlers(make_gateway())
        ctx = make_ctx(status=TradingStatus(state=state))
        # handlers guard against incomplete status and hand it back unchanged
        result = run(h.dispatch(ctx))
        assert isinstance(result, TradingStatus)

