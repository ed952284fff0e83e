"""
Daily rollover: when the local date changes, close out whatever is in flight
before the daily counters reset.

  BUY_ORDER_PLACED   query → filled: liquidate; open: cancel, liquidate any
                     partial fill, else fail the trade
  BOUGHT             liquidate the position
  SELL_ORDER_PLACED  query → filled: complete normally; else cancel and
                     liquidate the unsold remainder

Liquidations are market sells booked at current price × discount when the
exchange reports no average. If the in-flight order cannot be queried or
cancelled (transient error) the rollover is deferred to the next tick; once a
liquidation is attempted, any error fails the trade instead of leaving it
in progress.
"""
import asyncio
import logging
from dataclasses import dataclass, replace

from core.types import (
    ACTIVE_STATES, FillState, OrderInfo, OrderSide, OrderStatus, SystemStats,
    TradeRecord, TradeStatus, TradingState, TradingStatus,
)
from rangebot.exchange import ExchangeError, OrderNotFoundError
from rangebot.orders import infer_fill_from_balance, sellable_amount
from rangebot.strategy import (
    complete_trade, current_date, fail_trade, find_record, record_partial_sale,
)

logger = logging.getLogger(__name__)


class _Deferred(Exception):
    """In-flight order state unknown; retry the rollover next tick."""


@dataclass
class ResetResult:
    needs_reset: bool
    status: TradingStatus
    stats: SystemStats
    deferred: bool = False


class DailyResetHandler:
    def __init__(self, order_manager, sleep=asyncio.sleep):
        self.orders = order_manager
        self._sleep = sleep

    async def check_and_reset(self, ctx) -> ResetResult:
        today = current_date(ctx.now)
        if ctx.stats.current_date == today:
            return ResetResult(False, ctx.status, ctx.stats)
        if not ctx.stats.current_date:
            return ResetResult(False, ctx.status, replace(ctx.stats, current_date=today))

        logger.info(f"📅 Date rollover {ctx.stats.current_date} → {today}")
        if ctx.status.state in ACTIVE_STATES:
            logger.warning(f"⚠️ Open trade at rollover, state {ctx.status.state.value}")
            try:
                await self._resolve(ctx)
            except _Deferred as e:
                logger.warning(f"⏳ Rollover deferred: {e}")
                return ResetResult(False, ctx.status, ctx.stats, deferred=True)

        for record in ctx.records:
            if record.status == TradeStatus.IN_PROGRESS:
                logger.error(f"🚨 Trade {record.id} still in progress after rollover")
                fail_trade(record, "unresolved at daily rollover", ctx.stats, ctx.now)

        stats = replace(ctx.stats, current_date=today, traded_symbols={})
        logger.info("✅ Daily counters reset")
        return ResetResult(True, TradingStatus.idle(ctx.now), stats)

    async def _resolve(self, ctx) -> None:
        status = ctx.status
        record = find_record(ctx.records, status.current_trade_id)
        if record is None or status.symbol is None or status.buy_order is None:
            logger.error("⚠️ Open state without record/order, nothing to liquidate")
            return
        if status.state == TradingState.BUY_ORDER_PLACED:
            await self._resolve_buy(ctx, record)
        elif status.state == TradingState.SELL_ORDER_PLACED:
            await self._resolve_sell(ctx, record)
        else:
            await self._force_sell(ctx, record, record.remaining_amount)

    async def _resolve_buy(self, ctx, record: TradeRecord) -> None:
        status = ctx.status
        buy = status.buy_order
        try:
            order = await self.orders.get_order_status(status.symbol, buy.order_id)
        except OrderNotFoundError:
            logger.warning("⚠️ Buy order not found, checking balance")
            try:
                held = await infer_fill_from_balance(self.orders.gateway, status.symbol, buy.amount)
            except ExchangeError as e:
                raise _Deferred(f"balance check failed: {e}")
            if held:
                await self._force_sell(ctx, record, buy.amount)
            else:
                fail_trade(record, "buy order missing at rollover, no position", ctx.stats, ctx.now)
            return
        except ExchangeError as e:
            raise _Deferred(f"buy order query failed: {e}")

        if order.state != FillState.FILLED:
            order = await self._cancel(status.symbol, buy, buy.amount)

        if order.filled > 0:
            record.amount = order.filled
            record.buy_price = order.average or buy.price
            await self._force_sell(ctx, record, order.filled)
        else:
            fail_trade(record, "buy order cancelled at daily rollover", ctx.stats, ctx.now)

    async def _resolve_sell(self, ctx, record: TradeRecord) -> None:
        status = ctx.status
        sell = status.sell_order
        try:
            order = await self.orders.get_order_status(status.symbol, sell.order_id)
        except OrderNotFoundError:
            logger.warning("⚠️ Sell order not found, checking balance")
            try:
                held = await infer_fill_from_balance(
                    self.orders.gateway, status.symbol, record.remaining_amount)
            except ExchangeError as e:
                raise _Deferred(f"balance check failed: {e}")
            order = None
            if not held:
                order = OrderStatus(order_id=sell.order_id, state=FillState.FILLED,
                                    amount=sell.amount, filled=sell.amount)
        except ExchangeError as e:
            raise _Deferred(f"sell order query failed: {e}")

        if order is not None and order.state == FillState.FILLED:
            logger.info("✅ Sell already filled at rollover")
            complete_trade(record, order.average or sell.price, ctx.records, ctx.stats,
                           ctx.config.investment_amount, ctx.now)
            return

        if order is not None and order.state != FillState.CANCELED:
            order = await self._cancel(status.symbol, sell, record.remaining_amount)
        if order is not None and order.state == FillState.FILLED:
            complete_trade(record, order.average or sell.price, ctx.records, ctx.stats,
                           ctx.config.investment_amount, ctx.now)
            return
        if order is not None and order.filled > 0:
            record_partial_sale(record, order.filled, order.average or sell.price)
        await self._force_sell(ctx, record, record.remaining_amount)

    async def _cancel(self, symbol: str, order: OrderInfo, expected: float) -> OrderStatus:
        """Cancel and return the final state.

        Raises _Deferred when the outcome is unknown: the order may still be
        live, so the rollover must not move on.
        """
        try:
            return await self.orders.cancel(symbol, order.order_id)
        except OrderNotFoundError:
            logger.warning(f"Order {order.order_id} gone on cancel, re-checking")
        except ExchangeError as e:
            raise _Deferred(f"cancel of {order.order_id} failed: {e}")

        try:
            return await self.orders.get_order_status(symbol, order.order_id)
        except OrderNotFoundError:
            pass
        except ExchangeError as e:
            raise _Deferred(f"order query after cancel failed: {e}")

        try:
            held = await infer_fill_from_balance(self.orders.gateway, symbol, expected)
        except ExchangeError as e:
            raise _Deferred(f"balance check failed: {e}")
        # a buy filled if the coins are there, a sell if they are gone
        filled = held if order.side == OrderSide.BUY else not held
        return OrderStatus(order_id=order.order_id,
                           state=FillState.FILLED if filled else FillState.CANCELED,
                           amount=expected, filled=expected if filled else 0.0)

    async def _force_sell(self, ctx, record: TradeRecord, amount: float) -> None:
        symbol = ctx.status.symbol
        discount = ctx.config.daily_reset.force_liquidation_discount
        try:
            if amount <= 0:
                raise ValueError("nothing left to sell")
            price = await self.orders.get_current_price(symbol)
            try:
                amount = await sellable_amount(self.orders.gateway, symbol, amount)
            except ExchangeError as e:
                logger.warning(f"Balance/limits unavailable, selling unsnapped amount: {e}")
            logger.warning(f"🔻 Forced liquidation {symbol} {amount} @ ~{price * discount}")
            sold = await self.orders.create_market_sell(symbol, amount, price * discount)
            await self._sleep(ctx.config.trading.settle_seconds)
        except Exception as e:
            logger.error(f"❌ Forced liquidation of {symbol} failed: {e}", exc_info=True)
            fail_trade(record, f"daily rollover liquidation failed: {e}", ctx.stats, ctx.now)
            return
        record.sell_order_id = sold.order_id
        complete_trade(record, sold.price, ctx.records, ctx.stats,
                       ctx.config.investment_amount, ctx.now)
