"""
State handlers — one coroutine per TradingState.

    IDLE → BUY_ORDER_PLACED → BOUGHT → SELL_ORDER_PLACED → DONE → IDLE

Each handler takes a TradingContext and returns the next TradingStatus.
Trade records and stats in the context are updated in place. A transient
exchange error never changes state: the handler returns the status it was
given and the next tick retries.
"""
import asyncio
import logging
from dataclasses import dataclass, field, replace
from typing import List, Optional

from core.types import (
    FillState, OrderInfo, OrderState, OrderStatus, SystemStats, TradeRecord,
    TradingState, TradingStatus,
)
from rangebot.advisor import advisory_allows_buy, advisory_allows_sell
from rangebot.exchange import ExchangeError, OrderNotFoundError
from rangebot.orders import infer_fill_from_balance, order_active_time, sellable_amount
from rangebot.strategy import (
    BREACH_LOWER, BREACH_UPPER, calculate_buy_amount, check_protection,
    complete_trade, completed_on, current_date, discard_trade, fail_trade,
    find_record, floor_to_step, is_in_cutover_window, is_timed_out,
    last_completed_end, now_ms, price_deviation_pct, record_partial_sale,
    snap_order, stop_loss_hit,
)

logger = logging.getLogger(__name__)


class ManualOrderError(Exception):
    """A manual order request that does not fit the current state."""


@dataclass
class TradingContext:
    config: object
    status: TradingStatus
    records: List[TradeRecord]
    stats: SystemStats
    now: int = field(default_factory=now_ms)


class StateHandlers:
    def __init__(self, order_manager, scanner, advisor=None, sleep=asyncio.sleep):
        self.orders = order_manager
        self.scanner = scanner
        self.advisor = advisor
        self._sleep = sleep

    async def dispatch(self, ctx: TradingContext) -> TradingStatus:
        handler = {
            TradingState.IDLE: self.handle_idle,
            TradingState.BUY_ORDER_PLACED: self.handle_buy_order_placed,
            TradingState.BOUGHT: self.handle_bought,
            TradingState.SELL_ORDER_PLACED: self.handle_sell_order_placed,
            TradingState.DONE: self.handle_done,
        }[ctx.status.state]
        return await handler(ctx)

    # === IDLE ===

    async def handle_idle(self, ctx: TradingContext) -> TradingStatus:
        cfg = ctx.config
        if is_in_cutover_window(cfg.daily_reset.processing_time, ctx.now):
            logger.info("⏸️ Inside daily cutover window, no new trades")
            return ctx.status

        if cfg.daily_trade_limit > 0:
            done_today = completed_on(ctx.records, current_date(ctx.now))
            if done_today >= cfg.daily_trade_limit:
                logger.info(f"⏹️ {done_today}/{cfg.daily_trade_limit} trades done today")
                return ctx.status

        if cfg.trade_interval_seconds > 0:
            last_end = last_completed_end(ctx.records)
            if last_end is not None:
                wait_ms = cfg.trade_interval_seconds * 1000 - (ctx.now - last_end)
                if wait_ms > 0:
                    logger.info(f"⏳ Cooldown: {-(-wait_ms // 60000)} min until next trade")
                    return ctx.status

        logger.info("🔍 Scanning for a range to trade...")
        scan = await self.scanner.find_best(cfg)
        best = scan.best
        if best is None:
            logger.info("💤 No valid candidate")
            return ctx.status
        logger.info(f"✅ Candidate {best.symbol}: amplitude {best.amplitude}%, "
                    f"range {best.low}–{best.high}")

        if not await advisory_allows_buy(self.advisor, best.symbol, cfg.ai):
            return ctx.status

        new_status = await self.open_position(ctx, best.symbol, best.buy_price,
                                              high=best.high, low=best.low)
        return new_status or ctx.status

    async def open_position(self, ctx: TradingContext, symbol: str, price: float,
                            high: Optional[float] = None,
                            low: Optional[float] = None) -> Optional[TradingStatus]:
        """Check balance and limits, place a limit buy and open a record.

        Returns None (nothing placed, no record) on any constraint violation
        or exchange error.
        """
        cfg = ctx.config
        try:
            balances = await self.orders.gateway.fetch_balance()
        except ExchangeError as e:
            logger.error(f"Balance query failed: {e}")
            return None
        free = float(balances.get(cfg.quote_asset, {}).get("free", 0))
        required = cfg.investment_amount * (1 + cfg.trading.balance_safety_buffer)
        if free < required:
            logger.error(f"❌ Insufficient {cfg.quote_asset}: need {required:.2f}, have {free:.2f}")
            return None

        try:
            limits = await self.orders.gateway.load_instrument_limits(symbol)
        except ExchangeError as e:
            logger.error(f"Instrument limits for {symbol} unavailable: {e}")
            return None
        amount, price, problem = snap_order(
            calculate_buy_amount(cfg.investment_amount, price), price, limits)
        if problem:
            logger.error(f"❌ {symbol} order rejected locally: {problem}")
            return None

        try:
            buy_order = await self.orders.create_buy(symbol, amount, price)
        except ExchangeError as e:
            logger.error(f"❌ Buy order for {symbol} failed: {e}")
            return None

        trade_id = f"trade_{buy_order.created_at}"
        ctx.records.append(TradeRecord(
            id=trade_id, symbol=symbol, buy_order_id=buy_order.order_id,
            buy_price=price, amount=amount, start_time=buy_order.created_at,
        ))
        ctx.stats.total_trades += 1
        ctx.stats.traded_symbols[symbol] = ctx.stats.traded_symbols.get(symbol, 0) + 1
        logger.info(f"💰 Buy placed: {symbol} {amount} @ {price}")

        return TradingStatus(
            state=TradingState.BUY_ORDER_PLACED,
            symbol=symbol,
            current_trade_id=trade_id,
            buy_order=buy_order,
            high=high,
            low=low,
            last_update_time=ctx.now,
        )

    # === BUY_ORDER_PLACED ===

    async def handle_buy_order_placed(self, ctx: TradingContext) -> TradingStatus:
        status = ctx.status
        buy = status.buy_order
        if buy is None or status.symbol is None:
            logger.error("⚠️ BUY_ORDER_PLACED without buy order/symbol")
            return status
        record = find_record(ctx.records, status.current_trade_id)
        if record is None:
            logger.error(f"⚠️ No trade record {status.current_trade_id} for open buy")
            return status

        try:
            order = await self.orders.get_order_status(status.symbol, buy.order_id)
        except OrderNotFoundError:
            order = await self._settle_missing(status.symbol, buy)
        except ExchangeError as e:
            logger.warning(f"Buy order query failed, retry next tick: {e}")
            return status
        if order is None:
            return status

        if order.state == FillState.FILLED:
            logger.info(f"✅ Buy filled: {status.symbol} {order.filled}")
            return self._to_bought(ctx, record, order)

        if order.state == FillState.CANCELED:
            if order.filled > 0:
                logger.info(f"⚠️ Buy cancelled externally after partial fill {order.filled}")
                return self._to_bought(ctx, record, order)
            fail_trade(record, "buy order cancelled externally", ctx.stats, ctx.now)
            return TradingStatus.idle(ctx.now)

        try:
            price = await self.orders.get_current_price(status.symbol)
        except ExchangeError as e:
            logger.warning(f"Price query failed, retry next tick: {e}")
            return status

        breach = check_protection(price, status.high, status.low)
        if breach == BREACH_LOWER:
            logger.info(f"📉 {status.symbol} {price} broke below {status.low}, cancelling buy")
            final = await self._cancel_and_settle(status.symbol, buy)
            if final is None:
                return status
            if final.filled > 0:
                return self._to_bought(ctx, record, final)
            fail_trade(record, f"price {price} fell below range low {status.low}",
                       ctx.stats, ctx.now)
            return TradingStatus.idle(ctx.now)

        if breach == BREACH_UPPER:
            logger.info(f"📈 {status.symbol} {price} broke above {status.high}, re-scanning")
            final = await self._cancel_and_settle(status.symbol, buy)
            if final is None:
                return status
            if final.filled > 0:
                return self._to_bought(ctx, record, final)
            discard_trade(record, ctx.records, ctx.stats)
            return TradingStatus.idle(ctx.now)

        timeout = ctx.config.order_timeout.timeout_for("buy", status.symbol)
        if is_timed_out(order_active_time(order, buy.created_at), timeout, ctx.now):
            logger.info(f"⏰ Buy order timed out after {timeout}s")
            final = await self._cancel_and_settle(status.symbol, buy)
            if final is None:
                return status
            return await self._resolve_buy_timeout(ctx, record, final, price)

        return status

    async def _resolve_buy_timeout(self, ctx: TradingContext, record: TradeRecord,
                                   final: OrderStatus, price: float) -> TradingStatus:
        status = ctx.status
        trading = ctx.config.trading
        if final.state == FillState.FILLED or final.fill_ratio >= trading.min_buy_fill_ratio:
            return self._to_bought(ctx, record, final)
        if final.filled <= 0:
            fail_trade(record, "buy order timed out with no fill", ctx.stats, ctx.now)
            return TradingStatus.idle(ctx.now)

        # Small fill: not worth managing, flatten it right away
        bought = self._to_bought(ctx, record, final)
        logger.info(f"🔻 Buy filled only {final.fill_ratio:.0%}, selling residue {final.filled}")
        try:
            amount = await sellable_amount(self.orders.gateway, status.symbol, final.filled)
            sold = await self.orders.create_market_sell(
                status.symbol, amount, price * trading.market_order_discount)
        except ExchangeError as e:
            logger.error(f"Residue sell failed, managing it as a position: {e}")
            return bought
        record.sell_order_id = sold.order_id
        complete_trade(record, sold.price, ctx.records, ctx.stats,
                       ctx.config.investment_amount, ctx.now)
        return replace(bought, state=TradingState.DONE, last_update_time=ctx.now)

    def _to_bought(self, ctx: TradingContext, record: TradeRecord,
                   order: OrderStatus) -> TradingStatus:
        buy = ctx.status.buy_order
        filled = order.filled or buy.amount
        fill_price = order.average or buy.price
        record.amount = filled
        record.buy_price = fill_price
        return replace(
            ctx.status,
            state=TradingState.BOUGHT,
            buy_order=replace(buy, status=OrderState.CLOSED, filled=filled,
                              filled_at=order.last_trade_timestamp or ctx.now),
            sell_order=None,
            last_update_time=ctx.now,
        )

    # === BOUGHT ===

    async def handle_bought(self, ctx: TradingContext) -> TradingStatus:
        status = ctx.status
        cfg = ctx.config
        if status.buy_order is None or status.symbol is None:
            logger.error("⚠️ BOUGHT without buy order/symbol")
            return status
        record = find_record(ctx.records, status.current_trade_id)
        if record is None:
            logger.error(f"⚠️ No trade record {status.current_trade_id} for position")
            return status

        try:
            price = await self.orders.get_current_price(status.symbol)
        except ExchangeError as e:
            logger.warning(f"Price query failed, retry next tick: {e}")
            return status

        if cfg.stop_loss.enabled:
            hit, change = stop_loss_hit(price, record.buy_price, cfg.stop_loss.threshold)
            if hit:
                logger.warning(f"🛑 Stop-loss {status.symbol}: {change:.2f}% "
                               f"<= {cfg.stop_loss.threshold}%")
                return await self._stop_loss(ctx, record, price)

        try:
            analysis = await self.scanner.refresh(status.symbol, cfg)
        except Exception as e:
            logger.warning(f"Range refresh for {status.symbol} failed, retry next tick: {e}")
            return status

        high, low = status.high, status.low
        if low is not None and price < low:
            logger.info(f"🔄 {status.symbol} reversed below {low}, bounds now "
                        f"{analysis.low}–{analysis.high}")
            high, low = analysis.high, analysis.low

        if not await advisory_allows_sell(self.advisor, status.symbol, cfg.ai):
            return replace(status, high=high, low=low)

        try:
            limits = await self.orders.gateway.load_instrument_limits(status.symbol)
            amount = await sellable_amount(self.orders.gateway, status.symbol,
                                           record.remaining_amount)
            sell_price = floor_to_step(analysis.sell_price, limits.price_tick)
            sell = await self.orders.create_sell(status.symbol, amount, sell_price)
        except ExchangeError as e:
            logger.error(f"❌ Sell order for {status.symbol} failed: {e}")
            return replace(status, high=high, low=low)

        if sell_price < record.buy_price:
            logger.warning(f"⚠️ Sell target {sell_price} is below entry {record.buy_price}")
        record.sell_order_id = sell.order_id
        record.sell_price = sell_price
        return replace(status, state=TradingState.SELL_ORDER_PLACED, sell_order=sell,
                       high=high, low=low, last_update_time=ctx.now)

    # === SELL_ORDER_PLACED ===

    async def handle_sell_order_placed(self, ctx: TradingContext) -> TradingStatus:
        status = ctx.status
        cfg = ctx.config
        sell = status.sell_order
        if sell is None or status.buy_order is None or status.symbol is None:
            logger.error("⚠️ SELL_ORDER_PLACED without sell/buy order")
            return status
        record = find_record(ctx.records, status.current_trade_id)
        if record is None:
            logger.error(f"⚠️ No trade record {status.current_trade_id} for open sell")
            return status

        try:
            order = await self.orders.get_order_status(status.symbol, sell.order_id)
        except OrderNotFoundError:
            order = await self._settle_missing(status.symbol, sell, record.remaining_amount)
        except ExchangeError as e:
            logger.warning(f"Sell order query failed, retry next tick: {e}")
            return status
        if order is None:
            return status

        if order.state == FillState.FILLED:
            logger.info(f"✅ Sell filled: {status.symbol} {order.filled}")
            complete_trade(record, order.average or sell.price, ctx.records, ctx.stats,
                           cfg.investment_amount, ctx.now)
            return replace(status, state=TradingState.DONE, last_update_time=ctx.now)

        if order.state == FillState.CANCELED:
            logger.info("⚠️ Sell cancelled externally, back to BOUGHT")
            return self._after_sell_cancel(ctx, record, order)

        try:
            price = await self.orders.get_current_price(status.symbol)
        except ExchangeError as e:
            logger.warning(f"Price query failed, retry next tick: {e}")
            return status

        if cfg.stop_loss.enabled:
            hit, change = stop_loss_hit(price, record.buy_price, cfg.stop_loss.threshold)
            if hit:
                logger.warning(f"🛑 Stop-loss {status.symbol}: {change:.2f}% "
                               f"<= {cfg.stop_loss.threshold}%")
                return await self._stop_loss(ctx, record, price)

        reason = None
        if status.low is not None and price < status.low:
            reason = f"price {price} reversed below range low {status.low}"
        elif price_deviation_pct(sell.price, price) > cfg.trading.price_deviation_threshold:
            reason = (f"sell price {sell.price} deviates "
                      f"{price_deviation_pct(sell.price, price):.2f}% from {price}")
        if reason:
            logger.info(f"🔁 Re-quoting sell: {reason}")
            final = await self._cancel_and_settle(status.symbol, sell, record.remaining_amount)
            if final is None:
                return status
            return self._after_sell_cancel(ctx, record, final)

        timeout = cfg.order_timeout.timeout_for("sell", status.symbol)
        if is_timed_out(order_active_time(order, sell.created_at), timeout, ctx.now):
            logger.info(f"⏰ Sell order timed out after {timeout}s")
            final = await self._cancel_and_settle(status.symbol, sell, record.remaining_amount)
            if final is None:
                return status
            if (final.state != FillState.FILLED
                    and final.fill_ratio >= cfg.trading.partial_fill_threshold):
                logger.info(f"✅ Sell {final.fill_ratio:.1%} filled, treating as complete")
                record_partial_sale(record, final.filled, final.average or sell.price)
                record.amount = record.partial_amount
            return self._after_sell_cancel(ctx, record, final)

        return status

    def _after_sell_cancel(self, ctx: TradingContext, record: TradeRecord,
                           final: OrderStatus) -> TradingStatus:
        """Book what the cancelled sell did fill; finish or go back to BOUGHT."""
        sell = ctx.status.sell_order
        if final.state == FillState.FILLED:
            complete_trade(record, final.average or sell.price, ctx.records, ctx.stats,
                           ctx.config.investment_amount, ctx.now)
            return replace(ctx.status, state=TradingState.DONE, last_update_time=ctx.now)

        if final.filled > 0 and record.remaining_amount > 0:
            record_partial_sale(record, final.filled, final.average or sell.price)
        if record.remaining_amount <= 0:
            complete_trade(record, final.average or sell.price, ctx.records, ctx.stats,
                           ctx.config.investment_amount, ctx.now)
            return replace(ctx.status, state=TradingState.DONE, last_update_time=ctx.now)

        return replace(ctx.status, state=TradingState.BOUGHT, sell_order=None,
                       last_update_time=ctx.now)

    # === DONE ===

    async def handle_done(self, ctx: TradingContext) -> TradingStatus:
        return TradingStatus.idle(ctx.now)

    # === shared ===

    async def _stop_loss(self, ctx: TradingContext, record: TradeRecord,
                         price: float) -> TradingStatus:
        """Cancel any working sell, market-sell the rest, finalize completed."""
        status = ctx.status
        cfg = ctx.config
        if status.sell_order is not None:
            final = await self._cancel_and_settle(status.symbol, status.sell_order,
                                                  record.remaining_amount)
            if final is None:
                return status
            if final.state == FillState.FILLED:
                return self._after_sell_cancel(ctx, record, final)
            if final.filled > 0:
                record_partial_sale(record, final.filled,
                                    final.average or status.sell_order.price)
            status = replace(status, state=TradingState.BOUGHT, sell_order=None,
                             last_update_time=ctx.now)

        try:
            amount = await sellable_amount(self.orders.gateway, status.symbol,
                                           record.remaining_amount)
            sold = await self.orders.create_market_sell(
                status.symbol, amount, price * cfg.stop_loss.execution_discount)
        except ExchangeError as e:
            logger.error(f"❌ Stop-loss sell failed, retry next tick: {e}")
            return status

        await self._sleep(cfg.stop_loss.wait_seconds)
        record.sell_order_id = sold.order_id
        complete_trade(record, sold.price, ctx.records, ctx.stats,
                       cfg.investment_amount, ctx.now)
        return replace(status, state=TradingState.DONE, sell_order=None,
                       last_update_time=ctx.now)

    async def _cancel_and_settle(self, symbol: str, order: OrderInfo,
                                 expected: Optional[float] = None) -> Optional[OrderStatus]:
        """Cancel an order and return its final state, or None to retry later."""
        try:
            return await self.orders.cancel(symbol, order.order_id)
        except OrderNotFoundError:
            logger.info(f"Order {order.order_id} already gone on cancel, checking it")
        except ExchangeError as e:
            logger.warning(f"Cancel of {order.order_id} failed, retry next tick: {e}")
            return None

        # A filled order can no longer be cancelled but can still be queried
        try:
            return await self.orders.get_order_status(symbol, order.order_id)
        except OrderNotFoundError:
            return await self._settle_missing(symbol, order, expected)
        except ExchangeError as e:
            logger.warning(f"Order query after cancel failed, retry next tick: {e}")
            return None

    async def _settle_missing(self, symbol: str, order: OrderInfo,
                              expected: Optional[float] = None) -> Optional[OrderStatus]:
        """Order unknown to the exchange: infer its outcome from the balance.

        A buy filled if the base asset is now held; a sell filled if it is not.
        """
        expected = expected if expected is not None else order.amount
        try:
            held = await infer_fill_from_balance(self.orders.gateway, symbol, expected)
        except ExchangeError as e:
            logger.warning(f"Balance check failed, retry next tick: {e}")
            return None
        filled = held if order.side.value == "buy" else not held
        return OrderStatus(
            order_id=order.order_id,
            state=FillState.FILLED if filled else FillState.CANCELED,
            amount=expected,
            filled=expected if filled else 0.0,
        )

    # === manual ===

    async def manual_sell(self, ctx: TradingContext, price: Optional[float] = None) -> TradingStatus:
        """Operator exit for an open position: limit sell at `price`, or market if None."""
        status = ctx.status
        if status.state != TradingState.BOUGHT:
            raise ManualOrderError(f"manual sell needs BOUGHT, state is {status.state.value}")
        record = find_record(ctx.records, status.current_trade_id)
        if record is None:
            raise ManualOrderError(f"no trade record {status.current_trade_id}")

        if price is None:
            current = await self.orders.get_current_price(status.symbol)
            amount = await sellable_amount(self.orders.gateway, status.symbol,
                                           record.remaining_amount)
            sold = await self.orders.create_market_sell(
                status.symbol, amount,
                current * ctx.config.trading.market_order_discount)
            record.sell_order_id = sold.order_id
            complete_trade(record, sold.price, ctx.records, ctx.stats,
                           ctx.config.investment_amount, ctx.now)
            return replace(status, state=TradingState.DONE, last_update_time=ctx.now)

        amount = await sellable_amount(self.orders.gateway, status.symbol,
                                       record.remaining_amount)
        sell = await self.orders.create_sell(status.symbol, amount, price)
        record.sell_order_id = sell.order_id
        record.sell_price = price
        return replace(status, state=TradingState.SELL_ORDER_PLACED, sell_order=sell,
                       last_update_time=ctx.now)
