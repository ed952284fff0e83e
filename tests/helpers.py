"""Builders shared by the rangebot tests."""
import asyncio
from datetime import datetime
from unittest.mock import AsyncMock, MagicMock

from core.types import (
    OrderInfo, OrderSide, SystemStats, TradeRecord, TradingState, TradingStatus,
)
from rangebot.config import SystemConfig, config_from_dict
from rangebot.exchange import InstrumentLimits
from rangebot.handlers import TradingContext

# Local noon, far from the daily cutover / warning windows
NOW = int(datetime(2026, 3, 10, 12, 0).timestamp() * 1000)
MINUTE = 60 * 1000
HOUR = 60 * MINUTE


def run(coro):
    """Run a coroutine in a fresh event loop (no pytest-asyncio needed)."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def raw_order(order_id="1", status="open", amount=1.0, filled=0.0, average=None,
              timestamp=None, last_trade_timestamp=None):
    """A gateway order dict as BinanceSpotClient.parse_order returns it."""
    return {
        "id": order_id, "status": status, "amount": amount, "filled": filled,
        "average": average, "timestamp": timestamp,
        "last_trade_timestamp": last_trade_timestamp,
    }


def candles(highs, lows, closes):
    return [{"ts": i, "o": c, "h": h, "l": l, "c": c, "vol": 10.0}
            for i, (h, l, c) in enumerate(zip(highs, lows, closes))]


def make_config(**overrides) -> SystemConfig:
    """Defaults with multi-timeframe and AI off unless asked for."""
    data = {
        "multi_timeframe": {"enabled": False},
        "ai": {"enabled": False},
        "symbols": ["ETH/USDT", "BTC/USDT"],
        "is_auto_trading": True,
    }
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(data.get(key), dict):
            data[key] = {**data[key], **value}
        else:
            data[key] = value
    return config_from_dict(data)


def make_gateway(price=100.0, balances=None, limits=None):
    gw = MagicMock()
    gw.fetch_price = AsyncMock(return_value=price)
    gw.fetch_balance = AsyncMock(return_value=balances if balances is not None
                                 else {"USDT": {"free": 1000.0, "used": 0.0, "total": 1000.0}})
    gw.load_instrument_limits = AsyncMock(return_value=limits or InstrumentLimits(
        min_amount=0.0001, max_amount=9000.0, min_notional=5.0,
        amount_step=0.0001, price_tick=0.01))
    gw.fetch_candles = AsyncMock(return_value=[])
    gw.create_limit_buy = AsyncMock(return_value=raw_order("B1"))
    gw.create_limit_sell = AsyncMock(return_value=raw_order("S1"))
    gw.create_market_sell = AsyncMock(return_value=raw_order("M1", "closed", 1.0, 1.0, None))
    gw.create_market_buy = AsyncMock(return_value=raw_order("MB1", "closed", 1.0, 1.0, None))
    gw.fetch_order = AsyncMock(return_value=raw_order("B1"))
    gw.cancel_order = AsyncMock(return_value=raw_order("B1", "canceled"))
    return gw


def open_trade(state=TradingState.BUY_ORDER_PLACED, symbol="ETH/USDT", amount=1.0,
               buy_price=100.0, created_at=NOW - 10 * MINUTE, high=110.0, low=95.0,
               sell_price=None):
    """A status + matching in-progress record for an open trade."""
    record = TradeRecord(id="trade_1", symbol=symbol, buy_order_id="B1",
                         buy_price=buy_price, amount=amount, start_time=created_at)
    buy = OrderInfo(order_id="B1", symbol=symbol, side=OrderSide.BUY,
                    price=buy_price, amount=amount, created_at=created_at)
    sell = None
    if state == TradingState.SELL_ORDER_PLACED:
        sell = OrderInfo(order_id="S1", symbol=symbol, side=OrderSide.SELL,
                         price=sell_price or 108.0, amount=amount, created_at=created_at)
        record.sell_order_id = "S1"
        record.sell_price = sell.price
    status = TradingStatus(state=state, symbol=symbol, current_trade_id=record.id,
                           buy_order=buy, sell_order=sell, high=high, low=low,
                           last_update_time=created_at)
    return status, record


def make_ctx(config=None, status=None, records=None, stats=None, now=NOW):
    return TradingContext(
        config=config or make_config(),
        status=status or TradingStatus.idle(now),
        records=records if records is not None else [],
        stats=stats or SystemStats(total_trades=len(records or []),
                                   current_date="2026-03-10"),
        now=now,
    )


