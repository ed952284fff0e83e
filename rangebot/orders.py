"""
Order Lifecycle Manager — thin orchestration over ExchangeGateway.

Gateway order dicts are turned into OrderStatus by to_order_status() and
nowhere else. Handlers branch on OrderStatus.state.
"""
import logging
from typing import Optional

from core.types import FillState, OrderInfo, OrderSide, OrderState, OrderStatus
from rangebot.exchange import base_asset
from rangebot.strategy import floor_to_step, now_ms

logger = logging.getLogger(__name__)

# Balance may read slightly under the ordered amount after fees / rounding
BALANCE_TOLERANCE = 0.999


def to_order_status(raw: dict) -> OrderStatus:
    """Normalize a gateway order dict.

    FILLED: status closed, or filled >= amount.
    CANCELED: status canceled (``filled`` keeps any partial fill).
    PARTIALLY_FILLED / OPEN: still working, with or without fills.
    """
    amount = float(raw.get("amount") or 0)
    filled = float(raw.get("filled") or 0)
    status = raw.get("status")

    if status == OrderState.CLOSED.value or (amount > 0 and filled >= amount):
        state = FillState.FILLED
        if filled <= 0:
            filled = amount
    elif status == OrderState.CANCELED.value:
        state = FillState.CANCELED
    elif filled > 0:
        state = FillState.PARTIALLY_FILLED
    else:
        state = FillState.OPEN

    return OrderStatus(
        order_id=str(raw.get("id", "")),
        state=state,
        amount=amount,
        filled=filled,
        average=raw.get("average") or None,
        timestamp=raw.get("timestamp"),
        last_trade_timestamp=raw.get("last_trade_timestamp"),
    )


def order_active_time(status: Optional[OrderStatus], fallback_created_at: int) -> int:
    """Timestamp that order timeouts count from.

    The latest fill if anything filled (a slowly filling order is not stale),
    otherwise the placement time.
    """
    if status is None:
        return fallback_created_at
    if status.filled > 0:
        return status.last_trade_timestamp or status.timestamp or fallback_created_at
    return status.timestamp or fallback_created_at


async def infer_fill_from_balance(gateway, symbol: str, expected_amount: float,
                                  tolerance: float = BALANCE_TOLERANCE) -> bool:
    """Decide whether an order the exchange no longer knows actually filled.

    Used only when a query/cancel answers "order not found". Treats the order
    as filled if the free base-asset balance covers tolerance * expected.
    Balance errors propagate (caller retries next tick).
    """
    asset = base_asset(symbol)
    balances = await gateway.fetch_balance()
    held = float(balances.get(asset, {}).get("free", 0))
    filled = held >= expected_amount * tolerance
    logger.info(f"💰 {asset} balance {held}, expected {expected_amount} → "
                f"{'filled' if filled else 'no position'}")
    return filled


async def sellable_amount(gateway, symbol: str, amount: float) -> float:
    """Amount to sell for a position, snapped to the lot step.

    Capped at the free base-asset balance: the buy fee is charged in the base
    asset, so the wallet usually holds a little less than was bought. A zero
    free balance (balance not reported) leaves the amount as is.
    Exchange errors propagate.
    """
    balances = await gateway.fetch_balance()
    free = float(balances.get(base_asset(symbol), {}).get("free", 0))
    if 0 < free < amount:
        logger.info(f"💰 Selling free balance {free} instead of {amount}")
        amount = free
    limits = await gateway.load_instrument_limits(symbol)
    return floor_to_step(amount, limits.amount_step) or amount


class OrderManager:
    def __init__(self, gateway):
        self.gateway = gateway

    async def create_buy(self, symbol: str, amount: float, price: float) -> OrderInfo:
        order = await self.gateway.create_limit_buy(symbol, amount, price)
        logger.info(f"🟢 BUY limit {symbol} {amount} @ {price} → {order['id']}")
        return OrderInfo(order_id=order["id"], symbol=symbol, side=OrderSide.BUY,
                         price=price, amount=amount, created_at=now_ms())

    async def create_sell(self, symbol: str, amount: float, price: float) -> OrderInfo:
        order = await self.gateway.create_limit_sell(symbol, amount, price)
        logger.info(f"🔴 SELL limit {symbol} {amount} @ {price} → {order['id']}")
        return OrderInfo(order_id=order["id"], symbol=symbol, side=OrderSide.SELL,
                         price=price, amount=amount, created_at=now_ms())

    async def create_market_sell(self, symbol: str, amount: float,
                                 fallback_price: float) -> OrderInfo:
        """Market sell; price is the reported average fill or fallback_price."""
        order = await self.gateway.create_market_sell(symbol, amount)
        now = now_ms()
        price = order.get("average") or fallback_price
        filled = order.get("filled") or amount
        logger.info(f"🔻 SELL market {symbol} {amount} → {order['id']} avg={price}")
        return OrderInfo(order_id=order["id"], symbol=symbol, side=OrderSide.SELL,
                         price=price, amount=amount, status=OrderState.CLOSED,
                         created_at=now, filled_at=now, filled=filled)

    async def get_order_status(self, symbol: str, order_id: str) -> OrderStatus:
        return to_order_status(await self.gateway.fetch_order(symbol, order_id))

    async def cancel(self, symbol: str, order_id: str) -> OrderStatus:
        """Cancel and return the order's final status.

        Raises OrderNotFoundError if the exchange no longer knows the order.
        """
        raw = await self.gateway.cancel_order(symbol, order_id)
        status = to_order_status(raw)
        logger.info(f"✖️ Cancelled {symbol} {order_id} (filled {status.filled}/{status.amount})")
        return status

    async def get_current_price(self, symbol: str) -> float:
        return await self.gateway.fetch_price(symbol)
