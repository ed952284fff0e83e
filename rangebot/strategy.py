"""
Trading arithmetic and bookkeeping shared by the state handlers, the daily
reset handler and manual commands.

Everything here is synchronous and exchange-free.
"""
import logging
import math
import time
from datetime import datetime
from decimal import ROUND_DOWN, Decimal
from typing import List, Optional, Sequence, Tuple

from core.indicators import pct_change, round_to
from core.types import SystemStats, TradeRecord, TradeStatus
from rangebot.config import parse_hhmm

logger = logging.getLogger(__name__)

DAY_MS = 24 * 60 * 60 * 1000

BREACH_UPPER = "upper"
BREACH_LOWER = "lower"


# --- clock ---
def now_ms() -> int:
    return int(time.time() * 1000)


def date_of(ts_ms: int) -> str:
    """Local calendar date of an epoch-ms timestamp."""
    return datetime.fromtimestamp(ts_ms / 1000).strftime("%Y-%m-%d")


def current_date(now: Optional[int] = None) -> str:
    return date_of(now if now is not None else now_ms())


def _minute_of_day(now: Optional[int]) -> int:
    dt = datetime.fromtimestamp((now if now is not None else now_ms()) / 1000)
    return dt.hour * 60 + dt.minute


def is_in_cutover_window(processing_time: str, now: Optional[int] = None) -> bool:
    """True from the daily cutover time until local midnight."""
    h, m = parse_hhmm(processing_time)
    return _minute_of_day(now) >= h * 60 + m


def is_in_warning_window(warning_time: str, processing_time: str,
                         now: Optional[int] = None) -> bool:
    wh, wm = parse_hhmm(warning_time)
    minute = _minute_of_day(now)
    return minute >= wh * 60 + wm and not is_in_cutover_window(processing_time, now)


# --- sizing / precision ---
def calculate_buy_amount(investment: float, buy_price: float) -> float:
    return round_to(investment / buy_price, 8)


def floor_to_step(value: float, step: float) -> float:
    """Snap down to an exchange step (lot size / tick size). step=0 is a no-op."""
    if not step:
        return value
    d_step = Decimal(str(step))
    snapped = (Decimal(str(value)) / d_step).to_integral_value(rounding=ROUND_DOWN) * d_step
    return float(snapped)


def snap_order(amount: float, price: float, limits) -> Tuple[Optional[float], Optional[float], str]:
    """Apply lot/tick sizes and check min/max amount and min notional.

    Returns (amount, price, "") or (None, None, reason) on a violation.
    """
    amount = floor_to_step(amount, limits.amount_step)
    price = floor_to_step(price, limits.price_tick)
    if amount <= 0:
        return None, None, "amount rounds to zero"
    if limits.min_amount and amount < limits.min_amount:
        return None, None, f"amount {amount} below minimum {limits.min_amount}"
    if limits.max_amount and amount > limits.max_amount:
        return None, None, f"amount {amount} above maximum {limits.max_amount}"
    notional = amount * price
    if limits.min_notional and notional < limits.min_notional:
        return None, None, f"notional {notional:.2f} below minimum {limits.min_notional}"
    return amount, price, ""


# --- policies ---
def calculate_profit(amount: float, buy_price: float, sell_price: float) -> Tuple[float, float]:
    """(profit, profit_rate %) both rounded to 2 decimals."""
    buy_total = amount * buy_price
    profit = amount * sell_price - buy_total
    rate = profit / buy_total * 100 if buy_total else 0.0
    return round_to(profit, 2), round_to(rate, 2)


def check_protection(current_price: float, high: Optional[float],
                     low: Optional[float]) -> Optional[str]:
    """BREACH_UPPER / BREACH_LOWER when price left the recorded range, else None."""
    if high is not None and current_price > high:
        return BREACH_UPPER
    if low is not None and current_price < low:
        return BREACH_LOWER
    return None


def is_timed_out(active_time: int, timeout_seconds: float, now: Optional[int] = None) -> bool:
    now = now if now is not None else now_ms()
    return now - active_time > timeout_seconds * 1000


def stop_loss_hit(current_price: float, buy_price: float, threshold: float) -> Tuple[bool, float]:
    change = pct_change(current_price, buy_price)
    return change <= threshold, change


def price_deviation_pct(order_price: float, current_price: float) -> float:
    return abs(pct_change(order_price, current_price))


# --- records / stats ---
def find_record(records: Sequence[TradeRecord], trade_id: Optional[str]) -> Optional[TradeRecord]:
    if trade_id is None:
        return None
    for r in records:
        if r.id == trade_id:
            return r
    return None


def completed_on(records: Sequence[TradeRecord], day: str) -> int:
    return sum(1 for r in records
               if r.status == TradeStatus.COMPLETED and date_of(r.start_time) == day)


def last_completed_end(records: Sequence[TradeRecord]) -> Optional[int]:
    ends = [r.end_time for r in records if r.status == TradeStatus.COMPLETED and r.end_time]
    return max(ends) if ends else None


def record_partial_sale(record: TradeRecord, amount: float, price: float) -> None:
    """Account for a sell order that filled partly before being replaced."""
    if amount <= 0:
        return
    record.partial_amount = round_to(record.partial_amount + amount, 8)
    record.partial_proceeds += amount * price


def complete_trade(record: TradeRecord, exit_price: float, records: List[TradeRecord],
                   stats: SystemStats, investment: float, now: Optional[int] = None) -> None:
    """Finalize a record as completed: the remaining amount exits at exit_price.

    Profit covers earlier partial sales too. Updates stats in place.
    """
    if record.status != TradeStatus.IN_PROGRESS:
        logger.warning(f"Trade {record.id} already {record.status.value}, not completing twice")
        return
    now = now if now is not None else now_ms()
    proceeds = record.partial_proceeds + record.remaining_amount * exit_price
    avg_exit = proceeds / record.amount if record.amount else exit_price
    profit, rate = calculate_profit(record.amount, record.buy_price, avg_exit)

    record.sell_price = round_to(avg_exit, 8)
    record.profit = profit
    record.profit_rate = rate
    record.status = TradeStatus.COMPLETED
    record.end_time = now

    stats.successful_trades += 1
    stats.total_profit = round_to(stats.total_profit + profit, 8)
    _refresh_rates(records, stats, investment, now)
    logger.info(f"📊 Trade {record.id} {record.symbol} completed: "
                f"{profit:+.2f} ({rate:+.2f}%)")


def fail_trade(record: TradeRecord, reason: str, stats: SystemStats,
               now: Optional[int] = None) -> None:
    if record.status != TradeStatus.IN_PROGRESS:
        logger.warning(f"Trade {record.id} already {record.status.value}, not failing twice")
        return
    record.status = TradeStatus.FAILED
    record.failure_reason = reason
    record.end_time = now if now is not None else now_ms()
    stats.failed_trades += 1
    logger.info(f"❌ Trade {record.id} {record.symbol} failed: {reason}")


def discard_trade(record: TradeRecord, records: List[TradeRecord], stats: SystemStats) -> None:
    """Remove an immaterial trade (cancelled before any fill) as if never opened."""
    if record in records:
        records.remove(record)
    stats.total_trades = max(0, stats.total_trades - 1)
    count = stats.traded_symbols.get(record.symbol, 0)
    if count <= 1:
        stats.traded_symbols.pop(record.symbol, None)
    else:
        stats.traded_symbols[record.symbol] = count - 1
    logger.info(f"🗑️ Trade {record.id} {record.symbol} discarded (no fill)")


def _refresh_rates(records: Sequence[TradeRecord], stats: SystemStats,
                   investment: float, now: int) -> None:
    completed = [r for r in records if r.status == TradeStatus.COMPLETED]
    if not completed or investment <= 0:
        return
    stats.total_profit_rate = round_to(stats.total_profit / (len(completed) * investment) * 100, 4)
    first_start = min(r.start_time for r in completed)
    days_active = max(1, math.ceil((now - first_start) / DAY_MS))
    stats.annualized_return = round_to(stats.total_profit_rate / days_active * 365, 4)
