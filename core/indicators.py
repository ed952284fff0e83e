"""
Technical Indicators — 通用指标（纯数学，与策略/交易所无关）
============================================================
All range/trend math is imported from here. Strategy, scorer and advisory
code must not re-implement these.

Canonical source for: amplitude_pct, trend_pct, pct_change, sma, rsi
"""
from typing import List, Optional


def round_to(value: float, digits: int) -> float:
    """Round half away from zero (exchange-style), not banker's rounding."""
    factor = 10 ** digits
    if value >= 0:
        return int(value * factor + 0.5) / factor
    return -int(-value * factor + 0.5) / factor


def amplitude_pct(high: float, low: float) -> float:
    """Range width relative to the low: (high-low)/low * 100, 2 decimals."""
    if low <= 0:
        return 0.0
    return round_to((high - low) / low * 100, 2)


def trend_pct(first_close: float, last_close: float) -> float:
    """Net move over the window: (last-first)/first * 100, 2 decimals."""
    if first_close <= 0:
        return 0.0
    return round_to((last_close - first_close) / first_close * 100, 2)


def pct_change(current: float, reference: float) -> float:
    """Unrounded percentage change of current vs reference."""
    if reference == 0:
        return 0.0
    return (current - reference) / reference * 100


def sma(data: List[float], period: int) -> Optional[float]:
    """Simple moving average of the last `period` values, None if too short."""
    if period <= 0 or len(data) < period:
        return None
    return sum(data[-period:]) / period


def rsi(data: List[float], period: int = 14) -> List[float]:
    """Relative Strength Index.

    Returns values 0-100. First `period` values are padded with 50.
    """
    result = [50.0] * min(period, len(data))
    for i in range(period, len(data)):
        gains, losses = [], []
        for j in range(i - period + 1, i + 1):
            change = data[j] - data[j - 1]
            if change > 0:
                gains.append(change)
            elif change < 0:
                losses.append(abs(change))
        avg_gain = sum(gains) / period if gains else 0
        avg_loss = sum(losses) / period if losses else 0.0001
        rs = avg_gain / avg_loss
        result.append(100 - 100 / (1 + rs))
    return result
