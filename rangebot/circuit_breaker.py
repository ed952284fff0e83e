"""
Circuit breaker — halts new entries after sustained failures or losses.

Trips on any of:
  - consecutive failed trades >= consecutive_failures
  - today's realized profit (completed trades, local date) < -daily_loss_limit
  - cumulative total profit < -total_loss_limit
and stays tripped for cooldown_seconds, after which it resets itself.
A trip only blocks opening positions; open positions keep being managed.
"""
import logging
from dataclasses import replace
from typing import Optional, Sequence, Tuple

from core.indicators import pct_change
from core.types import CircuitBreakerState, SystemStats, TradeRecord, TradeStatus
from rangebot.strategy import current_date, date_of, now_ms

logger = logging.getLogger(__name__)


def daily_realized_profit(records: Sequence[TradeRecord], day: str) -> float:
    return sum(r.profit or 0.0 for r in records
               if r.status == TradeStatus.COMPLETED and date_of(r.start_time) == day)


class CircuitBreaker:
    def __init__(self, config, state: Optional[CircuitBreakerState] = None):
        self.config = config
        self.state = state or CircuitBreakerState()

    def update_config(self, config) -> None:
        self.config = config

    def should_trip(self, stats: SystemStats, records: Sequence[TradeRecord],
                    now: Optional[int] = None) -> Tuple[bool, str]:
        """(tripped, reason). May trip or auto-reset as a side effect."""
        if not self.config.enabled:
            return False, ""
        now = now if now is not None else now_ms()

        if self.state.is_tripped:
            elapsed = now - (self.state.trip_time or 0)
            cooldown_ms = self.config.cooldown_seconds * 1000
            if elapsed < cooldown_ms:
                remaining_min = -(-(cooldown_ms - elapsed) // 60000)
                logger.info(f"🔒 Circuit breaker tripped, {remaining_min} min cooldown left")
                return True, self.state.trip_reason
            logger.info("✅ Circuit breaker cooldown over, trading resumes")
            self.reset()

        if self.state.consecutive_failures >= self.config.consecutive_failures:
            return True, self._trip(f"{self.state.consecutive_failures} consecutive failures", now)

        self.state.daily_loss = daily_realized_profit(records, current_date(now))
        if self.state.daily_loss < -self.config.daily_loss_limit:
            return True, self._trip(
                f"daily loss {abs(self.state.daily_loss):.2f} exceeds limit "
                f"{self.config.daily_loss_limit}", now)

        if stats.total_profit < -self.config.total_loss_limit:
            return True, self._trip(
                f"total loss {abs(stats.total_profit):.2f} exceeds limit "
                f"{self.config.total_loss_limit}", now)

        return False, ""

    def _trip(self, reason: str, now: int) -> str:
        self.state.is_tripped = True
        self.state.trip_time = now
        self.state.trip_reason = reason
        hours = self.config.cooldown_seconds / 3600
        logger.error(f"🚨 Circuit breaker TRIPPED: {reason} (cooldown {hours:.1f}h)")
        return reason

    def record_failure(self) -> None:
        self.state.consecutive_failures += 1
        logger.warning(f"⚠️ Consecutive failures: {self.state.consecutive_failures}/"
                       f"{self.config.consecutive_failures}")

    def record_success(self) -> None:
        if self.state.consecutive_failures > 0:
            logger.info(f"✅ Trade succeeded, failure streak of "
                        f"{self.state.consecutive_failures} cleared")
            self.state.consecutive_failures = 0

    def check_price_volatility(self, current_price: float, previous_price: float) -> bool:
        """True when the move between two observations exceeds the threshold."""
        if not self.config.enabled or previous_price <= 0:
            return False
        move = abs(pct_change(current_price, previous_price))
        if move > self.config.price_volatility_threshold:
            logger.warning(f"⚠️ Abnormal volatility {move:.2f}% "
                           f"(threshold {self.config.price_volatility_threshold}%)")
            return True
        return False

    def reset(self) -> None:
        """Clear everything immediately (manual reset or cooldown expiry)."""
        self.state = CircuitBreakerState()

    def reset_daily(self) -> None:
        self.state.daily_loss = 0.0
        logger.info("📊 Circuit breaker daily loss reset")

    def is_tripped(self) -> bool:
        return self.state.is_tripped

    def get_state(self) -> CircuitBreakerState:
        return replace(self.state)
