"""
Trading engine — owns config/status/records/stats and drives the state
machine on a fixed period.

One tick:
  1. reload persisted data (picks up config edits)
  2. drain queued operator commands
  3. daily rollover check
  4. auto-trading switch
  5. circuit breaker (blocks IDLE only; open positions are still managed)
  6. dispatch to the handler for the current state
  7. feed finalized trades to the circuit breaker
  8. price volatility watch
  9. persist if anything changed

Ticks never overlap: a tick that comes due while another is running is
skipped. Operator actions go through a command queue drained at the top of
the next tick, so nothing outside the tick mutates engine state.
"""
import asyncio
import json
import logging
import signal as sig
from collections import deque
from dataclasses import dataclass, replace
from typing import Any, Deque, Dict, Optional

from core.notify import send_alert
from core.types import (
    ACTIVE_STATES, CircuitBreakerState, TradeStatus, TradingState, TradingStatus,
)
from rangebot.circuit_breaker import CircuitBreaker
from rangebot.config import SystemConfig, config_to_dict, merge_config
from rangebot.daily_reset import DailyResetHandler
from rangebot.handlers import ManualOrderError, StateHandlers, TradingContext
from rangebot.orders import OrderManager
from rangebot.persistence import DataStore, EngineData
from rangebot.scorer import MarketScanner
from rangebot.strategy import is_in_warning_window, now_ms

logger = logging.getLogger(__name__)


@dataclass
class _Command:
    name: str
    args: Dict[str, Any]
    future: asyncio.Future


class TradingEngine:
    def __init__(self, store: DataStore, gateway, default_config: SystemConfig,
                 advisor=None, order_manager: Optional[OrderManager] = None,
                 scanner: Optional[MarketScanner] = None, alert=None,
                 sleep=asyncio.sleep):
        self.store = store
        self.gateway = gateway
        self.default_config = default_config
        self.orders = order_manager or OrderManager(gateway)
        self.scanner = scanner or MarketScanner(gateway)
        self.advisor = advisor
        self.handlers = StateHandlers(self.orders, self.scanner, advisor, sleep=sleep)
        self.daily_reset = DailyResetHandler(self.orders, sleep=sleep)
        self._alert = alert or send_alert

        self.data: EngineData = store.load(default_config)
        self.breaker = CircuitBreaker(self.data.config.circuit_breaker, self.data.breaker)
        self._lock = asyncio.Lock()
        self._commands: Deque[_Command] = deque()
        self._unsaved = False
        self._running = False
        self._last_price: Dict[str, float] = {}

    @property
    def config(self) -> SystemConfig:
        return self.data.config

    # === tick ===

    async def tick(self) -> bool:
        """Run one tick. Returns False if skipped because one is in flight."""
        if self._lock.locked():
            logger.warning("⏭️ Previous tick still running, skipping this one")
            return False
        async with self._lock:
            try:
                await self._tick()
            except Exception as e:
                logger.error(f"Tick failed: {e}", exc_info=True)
        return True

    async def drain_commands(self) -> None:
        """Apply queued operator commands without trading (used by the CLI)."""
        async with self._lock:
            before = self._fingerprint()
            await self._drain()
            self._persist_if_changed(before)

    async def _tick(self) -> None:
        self._reload()
        before = self._fingerprint()
        data = self.data
        now = now_ms()
        outcomes_before = {r.id: r.status for r in data.records}

        await self._drain()

        ctx = TradingContext(config=data.config, status=data.status,
                             records=data.records, stats=data.stats, now=now)
        reset = await self.daily_reset.check_and_reset(ctx)
        data.stats = ctx.stats = reset.stats
        if reset.needs_reset:
            data.status = ctx.status = reset.status
            self.breaker.reset_daily()

        cfg = data.config
        if (data.status.state in ACTIVE_STATES
                and is_in_warning_window(cfg.daily_reset.warning_time,
                                         cfg.daily_reset.processing_time, now)):
            logger.warning(f"⚠️ {data.status.symbol} still open, forced liquidation "
                           f"after midnight if not closed")

        if not cfg.is_auto_trading:
            logger.info("⏸️ Auto trading is off")
        else:
            tripped, reason = self.breaker.should_trip(data.stats, data.records, now)
            if tripped and data.status.state == TradingState.IDLE:
                logger.info(f"🔒 New trades blocked: {reason}")
            else:
                data.status = await self.handlers.dispatch(ctx)

        self._record_outcomes(outcomes_before)
        await self._watch_volatility()

        if not data.status.is_consistent():
            logger.critical(f"🚨 Inconsistent trading status: {data.status.to_dict()}")
            self._alert(f"🚨 rangebot: inconsistent trading status {data.status.state.value}",
                        webhook_url=cfg.notifications.webhook_url or None,
                        mention=cfg.notifications.mention)

        self._persist_if_changed(before)

    def _reload(self) -> None:
        # Only pick up disk state when memory has nothing unsaved
        if self._unsaved:
            return
        fresh = self.store.load(self.default_config)
        fresh.breaker = self.breaker.state
        self.data = fresh
        self.breaker.update_config(fresh.config.circuit_breaker)
        if self.advisor is not None:
            self.advisor.update_config(fresh.config.ai)

    def _record_outcomes(self, before: Dict[str, TradeStatus]) -> None:
        for record in self.data.records:
            if before.get(record.id, TradeStatus.IN_PROGRESS) != TradeStatus.IN_PROGRESS:
                continue
            if record.status == TradeStatus.FAILED:
                self.breaker.record_failure()
            elif record.status == TradeStatus.COMPLETED:
                # stop-loss and forced exits are completed trades too
                self.breaker.record_success()

    async def _watch_volatility(self) -> None:
        symbol = self.data.status.symbol
        if symbol is None:
            return
        try:
            price = await self.gateway.fetch_price(symbol)
        except Exception as e:
            logger.debug(f"Volatility check skipped: {e}")
            return
        previous = self._last_price.get(symbol)
        self._last_price[symbol] = price
        if previous and self.breaker.check_price_volatility(price, previous):
            cfg = self.data.config
            self._alert(f"⚠️ rangebot: abnormal move on {symbol} {previous} → {price}",
                        webhook_url=cfg.notifications.webhook_url or None,
                        mention=cfg.notifications.mention)

    def _fingerprint(self) -> str:
        d = self.data
        return json.dumps({
            "config": config_to_dict(d.config),
            "status": d.status.to_dict(),
            "records": [r.to_dict() for r in d.records],
            "stats": d.stats.to_dict(),
            "breaker": self.breaker.state.to_dict(),
        }, sort_keys=True)

    def _persist_if_changed(self, before: str) -> None:
        if self._fingerprint() == before and not self._unsaved:
            return
        self.data.breaker = self.breaker.state
        if self.store.save(self.data):
            self._unsaved = False
            return
        self._unsaved = True
        cfg = self.data.config
        logger.critical("🚨 State NOT persisted, restart could repeat orders")
        self._alert(f"🚨 rangebot: failed to persist state ({self.data.status.state.value})",
                    webhook_url=cfg.notifications.webhook_url or None,
                    mention=cfg.notifications.mention)

    # === commands ===

    async def _submit(self, name: str, **args) -> Any:
        future = asyncio.get_running_loop().create_future()
        self._commands.append(_Command(name, args, future))
        return await future

    async def _drain(self) -> None:
        while self._commands:
            cmd = self._commands.popleft()
            if cmd.future.done():
                continue
            try:
                result = await self._apply(cmd)
            except Exception as e:
                logger.error(f"Command {cmd.name} failed: {e}")
                cmd.future.set_exception(e)
            else:
                cmd.future.set_result(result)

    async def _apply(self, cmd: _Command) -> Any:
        data = self.data
        if cmd.name == "toggle_auto_trading":
            enabled = cmd.args["enabled"]
            if enabled is None:
                enabled = not data.config.is_auto_trading
            data.config = replace(data.config, is_auto_trading=enabled)
            logger.info(f"{'▶️' if enabled else '⏸️'} Auto trading {'on' if enabled else 'off'}")
            return enabled

        if cmd.name == "update_config":
            data.config = merge_config(data.config, cmd.args["updates"])
            self.breaker.update_config(data.config.circuit_breaker)
            if self.advisor is not None:
                self.advisor.update_config(data.config.ai)
            logger.info(f"⚙️ Config updated: {sorted(cmd.args['updates'])}")
            return data.config

        if cmd.name == "reset_circuit_breaker":
            self.breaker.reset()
            logger.info("🔓 Circuit breaker reset by operator")
            return self.breaker.get_state()

        ctx = TradingContext(config=data.config, status=data.status,
                             records=data.records, stats=data.stats)
        if cmd.name == "manual_buy":
            if data.status.state not in (TradingState.IDLE, TradingState.DONE):
                raise ManualOrderError(f"manual buy needs IDLE, state is {data.status.state.value}")
            symbol = cmd.args["symbol"]
            price = cmd.args["price"]
            if price is None:
                price = await self.orders.get_current_price(symbol)
            status = await self.handlers.open_position(ctx, symbol, price)
            if status is None:
                raise ManualOrderError(f"manual buy of {symbol} was not placed")
            data.status = status
            return status

        if cmd.name == "manual_sell":
            data.status = await self.handlers.manual_sell(ctx, cmd.args["price"])
            return data.status

        raise ValueError(f"unknown command {cmd.name}")

    # === control surface ===

    async def toggle_auto_trading(self, enabled: Optional[bool] = None) -> bool:
        return await self._submit("toggle_auto_trading", enabled=enabled)

    def get_config(self) -> SystemConfig:
        return self.data.config

    async def update_config(self, updates: Dict[str, Any]) -> SystemConfig:
        return await self._submit("update_config", updates=updates)

    def get_circuit_breaker_state(self) -> CircuitBreakerState:
        return self.breaker.get_state()

    async def reset_circuit_breaker(self) -> CircuitBreakerState:
        return await self._submit("reset_circuit_breaker")

    async def submit_manual_buy(self, symbol: str, price: Optional[float] = None) -> TradingStatus:
        return await self._submit("manual_buy", symbol=symbol, price=price)

    async def submit_manual_sell(self, price: Optional[float] = None) -> TradingStatus:
        return await self._submit("manual_sell", price=price)

    def snapshot(self) -> Dict[str, Any]:
        d = self.data
        return {
            "auto_trading": d.config.is_auto_trading,
            "status": d.status.to_dict(),
            "stats": d.stats.to_dict(),
            "circuit_breaker": self.breaker.get_state().to_dict(),
            "open_records": [r.to_dict() for r in d.records
                             if r.status == TradeStatus.IN_PROGRESS],
        }

    # === loop ===

    async def run(self) -> None:
        """Tick every loop_interval_seconds until stop()."""
        loop = asyncio.get_running_loop()
        self._running = True
        for s in (sig.SIGINT, sig.SIGTERM):
            try:
                loop.add_signal_handler(s, self.stop)
            except (NotImplementedError, RuntimeError):
                pass

        logger.info("=" * 60)
        logger.info(f"rangebot started: {', '.join(self.config.symbols)} "
                    f"invest={self.config.investment_amount} "
                    f"testnet={self.config.is_testnet}")
        logger.info("=" * 60)

        in_flight = set()
        next_at = loop.time()
        while self._running:
            task = asyncio.create_task(self.tick())
            in_flight.add(task)
            task.add_done_callback(in_flight.discard)
            next_at += self.config.engine.loop_interval_seconds
            await asyncio.sleep(max(0.0, next_at - loop.time()))

        if in_flight:
            await asyncio.gather(*in_flight, return_exceptions=True)
        logger.info("rangebot stopped")

    def stop(self) -> None:
        logger.info("Shutdown signal received")
        self._running = False
