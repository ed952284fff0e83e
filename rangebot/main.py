"""
rangebot CLI.

  python -m rangebot.main                 run the engine loop
  python -m rangebot.main --once          run a single tick and exit
  python -m rangebot.main --status        print state, stats and breaker
  python -m rangebot.main --reset-breaker
  python -m rangebot.main --auto on|off
  python -m rangebot.main --buy ETH/USDT [--price 2500]
  python -m rangebot.main --sell [--price 2600]
"""
import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from rangebot.advisor import AIAdvisor
from rangebot.config import get_config, load_secrets
from rangebot.engine import TradingEngine
from rangebot.exchange import BinanceSpotClient, ExchangeGateway
from rangebot.persistence import DataStore
from rangebot.price_feed import PriceFeed

logger = logging.getLogger(__name__)


def build_engine(price_feed=None) -> TradingEngine:
    cfg = get_config()
    secrets = load_secrets()
    if not secrets.binance_api_key or not secrets.binance_secret_key:
        logger.warning("⚠️ No Binance API keys configured, private endpoints will fail")

    gateway = ExchangeGateway(
        lambda: BinanceSpotClient(secrets.binance_api_key, secrets.binance_secret_key,
                                  testnet=cfg.is_testnet),
        price_feed=price_feed,
        price_max_age=cfg.price_feed.max_age_seconds,
    )
    advisor = None
    if secrets.deepseek_api_key:
        advisor = AIAdvisor(secrets.deepseek_api_key, cfg.ai, gateway)
    else:
        logger.info("No DEEPSEEK_API_KEY, AI advisory disabled")

    store = DataStore(Path(cfg.engine.data_dir))
    return TradingEngine(store, gateway, cfg, advisor=advisor)


async def _command(engine: TradingEngine, coro):
    """Queue an operator command and apply it without running a trading tick."""
    task = asyncio.ensure_future(coro)
    await asyncio.sleep(0)
    await engine.drain_commands()
    return await task


async def _run_forever(engine: TradingEngine, price_feed) -> None:
    feed_task = asyncio.create_task(price_feed.run()) if price_feed else None
    try:
        await engine.run()
    finally:
        if feed_task:
            await price_feed.close()
            feed_task.cancel()


async def _amain(args) -> int:
    cfg = get_config()
    price_feed = None
    if cfg.price_feed.enabled and not (args.once or args.status):
        price_feed = PriceFeed(cfg.symbols, testnet=cfg.is_testnet)
    engine = build_engine(price_feed)

    if args.status:
        print(json.dumps(engine.snapshot(), indent=2, ensure_ascii=False))
        return 0
    if args.reset_breaker:
        state = await _command(engine, engine.reset_circuit_breaker())
        print(f"Circuit breaker reset: {state.to_dict()}")
        return 0
    if args.auto:
        enabled = await _command(engine, engine.toggle_auto_trading(args.auto == "on"))
        print(f"Auto trading {'on' if enabled else 'off'}")
        return 0
    if args.buy:
        status = await _command(engine, engine.submit_manual_buy(args.buy, args.price))
        print(f"Buy placed: {status.to_dict()}")
        return 0
    if args.sell:
        status = await _command(engine, engine.submit_manual_sell(args.price))
        print(f"Sell placed: {status.to_dict()}")
        return 0
    if args.once:
        await engine.tick()
        print(json.dumps(engine.snapshot()["status"], indent=2))
        return 0

    await _run_forever(engine, price_feed)
    return 0


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(description="rangebot range trading engine")
    parser.add_argument("--once", action="store_true", help="Run a single tick and exit")
    parser.add_argument("--status", action="store_true", help="Show current state")
    parser.add_argument("--reset-breaker", action="store_true",
                        help="Manually reset the circuit breaker")
    parser.add_argument("--auto", choices=["on", "off"], help="Switch auto trading")
    parser.add_argument("--buy", metavar="SYMBOL", help="Manual limit buy (IDLE only)")
    parser.add_argument("--sell", action="store_true",
                        help="Manual exit of the open position (market unless --price)")
    parser.add_argument("--price", type=float, help="Limit price for --buy/--sell")
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format='%(asctime)s %(name)s %(levelname)s %(message)s',
                        handlers=[logging.StreamHandler(sys.stdout)])
    try:
        sys.exit(asyncio.run(_amain(args)))
    except Exception as e:
        logger.error(f"❌ {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
