"""
Live ticker cache over Binance miniTicker websocket streams.

Optional: when enabled, ExchangeGateway.fetch_price answers from here while
the cached price is fresh and falls back to REST otherwise. A dead or stale
feed never blocks trading, it only costs an extra REST call.
"""
import asyncio
import json
import logging
import time
from typing import Dict, Iterable, Optional, Tuple

import websockets
from websockets.exceptions import ConnectionClosedError, WebSocketException

from rangebot.exchange import market_id

logger = logging.getLogger(__name__)

WS_URL = "wss://stream.binance.com:9443/stream"
WS_TESTNET_URL = "wss://testnet.binance.vision/stream"

PING_INTERVAL = 20
MAX_RECONNECT_DELAY = 120


class PriceFeed:
    def __init__(self, symbols: Iterable[str], testnet: bool = False):
        self.symbols = list(symbols)
        self.url = WS_TESTNET_URL if testnet else WS_URL
        self._by_market_id = {market_id(s): s for s in self.symbols}
        self._prices: Dict[str, Tuple[float, float]] = {}  # symbol -> (price, monotonic ts)
        self._ws = None
        self._running = False
        self._reconnect_delay = 1

    @property
    def stream_url(self) -> str:
        streams = "/".join(f"{market_id(s).lower()}@miniTicker" for s in self.symbols)
        return f"{self.url}?streams={streams}"

    def get(self, symbol: str, max_age_seconds: float) -> Optional[float]:
        """Cached last price, or None if unknown or older than max_age_seconds."""
        entry = self._prices.get(symbol)
        if entry is None:
            return None
        price, seen = entry
        if time.monotonic() - seen > max_age_seconds:
            return None
        return price

    def handle_message(self, msg: str) -> None:
        try:
            data = json.loads(msg)
        except json.JSONDecodeError:
            return
        payload = data.get("data", data)
        if payload.get("e") != "24hrMiniTicker":
            return
        symbol = self._by_market_id.get(payload.get("s", ""))
        if symbol is None:
            return
        try:
            self._prices[symbol] = (float(payload["c"]), time.monotonic())
        except (KeyError, TypeError, ValueError):
            logger.debug(f"Bad ticker payload: {payload}")

    async def _connect(self) -> bool:
        try:
            self._ws = await websockets.connect(
                self.stream_url, ping_interval=PING_INTERVAL,
                ping_timeout=10, close_timeout=5)
            logger.info(f"Price feed connected: {', '.join(self.symbols)}")
            self._reconnect_delay = 1
            return True
        except Exception as e:
            logger.error(f"Price feed connect failed: {e}")
            return False

    async def _backoff(self) -> None:
        await asyncio.sleep(self._reconnect_delay)
        self._reconnect_delay = min(self._reconnect_delay * 2, MAX_RECONNECT_DELAY)

    async def run(self) -> None:
        self._running = True
        try:
            while self._running:
                try:
                    if self._ws is None:
                        if not await self._connect():
                            await self._backoff()
                            continue

                    msg = await asyncio.wait_for(self._ws.recv(), timeout=60)
                    self.handle_message(msg)

                except asyncio.TimeoutError:
                    pass
                except (ConnectionClosedError, WebSocketException) as e:
                    logger.warning(f"Price feed disconnected: {e}")
                    self._ws = None
                    await self._backoff()
                except Exception as e:
                    logger.error(f"Price feed error: {e}", exc_info=True)
                    self._ws = None
                    await asyncio.sleep(5)
        finally:
            await self.close()

    async def close(self) -> None:
        self._running = False
        if self._ws is not None:
            try:
                await self._ws.close()
            except WebSocketException:
                pass
            self._ws = None
