"""
Binance Spot Exchange API Wrapper
=================================
REST API for market data, balances and order management. All Binance
protocol details stay in this module; the rest of the engine talks to
ExchangeGateway and sees unified order dicts:

    {id, symbol, side, status: open|closed|canceled, amount, filled,
     average, price, timestamp, last_trade_timestamp}

Docs: https://developers.binance.com/docs/binance-spot-api-docs/rest-api
"""
import asyncio
import hashlib
import hmac
import json
import logging
import threading
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlencode

import requests

logger = logging.getLogger(__name__)

BASE_URL = "https://api.binance.com"
TESTNET_URL = "https://testnet.binance.vision"

# Rate limit: 5s base delay on 429/418, doubled per attempt
RETRY_BASE_DELAY = 5
MAX_RETRIES = 3
RECV_WINDOW = 5000

ORDER_NOT_FOUND_CODES = (-2011, -2013)

_STATUS_MAP = {
    "NEW": "open",
    "PARTIALLY_FILLED": "open",
    "PENDING_NEW": "open",
    "FILLED": "closed",
    "CANCELED": "canceled",
    "PENDING_CANCEL": "canceled",
    "REJECTED": "canceled",
    "EXPIRED": "canceled",
    "EXPIRED_IN_MATCH": "canceled",
}


class ExchangeError(Exception):
    """Transport or exchange-side failure. Treated as transient by callers."""

    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message)
        self.code = code


class OrderNotFoundError(ExchangeError):
    """The exchange does not know the order id (already gone or never existed)."""


@dataclass(frozen=True)
class InstrumentLimits:
    min_amount: float = 0.0
    max_amount: float = 0.0       # 0 = no limit
    min_notional: float = 0.0
    amount_step: float = 0.0      # 0 = no snapping
    price_tick: float = 0.0


def market_id(symbol: str) -> str:
    """'ETH/USDT' -> 'ETHUSDT'."""
    return symbol.replace("/", "").upper()


def base_asset(symbol: str) -> str:
    """'ETH/USDT' -> 'ETH'."""
    return symbol.split("/")[0].upper()


def _fmt(value: float) -> str:
    """Plain decimal string (no exponent) for order params."""
    return format(Decimal(str(value)).normalize(), "f")


class BinanceSpotClient:
    """Blocking Binance Spot REST client (one requests.Session per instance)."""

    def __init__(self, api_key: str = "", secret_key: str = "",
                 testnet: bool = False):
        self.api_key = api_key
        self.secret_key = secret_key
        self.testnet = testnet
        self.base_url = TESTNET_URL if testnet else BASE_URL
        self.session = requests.Session()
        self._limits_cache: Dict[str, InstrumentLimits] = {}

    def _sign(self, query: str) -> str:
        """HMAC-SHA256 hex signature of the query string."""
        return hmac.new(
            self.secret_key.encode("utf-8"),
            query.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

    def _headers(self) -> dict:
        return {"X-MBX-APIKEY": self.api_key} if self.api_key else {}

    def _request(self, method: str, path: str,
                 params: Optional[dict] = None, signed: bool = False) -> Any:
        """Make an API request, retrying on rate limits.

        Reads (GET) are also retried on timeouts and connection errors. Writes
        are not, since the exchange may already have accepted them.
        """
        params = dict(params or {})
        url = self.base_url + path
        idempotent = method == "GET"

        for attempt in range(MAX_RETRIES + 1):
            query_params = dict(params)
            if signed:
                query_params["timestamp"] = int(time.time() * 1000)
                query_params["recvWindow"] = RECV_WINDOW
            query = urlencode(query_params)
            if signed:
                query += "&signature=" + self._sign(query)

            try:
                resp = self.session.request(method, f"{url}?{query}" if query else url,
                                            headers=self._headers(), timeout=15)
            except requests.exceptions.Timeout:
                logger.warning(f"{method} {path} timeout (attempt {attempt + 1})")
                if idempotent and attempt < MAX_RETRIES:
                    time.sleep(RETRY_BASE_DELAY)
                    continue
                raise ExchangeError(f"{method} {path}: timeout")
            except requests.exceptions.RequestException as e:
                logger.warning(f"{method} {path} request exception: {e}")
                if idempotent and attempt < MAX_RETRIES:
                    time.sleep(RETRY_BASE_DELAY)
                    continue
                raise ExchangeError(f"{method} {path}: {e}")

            if resp.status_code in (418, 429):
                delay = RETRY_BASE_DELAY * (2 ** attempt)
                logger.warning(f"{resp.status_code} rate limited, retry in {delay}s "
                               f"(attempt {attempt + 1})")
                time.sleep(delay)
                continue

            try:
                data = resp.json()
            except (json.JSONDecodeError, ValueError) as e:
                logger.error(f"Invalid JSON response (status={resp.status_code}): {e}")
                if idempotent and attempt < MAX_RETRIES:
                    time.sleep(RETRY_BASE_DELAY)
                    continue
                raise ExchangeError(f"{method} {path}: invalid JSON ({resp.status_code})")

            if resp.status_code >= 400:
                code = data.get("code") if isinstance(data, dict) else None
                msg = data.get("msg") if isinstance(data, dict) else str(data)
                if code in ORDER_NOT_FOUND_CODES:
                    raise OrderNotFoundError(f"{path}: {msg}", code=code)
                logger.error(f"Binance API error {resp.status_code}: {data}")
                raise ExchangeError(f"{path}: {msg}", code=code)
            return data

        raise ExchangeError(f"{method} {path}: max retries exceeded")

    # === Market Data ===

    def get_candles(self, symbol: str, interval: str = "15m",
                    limit: int = 24) -> List[dict]:
        """Get candlestick data.

        Returns:
            List of {ts, o, h, l, c, vol} dicts, oldest first.
        """
        rows = self._request("GET", "/api/v3/klines", {
            "symbol": market_id(symbol), "interval": interval, "limit": limit,
        })
        return [{
            "ts": int(r[0]),
            "o": float(r[1]),
            "h": float(r[2]),
            "l": float(r[3]),
            "c": float(r[4]),
            "vol": float(r[5]),
        } for r in rows or []]

    def get_price(self, symbol: str) -> float:
        data = self._request("GET", "/api/v3/ticker/price", {"symbol": market_id(symbol)})
        return float(data["price"])

    def load_instrument_limits(self, symbol: str) -> InstrumentLimits:
        """Lot size / tick size / min notional, cached per client."""
        if symbol in self._limits_cache:
            return self._limits_cache[symbol]
        data = self._request("GET", "/api/v3/exchangeInfo", {"symbol": market_id(symbol)})
        symbols = data.get("symbols") or []
        if not symbols:
            raise ExchangeError(f"no market info for {symbol}")
        filters = {f["filterType"]: f for f in symbols[0].get("filters", [])}

        lot = filters.get("LOT_SIZE", {})
        price = filters.get("PRICE_FILTER", {})
        notional = filters.get("NOTIONAL") or filters.get("MIN_NOTIONAL") or {}
        limits = InstrumentLimits(
            min_amount=float(lot.get("minQty", 0)),
            max_amount=float(lot.get("maxQty", 0)),
            min_notional=float(notional.get("minNotional", 0)),
            amount_step=float(lot.get("stepSize", 0)),
            price_tick=float(price.get("tickSize", 0)),
        )
        self._limits_cache[symbol] = limits
        return limits

    # === Account ===

    def get_balance(self) -> Dict[str, Dict[str, float]]:
        """Balances as {asset: {free, used, total}} (non-zero assets only)."""
        data = self._request("GET", "/api/v3/account", signed=True)
        out = {}
        for b in data.get("balances", []):
            free = float(b.get("free", 0))
            used = float(b.get("locked", 0))
            if free or used:
                out[b["asset"]] = {"free": free, "used": used, "total": free + used}
        return out

    # === Trading ===

    def create_limit_order(self, symbol: str, side: str,
                           amount: float, price: float) -> dict:
        raw = self._request("POST", "/api/v3/order", {
            "symbol": market_id(symbol),
            "side": side.upper(),
            "type": "LIMIT",
            "timeInForce": "GTC",
            "quantity": _fmt(amount),
            "price": _fmt(price),
            "newOrderRespType": "FULL",
        }, signed=True)
        return self.parse_order(raw, symbol)

    def create_market_order(self, symbol: str, side: str, amount: float) -> dict:
        raw = self._request("POST", "/api/v3/order", {
            "symbol": market_id(symbol),
            "side": side.upper(),
            "type": "MARKET",
            "quantity": _fmt(amount),
            "newOrderRespType": "FULL",
        }, signed=True)
        return self.parse_order(raw, symbol)

    def fetch_order(self, symbol: str, order_id: str) -> dict:
        raw = self._request("GET", "/api/v3/order", {
            "symbol": market_id(symbol), "orderId": order_id,
        }, signed=True)
        return self.parse_order(raw, symbol)

    def cancel_order(self, symbol: str, order_id: str) -> dict:
        raw = self._request("DELETE", "/api/v3/order", {
            "symbol": market_id(symbol), "orderId": order_id,
        }, signed=True)
        return self.parse_order(raw, symbol)

    @staticmethod
    def parse_order(raw: dict, symbol: str) -> dict:
        """Binance order payload -> unified order dict."""
        amount = float(raw.get("origQty", 0))
        filled = float(raw.get("executedQty", 0))
        quote = float(raw.get("cummulativeQuoteQty", 0) or 0)
        average = None
        if filled > 0 and quote > 0:
            average = quote / filled
        elif raw.get("fills"):
            qty = sum(float(f["qty"]) for f in raw["fills"])
            if qty > 0:
                average = sum(float(f["price"]) * float(f["qty"]) for f in raw["fills"]) / qty
        ts = raw.get("time") or raw.get("transactTime") or raw.get("workingTime")
        updated = raw.get("updateTime") or raw.get("transactTime")
        return {
            "id": str(raw.get("orderId", "")),
            "symbol": symbol,
            "side": str(raw.get("side", "")).lower(),
            "status": _STATUS_MAP.get(raw.get("status", ""), "open"),
            "amount": amount,
            "filled": filled,
            "average": average,
            "price": float(raw.get("price", 0) or 0),
            "timestamp": int(ts) if ts else None,
            "last_trade_timestamp": int(updated) if (updated and filled > 0) else None,
        }


class ExchangeGateway:
    """Async capability surface over BinanceSpotClient.

    Blocking REST runs in the default executor; each executor thread gets its
    own client (and requests.Session) via threading.local. When a PriceFeed is
    attached and fresh, prices come from it instead of REST.
    """

    def __init__(self, client_factory: Callable[[], BinanceSpotClient],
                 price_feed=None, price_max_age: float = 10.0):
        self._client_factory = client_factory
        self._thread_local = threading.local()
        self.price_feed = price_feed
        self.price_max_age = price_max_age

    def _get_thread_client(self) -> BinanceSpotClient:
        if not hasattr(self._thread_local, 'client'):
            self._thread_local.client = self._client_factory()
        return self._thread_local.client

    async def _rest(self, method_name: str, *args, **kwargs):
        """Call a BinanceSpotClient method by name in the executor."""
        def _run():
            tc = self._get_thread_client()
            return getattr(tc, method_name)(*args, **kwargs)
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, _run)

    async def fetch_candles(self, symbol: str, timeframe: str, limit: int) -> List[dict]:
        return await self._rest("get_candles", symbol, timeframe, limit)

    async def fetch_price(self, symbol: str) -> float:
        if self.price_feed is not None:
            cached = self.price_feed.get(symbol, self.price_max_age)
            if cached is not None:
                return cached
        return await self._rest("get_price", symbol)

    async def fetch_balance(self) -> Dict[str, Dict[str, float]]:
        return await self._rest("get_balance")

    async def create_limit_buy(self, symbol: str, amount: float, price: float) -> dict:
        return await self._rest("create_limit_order", symbol, "buy", amount, price)

    async def create_limit_sell(self, symbol: str, amount: float, price: float) -> dict:
        return await self._rest("create_limit_order", symbol, "sell", amount, price)

    async def create_market_buy(self, symbol: str, amount: float) -> dict:
        return await self._rest("create_market_order", symbol, "buy", amount)

    async def create_market_sell(self, symbol: str, amount: float) -> dict:
        return await self._rest("create_market_order", symbol, "sell", amount)

    async def fetch_order(self, symbol: str, order_id: str) -> dict:
        return await self._rest("fetch_order", symbol, order_id)

    async def cancel_order(self, symbol: str, order_id: str) -> dict:
        return await self._rest("cancel_order", symbol, order_id)

    async def load_instrument_limits(self, symbol: str) -> InstrumentLimits:
        return await self._rest("load_instrument_limits", symbol)
