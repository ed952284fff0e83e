"""
AI advisory — asks an OpenAI-compatible chat endpoint (DeepSeek by default)
for a BUY/SELL/HOLD/AVOID call on an instrument.

The advisory is only ever an extra gate: advisory_allows_buy/sell pass
through whenever the advisor is missing, disabled, or fails.
"""
import asyncio
import json
import logging
import re
import time
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

import requests

from core.indicators import pct_change, rsi, sma
from core.types import Advice, Recommendation, RiskLevel
from rangebot.strategy import now_ms

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = ("You are a professional crypto market analyst. Give accurate, "
                 "objective spot trading advice and answer with JSON only.")

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


class AdvisoryError(Exception):
    """Advisory request or response parsing failed."""


def _ma_trend(closes: List[float]) -> Tuple[float, float, str]:
    ma7 = sma(closes, 7) or closes[-1]
    ma25 = sma(closes, 25) or closes[-1]
    if ma7 > ma25 * 1.001:
        trend = "UP"
    elif ma7 < ma25 * 0.999:
        trend = "DOWN"
    else:
        trend = "FLAT"
    return ma7, ma25, trend


def build_market_context(symbol: str, candles_15m: List[dict],
                         candles_1h: List[dict]) -> Dict:
    """Summarize recent candles into the numbers the prompt quotes."""
    if not candles_15m or not candles_1h:
        raise AdvisoryError(f"no candles for {symbol}")
    c15 = [c["c"] for c in candles_15m]
    c1h = [c["c"] for c in candles_1h]
    price = c15[-1]

    def _change(hours: int) -> float:
        if len(c1h) <= hours:
            return pct_change(price, c1h[0])
        return pct_change(price, c1h[-1 - hours])

    ma7_15, ma25_15, trend_15 = _ma_trend(c15)
    ma7_1h, ma25_1h, trend_1h = _ma_trend(c1h)
    vols = [c["vol"] for c in candles_15m]
    avg_vol = sum(vols) / len(vols)
    return {
        "symbol": symbol,
        "price": price,
        "change_1h": _change(1),
        "change_4h": _change(4),
        "change_24h": _change(24),
        "ma_15m": (ma7_15, ma25_15, trend_15),
        "ma_1h": (ma7_1h, ma25_1h, trend_1h),
        "rsi_15m": rsi(c15)[-1],
        "rsi_1h": rsi(c1h)[-1],
        "support": min(c["l"] for c in candles_1h),
        "resistance": max(c["h"] for c in candles_1h),
        "volume_change": pct_change(vols[-1], avg_vol),
    }


def build_prompt(ctx: Dict) -> str:
    ma15, ma1h = ctx["ma_15m"], ctx["ma_1h"]
    now = datetime.now(timezone.utc).isoformat(timespec="seconds")
    return (
        f"Instrument: {ctx['symbol']}\n"
        f"Time (UTC): {now}\n"
        f"Price: {ctx['price']:.6g}\n"
        f"Change 1h/4h/24h: {ctx['change_1h']:.2f}% / {ctx['change_4h']:.2f}% / "
        f"{ctx['change_24h']:.2f}%\n"
        f"MA7/MA25 15m: {ma15[0]:.6g} / {ma15[1]:.6g} ({ma15[2]})\n"
        f"MA7/MA25 1h: {ma1h[0]:.6g} / {ma1h[1]:.6g} ({ma1h[2]})\n"
        f"RSI14 15m/1h: {ctx['rsi_15m']:.1f} / {ctx['rsi_1h']:.1f}\n"
        f"Support/resistance (1h window): {ctx['support']:.6g} / {ctx['resistance']:.6g}\n"
        f"Last 15m volume vs average: {ctx['volume_change']:+.1f}%\n\n"
        "We trade a spot range strategy: buy near the low of the range, sell near the high.\n"
        "Reply with one JSON object:\n"
        '{"recommendation": "BUY|SELL|HOLD|AVOID", "confidence": 0-100, '
        '"riskLevel": "LOW|MEDIUM|HIGH", "reasoning": "<short>"}'
    )


def parse_advice(symbol: str, text: str) -> Advice:
    match = _JSON_OBJECT.search(text or "")
    if not match:
        raise AdvisoryError(f"no JSON object in advisory reply: {text[:200]!r}")
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        raise AdvisoryError(f"bad JSON in advisory reply: {e}")

    try:
        recommendation = Recommendation(str(data.get("recommendation", "")).upper())
    except ValueError:
        recommendation = Recommendation.HOLD
    try:
        risk = RiskLevel(str(data.get("riskLevel", data.get("risk_level", ""))).upper())
    except ValueError:
        risk = RiskLevel.MEDIUM
    try:
        confidence = float(data.get("confidence", 50))
    except (TypeError, ValueError):
        confidence = 50.0

    return Advice(
        symbol=symbol,
        recommendation=recommendation,
        confidence=min(100.0, max(0.0, confidence)),
        risk_level=risk,
        reasoning=str(data.get("reasoning", "")),
        timestamp=now_ms(),
    )


class AIAdvisor:
    def __init__(self, api_key: str, ai_config, gateway):
        self.api_key = api_key
        self.cfg = ai_config
        self.gateway = gateway
        self.session = requests.Session()
        self._cache: Dict[str, Tuple[Advice, float]] = {}

    def update_config(self, ai_config) -> None:
        self.cfg = ai_config

    def _chat(self, prompt: str) -> str:
        try:
            resp = self.session.post(
                f"{self.cfg.base_url.rstrip('/')}/chat/completions",
                headers={"Authorization": f"Bearer {self.api_key}",
                         "Content-Type": "application/json"},
                json={
                    "model": self.cfg.model,
                    "messages": [
                        {"role": "system", "content": SYSTEM_PROMPT},
                        {"role": "user", "content": prompt},
                    ],
                    "temperature": 0.3,
                    "max_tokens": 500,
                },
                timeout=self.cfg.timeout_seconds,
            )
        except requests.exceptions.RequestException as e:
            raise AdvisoryError(f"advisory request failed: {e}")
        if resp.status_code != 200:
            raise AdvisoryError(f"advisory HTTP {resp.status_code}: {resp.text[:200]}")
        try:
            return resp.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise AdvisoryError(f"unexpected advisory payload: {e}")

    async def evaluate(self, symbol: str) -> Advice:
        cached = self._cache.get(symbol)
        if cached and time.monotonic() < cached[1]:
            return cached[0]

        try:
            candles_15m, candles_1h = await asyncio.gather(
                self.gateway.fetch_candles(symbol, "15m", 48),
                self.gateway.fetch_candles(symbol, "1h", 48),
            )
        except Exception as e:
            raise AdvisoryError(f"market data for {symbol} unavailable: {e}")
        ctx = build_market_context(symbol, candles_15m, candles_1h)

        loop = asyncio.get_running_loop()
        reply = await loop.run_in_executor(None, self._chat, build_prompt(ctx))
        advice = parse_advice(symbol, reply)
        self._cache[symbol] = (advice, time.monotonic() + self.cfg.cache_seconds)
        logger.info(f"🤖 {symbol}: {advice.recommendation.value} "
                    f"conf={advice.confidence:.0f} risk={advice.risk_level.value}")
        return advice


async def advisory_allows_buy(advisor: Optional[AIAdvisor], symbol: str, ai_config) -> bool:
    """Reject on SELL/AVOID, low confidence, or risk above the configured max."""
    if advisor is None or not ai_config.enabled or not ai_config.use_for_buy_decisions:
        return True
    try:
        advice = await advisor.evaluate(symbol)
    except Exception as e:
        logger.warning(f"⚠️ Advisory unavailable for {symbol}, not blocking buy: {e}")
        return True

    if advice.recommendation in (Recommendation.SELL, Recommendation.AVOID):
        logger.info(f"🤖 Buy {symbol} rejected: advisory says {advice.recommendation.value}")
        return False
    if advice.confidence < ai_config.min_confidence:
        logger.info(f"🤖 Buy {symbol} rejected: confidence {advice.confidence:.0f} "
                    f"< {ai_config.min_confidence}")
        return False
    if advice.risk_level.rank > RiskLevel(ai_config.max_risk_level).rank:
        logger.info(f"🤖 Buy {symbol} rejected: risk {advice.risk_level.value} "
                    f"above {ai_config.max_risk_level}")
        return False
    return True


async def advisory_allows_sell(advisor: Optional[AIAdvisor], symbol: str, ai_config) -> bool:
    """Defer placing a sell only on a confident BUY call."""
    if advisor is None or not ai_config.enabled or not ai_config.use_for_sell_decisions:
        return True
    try:
        advice = await advisor.evaluate(symbol)
    except Exception as e:
        logger.warning(f"⚠️ Advisory unavailable for {symbol}, not blocking sell: {e}")
        return True

    if (advice.recommendation == Recommendation.BUY
            and advice.confidence >= ai_config.min_confidence):
        logger.info(f"🤖 Sell {symbol} deferred: advisory says BUY "
                    f"({advice.confidence:.0f})")
        return False
    return True
