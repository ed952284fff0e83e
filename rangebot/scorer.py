"""
Market Scorer — range detection and instrument selection.

Pure part (analyze_candles / select_best / combine_timeframes /
select_best_multi) works on candle lists; MarketScanner fetches candles
through the gateway and fans out across the instrument universe.

Range math:
    amplitude = (high - low) / low * 100
    trend     = (last_close - first_close) / first_close * 100
    buy       = low  + ratio * (high - low)
    sell      = high - ratio * (high - low)
An instrument whose |trend| exceeds the trend threshold is filtered out:
range trading assumes mean reversion.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from core.indicators import amplitude_pct, round_to, trend_pct
from core.types import AmplitudeAnalysis, MultiTimeframeAnalysis

logger = logging.getLogger(__name__)


class DataUnavailableError(Exception):
    """Candle fetch returned no data; never trade on partial data."""


def analyze_candles(symbol: str, candles: Sequence[dict],
                    amplitude_threshold: float, trend_threshold: float,
                    price_range_ratio: float = 0.1) -> AmplitudeAnalysis:
    """Score one instrument from candles ({h, l, c} dicts, oldest first)."""
    if not candles:
        raise DataUnavailableError(f"no candles for {symbol}")

    high = max(c["h"] for c in candles)
    low = min(c["l"] for c in candles)
    amplitude = amplitude_pct(high, low)
    trend = trend_pct(candles[0]["c"], candles[-1]["c"])
    is_trend_filtered = abs(trend) > trend_threshold
    span = high - low

    return AmplitudeAnalysis(
        symbol=symbol,
        high=high,
        low=low,
        amplitude=amplitude,
        trend=trend,
        is_trend_filtered=is_trend_filtered,
        buy_price=round_to(low + price_range_ratio * span, 8),
        sell_price=round_to(high - price_range_ratio * span, 8),
        is_valid=(not is_trend_filtered) and amplitude >= amplitude_threshold,
    )


def select_best(analyses: Sequence[AmplitudeAnalysis]) -> Optional[AmplitudeAnalysis]:
    """Largest amplitude among valid analyses; first found wins ties."""
    best = None
    for a in analyses:
        if not a.is_valid:
            continue
        if best is None or a.amplitude > best.amplitude:
            best = a
    return best


def combine_timeframes(symbol: str, horizons: Dict[str, AmplitudeAnalysis],
                       mtf_config) -> MultiTimeframeAnalysis:
    """Weighted pass/fail score over short/medium/long horizons.

    Each passing horizon contributes 100 * weight. Valid if every horizon
    passes (strict mode) or the score meets the threshold (lenient mode).
    """
    timeframes = list(mtf_config.timeframes)
    score = 0.0
    for tf in timeframes:
        if horizons[tf].is_valid:
            score += 100 * mtf_config.weights[tf]
    score = round_to(score, 2)

    if mtf_config.strict_mode:
        is_valid = all(horizons[tf].is_valid for tf in timeframes)
    else:
        is_valid = score >= mtf_config.score_threshold

    return MultiTimeframeAnalysis(
        symbol=symbol,
        horizons=dict(horizons),
        score=score,
        is_valid=is_valid,
        primary=horizons[timeframes[0]],
    )


def select_best_multi(analyses: Sequence[MultiTimeframeAnalysis]) -> Optional[MultiTimeframeAnalysis]:
    """Highest score among valid analyses; ties go to the larger short-horizon amplitude."""
    best = None
    for a in analyses:
        if not a.is_valid:
            continue
        if (best is None or a.score > best.score
                or (a.score == best.score and a.primary.amplitude > best.primary.amplitude)):
            best = a
    return best


@dataclass
class ScanResult:
    best: Optional[AmplitudeAnalysis] = None       # what to trade (primary horizon in MTF mode)
    best_multi: Optional[MultiTimeframeAnalysis] = None
    analyses: List[AmplitudeAnalysis] = field(default_factory=list)
    multi: List[MultiTimeframeAnalysis] = field(default_factory=list)
    skipped: Dict[str, str] = field(default_factory=dict)


class MarketScanner:
    def __init__(self, gateway):
        self.gateway = gateway

    async def analyze(self, symbol: str, cfg, timeframe: Optional[str] = None,
                      lookback: Optional[int] = None) -> AmplitudeAnalysis:
        candles = await self.gateway.fetch_candles(
            symbol, timeframe or cfg.candle_timeframe, lookback or cfg.lookback_candles)
        return analyze_candles(symbol, candles, cfg.amplitude_threshold,
                               cfg.trend_threshold, cfg.trading.price_range_ratio)

    async def analyze_multi(self, symbol: str, cfg) -> MultiTimeframeAnalysis:
        mtf = cfg.multi_timeframe
        results = await asyncio.gather(*[
            self.analyze(symbol, cfg, tf, mtf.lookback_periods[tf]) for tf in mtf.timeframes
        ])
        return combine_timeframes(symbol, dict(zip(mtf.timeframes, results)), mtf)

    async def refresh(self, symbol: str, cfg) -> AmplitudeAnalysis:
        """Current range for one instrument, on the same window used for entries."""
        if cfg.multi_timeframe.enabled:
            tf = cfg.multi_timeframe.timeframes[0]
            return await self.analyze(symbol, cfg, tf, cfg.multi_timeframe.lookback_periods[tf])
        return await self.analyze(symbol, cfg)

    async def find_best(self, cfg, symbols: Optional[Sequence[str]] = None) -> ScanResult:
        """Score every instrument concurrently and pick the best candidate.

        Instruments whose scoring fails (no data, transport error) are skipped
        for this pass; the rest are still ranked.
        """
        symbols = list(symbols or cfg.symbols)
        use_multi = cfg.multi_timeframe.enabled
        scorer = self.analyze_multi if use_multi else self.analyze
        outcomes = await asyncio.gather(*[scorer(s, cfg) for s in symbols],
                                        return_exceptions=True)

        result = ScanResult()
        for symbol, outcome in zip(symbols, outcomes):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                logger.warning(f"⚠️ {symbol} skipped this pass: {outcome}")
                result.skipped[symbol] = str(outcome)
            elif use_multi:
                result.multi.append(outcome)
                result.analyses.append(outcome.primary)
            else:
                result.analyses.append(outcome)

        if use_multi:
            result.best_multi = select_best_multi(result.multi)
            result.best = result.best_multi.primary if result.best_multi else None
            for m in result.multi:
                logger.info(f"{m.symbol}: score={m.score} passed={m.passed} valid={m.is_valid}")
        else:
            result.best = select_best(result.analyses)
            for a in result.analyses:
                logger.info(f"{a.symbol}: amplitude={a.amplitude}% trend={a.trend}% "
                            f"valid={a.is_valid}")
        return result
