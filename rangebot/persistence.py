"""
Engine persistence — two JSON files under the data directory:

  trading-config.json  {config, stats, last_saved}
  trading-data.json    {trading_status, trade_records, circuit_breaker, last_saved}

Writes are atomic (core.state.save_state), retried with a linear backoff,
and verified by reading the files back before reporting success.
"""
import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List

from core.state import load_state, read_json, save_state
from core.types import CircuitBreakerState, SystemStats, TradeRecord, TradingStatus
from rangebot.config import ConfigError, SystemConfig, config_from_dict, config_to_dict
from rangebot.strategy import current_date, now_ms

logger = logging.getLogger(__name__)

CONFIG_FILE = "trading-config.json"
DATA_FILE = "trading-data.json"

SAVE_RETRIES = 3
RETRY_DELAY = 1.0


@dataclass
class EngineData:
    config: SystemConfig
    status: TradingStatus
    records: List[TradeRecord] = field(default_factory=list)
    stats: SystemStats = field(default_factory=SystemStats)
    breaker: CircuitBreakerState = field(default_factory=CircuitBreakerState)


class DataStore:
    def __init__(self, data_dir: Path, sleep: Callable[[float], None] = time.sleep):
        self.data_dir = Path(data_dir)
        self.config_path = self.data_dir / CONFIG_FILE
        self.data_path = self.data_dir / DATA_FILE
        self._sleep = sleep

    def load(self, default_config: SystemConfig) -> EngineData:
        """Load persisted state; anything missing or corrupt falls back to defaults."""
        cfg_blob = load_state(self.config_path)
        data_blob = load_state(self.data_path)

        config = default_config
        if cfg_blob.get("config"):
            try:
                config = config_from_dict(cfg_blob["config"])
            except ConfigError as e:
                logger.error(f"Persisted config invalid, using defaults: {e}")

        stats = SystemStats(current_date=current_date())
        if cfg_blob.get("stats"):
            try:
                stats = SystemStats.from_dict(cfg_blob["stats"])
            except (TypeError, ValueError) as e:
                logger.error(f"Persisted stats invalid, using defaults: {e}")

        status = TradingStatus.idle(now_ms())
        if data_blob.get("trading_status"):
            try:
                status = TradingStatus.from_dict(data_blob["trading_status"])
            except (TypeError, ValueError, KeyError) as e:
                logger.error(f"Persisted trading status invalid, starting IDLE: {e}")

        records: List[TradeRecord] = []
        for raw in data_blob.get("trade_records") or []:
            try:
                records.append(TradeRecord.from_dict(raw))
            except (TypeError, ValueError, KeyError) as e:
                logger.error(f"Skipping unreadable trade record {raw!r}: {e}")

        breaker = CircuitBreakerState()
        if data_blob.get("circuit_breaker"):
            try:
                breaker = CircuitBreakerState.from_dict(data_blob["circuit_breaker"])
            except (TypeError, ValueError) as e:
                logger.error(f"Persisted breaker state invalid, resetting: {e}")

        return EngineData(config=config, status=status, records=records,
                          stats=stats, breaker=breaker)

    @staticmethod
    def _payloads(data: EngineData) -> Dict[str, Dict[str, Any]]:
        saved = now_ms()
        return {
            CONFIG_FILE: {
                "config": config_to_dict(data.config),
                "stats": data.stats.to_dict(),
                "last_saved": saved,
            },
            DATA_FILE: {
                "trading_status": data.status.to_dict(),
                "trade_records": [r.to_dict() for r in data.records],
                "circuit_breaker": data.breaker.to_dict(),
                "last_saved": saved,
            },
        }

    def save(self, data: EngineData, retries: int = SAVE_RETRIES) -> bool:
        """Persist and verify. Returns False after `retries` failed attempts."""
        payloads = {self.data_dir / name: p for name, p in self._payloads(data).items()}
        for attempt in range(retries):
            try:
                for path, payload in payloads.items():
                    save_state(path, payload)
                for path, payload in payloads.items():
                    if read_json(path) != json.loads(json.dumps(payload)):
                        raise IOError(f"verification mismatch for {path.name}")
                return True
            except (OSError, TypeError, ValueError) as e:
                logger.error(f"Save attempt {attempt + 1}/{retries} failed: {e}")
                if attempt < retries - 1:
                    self._sleep(RETRY_DELAY * (attempt + 1))
        return False
