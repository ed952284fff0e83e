"""
Configuration for the range trading engine.

Defaults live in the dataclasses below and are overridden by config.toml,
found in the first existing location of:
  1. $RANGEBOT_CONFIG_DIR
  2. ./config/
  3. <repo>/config/

The live config is also persisted next to the trading stats (see
rangebot.persistence) and hot-reloaded every tick; runtime changes go through
merge_config(), which either applies the whole update or raises.

Durations are in seconds.
"""
import dataclasses
import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple


class ConfigError(ValueError):
    """Invalid configuration value or unknown key."""


# --- Config search ---
def _find_config_dir() -> Path:
    """Find config directory by priority."""
    env_dir = os.environ.get("RANGEBOT_CONFIG_DIR")
    if env_dir:
        p = Path(env_dir)
        if p.exists():
            return p

    local = Path.cwd() / "config"
    if local.exists() and (local / "config.toml").exists():
        return local

    return Path(__file__).parent.parent / "config"


# --- Data classes ---
@dataclass(frozen=True)
class OrderTimeoutConfig:
    default_seconds: int = 2 * 3600
    buy_seconds: int = 3600
    sell_seconds: int = 2 * 3600
    by_symbol: Dict[str, int] = field(default_factory=dict)

    def timeout_for(self, side: str, symbol: Optional[str] = None) -> int:
        """Per-symbol override wins, then the side-specific value, then default."""
        if symbol and symbol in self.by_symbol:
            return int(self.by_symbol[symbol])
        if side == "buy" and self.buy_seconds:
            return self.buy_seconds
        if side == "sell" and self.sell_seconds:
            return self.sell_seconds
        return self.default_seconds


@dataclass(frozen=True)
class CircuitBreakerConfig:
    enabled: bool = True
    consecutive_failures: int = 5
    daily_loss_limit: float = 20.0      # USDT
    total_loss_limit: float = 100.0     # USDT
    cooldown_seconds: int = 12 * 3600
    price_volatility_threshold: float = 10.0  # %


@dataclass(frozen=True)
class DailyResetConfig:
    processing_time: str = "23:30"  # HH:MM local, new entries blocked from here
    warning_time: str = "23:00"
    force_liquidation_discount: float = 0.999


@dataclass(frozen=True)
class StopLossConfig:
    enabled: bool = True
    threshold: float = -2.0          # %, negative
    execution_discount: float = 0.998
    wait_seconds: float = 5.0


@dataclass(frozen=True)
class TradingParametersConfig:
    price_deviation_threshold: float = 2.0   # %
    partial_fill_threshold: float = 0.98     # sell fill ratio treated as complete
    min_buy_fill_ratio: float = 0.5          # buy fill ratio kept on timeout
    balance_safety_buffer: float = 0.05
    market_order_discount: float = 0.999
    price_range_ratio: float = 0.1
    settle_seconds: float = 2.0              # wait after a forced market sell


@dataclass(frozen=True)
class MultiTimeframeConfig:
    enabled: bool = True
    strict_mode: bool = False
    timeframes: Tuple[str, ...] = ("15m", "1h", "4h")  # short, medium, long
    weights: Dict[str, float] = field(
        default_factory=lambda: {"15m": 0.4, "1h": 0.35, "4h": 0.25})
    score_threshold: float = 60.0
    lookback_periods: Dict[str, int] = field(
        default_factory=lambda: {"15m": 48, "1h": 24, "4h": 12})


@dataclass(frozen=True)
class AIConfig:
    enabled: bool = True
    min_confidence: float = 60.0
    max_risk_level: str = "MEDIUM"
    use_for_buy_decisions: bool = True
    use_for_sell_decisions: bool = True
    cache_seconds: int = 600
    base_url: str = "https://api.deepseek.com"
    model: str = "deepseek-chat"
    timeout_seconds: float = 30.0


@dataclass(frozen=True)
class EngineConfig:
    loop_interval_seconds: float = 30.0
    data_dir: str = "data"


@dataclass(frozen=True)
class PriceFeedConfig:
    enabled: bool = False
    max_age_seconds: float = 10.0


@dataclass(frozen=True)
class NotificationConfig:
    webhook_url: str = ""
    mention: str = ""


@dataclass(frozen=True)
class SystemConfig:
    is_testnet: bool = True
    is_auto_trading: bool = False
    symbols: Tuple[str, ...] = ("ETH/USDT", "BTC/USDT", "BNB/USDT", "SOL/USDT", "XRP/USDT")
    quote_asset: str = "USDT"
    investment_amount: float = 100.0
    amplitude_threshold: float = 2.0   # %
    trend_threshold: float = 10.0      # %
    candle_timeframe: str = "15m"
    lookback_candles: int = 24
    daily_trade_limit: int = 3         # 0 = unlimited
    trade_interval_seconds: int = 3600  # 0 = no cooldown
    order_timeout: OrderTimeoutConfig = field(default_factory=OrderTimeoutConfig)
    circuit_breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    daily_reset: DailyResetConfig = field(default_factory=DailyResetConfig)
    stop_loss: StopLossConfig = field(default_factory=StopLossConfig)
    trading: TradingParametersConfig = field(default_factory=TradingParametersConfig)
    multi_timeframe: MultiTimeframeConfig = field(default_factory=MultiTimeframeConfig)
    ai: AIConfig = field(default_factory=AIConfig)
    engine: EngineConfig = field(default_factory=EngineConfig)
    price_feed: PriceFeedConfig = field(default_factory=PriceFeedConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)


@dataclass(frozen=True)
class Secrets:
    binance_api_key: str = ""
    binance_secret_key: str = ""
    deepseek_api_key: str = ""


# --- dict <-> dataclass ---
def config_to_dict(cfg: SystemConfig) -> Dict[str, Any]:
    """Plain JSON-able dict (tuples become lists)."""
    def _plain(v):
        if isinstance(v, (list, tuple)):
            return [_plain(x) for x in v]
        if isinstance(v, dict):
            return {k: _plain(x) for k, x in v.items()}
        return v
    return _plain(dataclasses.asdict(cfg))


def _coerce(name: str, default: Any, value: Any) -> Any:
    if isinstance(default, bool):
        if not isinstance(value, bool):
            raise ConfigError(f"{name}: expected bool, got {value!r}")
        return value
    if isinstance(default, (int, float)):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ConfigError(f"{name}: expected number, got {value!r}")
        return type(default)(value) if isinstance(default, float) else value
    if isinstance(default, str):
        if not isinstance(value, str):
            raise ConfigError(f"{name}: expected string, got {value!r}")
        return value
    if isinstance(default, tuple):
        if not isinstance(value, (list, tuple)):
            raise ConfigError(f"{name}: expected list, got {value!r}")
        return tuple(value)
    if isinstance(default, dict):
        if not isinstance(value, dict):
            raise ConfigError(f"{name}: expected table, got {value!r}")
        return dict(value)
    return value


def _build(cls, data: Dict[str, Any], prefix: str, strict: bool):
    base = cls()
    names = {f.name: f for f in dataclasses.fields(cls)}
    unknown = set(data) - set(names)
    if unknown and strict:
        raise ConfigError(f"unknown config key(s): {', '.join(prefix + k for k in sorted(unknown))}")

    kwargs = {}
    for name in names:
        if name not in data:
            continue
        default = getattr(base, name)
        value = data[name]
        if dataclasses.is_dataclass(default):
            if not isinstance(value, dict):
                raise ConfigError(f"{prefix}{name}: expected table, got {value!r}")
            kwargs[name] = _build(type(default), value, f"{prefix}{name}.", strict)
        else:
            kwargs[name] = _coerce(prefix + name, default, value)
    return cls(**kwargs)


def validate_config(cfg: SystemConfig) -> SystemConfig:
    """Cross-field checks. Returns cfg unchanged or raises ConfigError."""
    if not cfg.symbols:
        raise ConfigError("symbols must not be empty")
    if cfg.investment_amount <= 0:
        raise ConfigError("investment_amount must be positive")
    if not 0 <= cfg.trading.price_range_ratio < 0.5:
        raise ConfigError("trading.price_range_ratio must be in [0, 0.5)")
    if not 0 < cfg.trading.partial_fill_threshold <= 1:
        raise ConfigError("trading.partial_fill_threshold must be in (0, 1]")
    if cfg.stop_loss.threshold >= 0:
        raise ConfigError("stop_loss.threshold must be negative")

    mtf = cfg.multi_timeframe
    if len(mtf.timeframes) != 3:
        raise ConfigError("multi_timeframe.timeframes must list short, medium, long")
    missing = [tf for tf in mtf.timeframes
               if tf not in mtf.weights or tf not in mtf.lookback_periods]
    if missing:
        raise ConfigError(f"multi_timeframe: no weight/lookback for {missing}")
    total = sum(mtf.weights[tf] for tf in mtf.timeframes)
    if abs(total - 1.0) > 1e-6:
        raise ConfigError(f"multi_timeframe.weights must sum to 1.0 (got {total})")

    for label, hhmm in (("processing_time", cfg.daily_reset.processing_time),
                        ("warning_time", cfg.daily_reset.warning_time)):
        parse_hhmm(hhmm, f"daily_reset.{label}")
    if cfg.ai.max_risk_level not in ("LOW", "MEDIUM", "HIGH"):
        raise ConfigError("ai.max_risk_level must be LOW, MEDIUM or HIGH")
    return cfg


def parse_hhmm(value: str, name: str = "time") -> Tuple[int, int]:
    try:
        hh, mm = value.split(":")
        h, m = int(hh), int(mm)
    except (ValueError, AttributeError):
        raise ConfigError(f"{name}: expected HH:MM, got {value!r}")
    if not (0 <= h < 24 and 0 <= m < 60):
        raise ConfigError(f"{name}: out of range {value!r}")
    return h, m


def config_from_dict(data: Dict[str, Any], strict: bool = False) -> SystemConfig:
    """Build a config from a (possibly partial) dict.

    strict=False ignores unknown keys (old persisted files); strict=True is
    used for operator updates.
    """
    return validate_config(_build(SystemConfig, data or {}, "", strict))


def _deep_merge(base: Dict[str, Any], updates: Dict[str, Any], prefix: str = "") -> Dict[str, Any]:
    out = dict(base)
    for key, value in updates.items():
        if key not in base:
            raise ConfigError(f"unknown config key: {prefix}{key}")
        # by_symbol / weights / lookback_periods are replaced wholesale
        if (isinstance(value, dict) and isinstance(base[key], dict)
                and key not in ("by_symbol", "weights", "lookback_periods")):
            out[key] = _deep_merge(base[key], value, f"{prefix}{key}.")
        else:
            out[key] = value
    return out


def merge_config(cfg: SystemConfig, updates: Dict[str, Any]) -> SystemConfig:
    """Return a new config with `updates` deep-merged over `cfg`.

    Nothing is applied unless the merged result validates.
    """
    merged = _deep_merge(config_to_dict(cfg), updates or {})
    return config_from_dict(merged, strict=True)


# --- Loader ---
def _load_toml(path: Path) -> dict:
    """Load TOML file, return empty dict if missing."""
    if not path.exists():
        return {}
    with open(path, "rb") as f:
        return tomllib.load(f)


def load_config(config_dir: Optional[Path] = None) -> SystemConfig:
    """Defaults overridden by config.toml."""
    config_dir = config_dir or _find_config_dir()
    raw = _load_toml(config_dir / "config.toml")
    return config_from_dict(raw, strict=True)


def load_secrets(config_dir: Optional[Path] = None) -> Secrets:
    """API keys from the environment, falling back to a .rangebot_secrets file."""
    config_dir = config_dir or _find_config_dir()
    values: Dict[str, str] = {}

    secrets_path = config_dir / ".rangebot_secrets"
    if secrets_path.exists():
        for line in secrets_path.read_text().strip().split("\n"):
            line = line.strip()
            if "=" in line and not line.startswith("#"):
                key, val = line.split("=", 1)
                key = key.strip()
                # Handle shell-style "export KEY=val"
                if key.startswith("export "):
                    key = key[7:].strip()
                values[key] = val.strip().strip('"').strip("'")

    def _get(name: str) -> str:
        return os.environ.get(name) or values.get(name, "")

    return Secrets(
        binance_api_key=_get("BINANCE_API_KEY"),
        binance_secret_key=_get("BINANCE_SECRET_KEY"),
        deepseek_api_key=_get("DEEPSEEK_API_KEY"),
    )


_CONFIG: Optional[SystemConfig] = None


def get_config() -> SystemConfig:
    """Load and cache config.toml defaults."""
    global _CONFIG
    if _CONFIG is None:
        _CONFIG = load_config()
    return _CONFIG


def reload_config() -> SystemConfig:
    """Force reload from disk."""
    global _CONFIG
    _CONFIG = None
    return get_config()
