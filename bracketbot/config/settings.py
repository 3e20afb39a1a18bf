"""
Configuration settings for the bracket trading bot
"""
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class BybitSettings(BaseSettings):
    """Bybit exchange configuration"""
    model_config = {"env_file": ".env", "env_prefix": "BYBIT_", "extra": "ignore"}

    api_key: str = Field("", description="Bybit API key")
    api_secret: str = Field("", description="Bybit API secret")
    testnet: bool = Field(True, description="Use testnet for testing")
    base_url_testnet: str = "https://api-testnet.bybit.com"
    base_url_mainnet: str = "https://api.bybit.com"
    recv_window: int = 20000

    @property
    def base_url(self) -> str:
        return self.base_url_testnet if self.testnet else self.base_url_mainnet


class MarketDataSettings(BaseSettings):
    """Symbol, timeframes and kline cache sizing"""
    model_config = {"env_file": ".env", "extra": "ignore"}

    symbol: str = "BTCUSDT"
    fast_interval: str = "1m"
    slow_interval: str = "5m"
    fast_cache_limit: int = Field(300, ge=1)
    slow_cache_limit: int = Field(150, ge=1)
    min_fast_candles: int = Field(250, ge=1)
    min_slow_candles: int = Field(100, ge=1)
    timer_tick_seconds: float = Field(15.0, gt=0)

    @field_validator("fast_interval", "slow_interval")
    @classmethod
    def validate_interval(cls, v: str) -> str:
        if not v or v[-1] not in {"m", "h"} or not v[:-1].isdigit():
            raise ValueError(f"Unsupported interval '{v}' (expected e.g. 1m, 5m, 1h)")
        return v


class RiskSettings(BaseSettings):
    """Daily limits and per-trade risk"""
    model_config = {"env_file": ".env", "extra": "ignore"}

    max_risk_per_trade_percent: float = Field(1.0, gt=0, le=100)
    daily_profit_target_percent: float = Field(5.0, gt=0)
    daily_loss_limit_percent: float = Field(3.0, gt=0)
    risk_reward_ratio: float = Field(2.0, gt=0)
    max_trades_per_day: int = Field(50, ge=0)


class ExecutionSettings(BaseSettings):
    """Bracket construction and position management"""
    model_config = {"env_file": ".env", "extra": "ignore"}

    atr_stop_multiplier: float = Field(1.5, gt=0)
    quantity_precision: int = Field(3, ge=0, le=8)
    trailing_callback_rate: float = Field(1.0, gt=0, le=10)
    trailing_activation_fraction: float = Field(0.5, gt=0, le=1)
    exchange_call_timeout_s: float = Field(10.0, gt=0)


class NotificationSettings(BaseSettings):
    """Alerting configuration"""
    model_config = {"env_file": ".env", "extra": "ignore"}

    notifications_enabled: bool = True
    telegram_enabled: bool = False
    telegram_bot_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None
    alert_cooldown_s: float = Field(60.0, ge=0)
    alert_timeout_s: float = Field(5.0, gt=0)


class LoggingSettings(BaseSettings):
    """Logging configuration"""
    model_config = {"env_file": ".env", "extra": "ignore"}

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_to_file: bool = True
    log_file_path: Path = Path("logs/trading.log")
    log_max_size_mb: int = 100
    log_backup_count: int = 10
    log_format: str = "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>"


class HistorySettings(BaseSettings):
    """Append-only JSON logs"""
    model_config = {"env_file": ".env", "extra": "ignore"}

    trade_history_path: Path = Path("trade-history.json")
    capital_history_path: Path = Path("capital-history.json")


class Settings(BaseSettings):
    """Main settings aggregator"""
    model_config = {"extra": "ignore"}

    bybit: BybitSettings = Field(default_factory=BybitSettings)
    market: MarketDataSettings = Field(default_factory=MarketDataSettings)
    risk: RiskSettings = Field(default_factory=RiskSettings)
    execution: ExecutionSettings = Field(default_factory=ExecutionSettings)
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    history: HistorySettings = Field(default_factory=HistorySettings)

    @classmethod
    def load(cls) -> "Settings":
        """Load settings from environment"""
        return cls(
            bybit=BybitSettings(),
            market=MarketDataSettings(),
            risk=RiskSettings(),
            execution=ExecutionSettings(),
            notifications=NotificationSettings(),
            logging=LoggingSettings(),
            history=HistorySettings(),
        )
