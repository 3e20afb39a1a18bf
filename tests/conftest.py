import pytest

from bracketbot.config.settings import ExecutionSettings, RiskSettings
from bracketbot.history.trade_history import CapitalHistory, TradeHistory

from tests.fakes import FakeExchange, RecordingDispatcher


@pytest.fixture
def exchange():
    return FakeExchange()


@pytest.fixture
def notifier():
    return RecordingDispatcher()


@pytest.fixture
def history(tmp_path):
    return TradeHistory(tmp_path / "trade-history.json")


@pytest.fixture
def capital_history(tmp_path):
    return CapitalHistory(tmp_path / "capital-history.json")


@pytest.fixture
def execution_settings():
    return ExecutionSettings(
        atr_stop_multiplier=1.5,
        quantity_precision=3,
        trailing_callback_rate=1.0,
        trailing_activation_fraction=0.5,
        exchange_call_timeout_s=0.5,
    )


@pytest.fixture
def risk_settings():
    return RiskSettings(
        max_risk_per_trade_percent=1.0,
        daily_profit_target_percent=5.0,
        daily_loss_limit_percent=3.0,
        risk_reward_ratio=2.0,
        max_trades_per_day=50,
    )
