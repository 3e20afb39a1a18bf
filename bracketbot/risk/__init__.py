from .account_context import AccountContextBuilder
from .risk_gate import RiskGate

__all__ = ["AccountContextBuilder", "RiskGate"]
