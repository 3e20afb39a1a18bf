"""
Exception hierarchy shared by the transports and the trading engine
"""
from typing import Optional


class BracketBotError(Exception):
    """Base class for all bot errors"""


class TransportError(BracketBotError):
    """An exchange call failed"""


class OrderRejectedError(TransportError):
    """The exchange refused an order or cancel request"""

    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message)
        self.code = code


class TransportTimeoutError(TransportError):
    """An exchange call did not complete within its deadline"""


class PositionAlreadyManagedError(BracketBotError):
    """A second trade was handed to the position monitor"""

