from .signal_engine import SignalEngine

__all__ = ["SignalEngine"]
