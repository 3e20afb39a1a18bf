from .position_monitor import MonitorState, PositionMonitor, activation_price

__all__ = ["MonitorState", "PositionMonitor", "activation_price"]
