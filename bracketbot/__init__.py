"""
Bracketbot - bracket-order futures trading bot for Bybit linear perpetuals
"""

__version__ = "0.1.0"
