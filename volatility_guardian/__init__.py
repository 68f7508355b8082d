"""Volatility Guardian - ATR Volatility Stop Monitoring Service

Evaluates every user's watchlist against a Wilder ATR volatility stop,
gated by exchange trading hours, and fans alerts out over push,
WhatsApp and email.
"""

__version__ = "0.1.0"
