"""TradeLens: session-scoped semantic retrieval over trade transactions."""

__version__ = "0.1.0"
