"""Core modules for the Binance percentage grid bot."""

__all__ = [
    "binance_client",
    "config",
    "grid",
    "ledger",
    "order_sizing",
    "sessions",
]
