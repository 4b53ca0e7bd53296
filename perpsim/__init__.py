"""perpsim - paper trading ledger for leveraged crypto perpetuals."""

__version__ = "0.1.0"
