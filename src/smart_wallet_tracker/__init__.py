"""Smart Wallet Tracker - priced swap ledger, FIFO PnL and consensus signals."""

__version__ = "0.1.0"
