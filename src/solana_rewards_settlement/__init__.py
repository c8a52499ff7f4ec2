"""Settlement layer for the Solana rewards programs: addresses, reward math and transaction building."""

__version__ = "0.1.0"
