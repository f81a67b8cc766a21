"""Trove Monitor - chain indexer for a collateralized-debt lending protocol.

Reads trove positions, liquidation/redemption events, gauge incentives and
bridge balances from the chain, and persists protocol health snapshots for
downstream dashboards.
"""

__version__ = "0.1.0"
