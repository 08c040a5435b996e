"""
Ledger Mirror

Off-chain indexer and risk scanner for an on-chain lending ledger.
"""

__version__ = "1.0.0"
