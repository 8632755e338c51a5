"""Lifecycle operator for ledger nodes (peers, orderers, certificate authorities)."""

__version__ = "1.0.0"
