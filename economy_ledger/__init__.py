"""
Economy Ledger

A multi-currency balance ledger with atomic transfers, a read-through
balance cache, an append-only transaction log and durable snapshots.
"""

__version__ = "1.0.0"
