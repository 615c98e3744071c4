"""
Envelope Ledger - Source Package

An offline-first envelope budgeting engine: an in-memory ledger that keeps
every envelope balance equal to its transaction history, mirrored to a remote
store whenever the device is online.

DESIGN PRINCIPLES:
1. Local state is authoritative; the network never blocks a mutation
2. Operations apply whole or not at all
3. Balances are always reconstructible from transactions
4. Remote failures are reported, never silently dropped
5. Storage layer is swappable
"""

__version__ = "1.0.0"
__author__ = "Envelope Ledger Team"
