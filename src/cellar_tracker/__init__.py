"""
Cellar Tracker - volume and provenance ledger for cider production.

Tracks purchased fruit and juice lots through production runs, vessels,
transfers, blends and keg fills.
"""

__version__ = "0.1.0"
