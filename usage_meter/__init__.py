"""
AI Usage Meter.

Usage metering and entitlement engine for AI-costing operations:
quota checks, monthly cost ceilings, an append-only cost ledger and
per-account usage counters over interchangeable storage backends.
"""

__version__ = "0.1.0"
