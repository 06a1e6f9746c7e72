"""
Storage layer for AI Usage Meter.

Cost ledger backends and the usage counter adapters that share one contract.
"""
