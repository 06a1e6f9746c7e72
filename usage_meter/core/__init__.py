"""
Core modules for AI Usage Meter.

This package contains pricing, cycle arithmetic, entitlement decisions,
the cost ceiling guard and the metering engine that ties them together.
"""
