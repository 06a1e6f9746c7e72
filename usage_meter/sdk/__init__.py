"""
SDK for AI Usage Meter.

Provides a metered client for applications calling AI providers.
"""

from .openai_client import MeteredOpenAI

__all__ = ["MeteredOpenAI"]
