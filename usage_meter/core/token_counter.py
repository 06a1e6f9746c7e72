"""
Token counting and usage tracking.

Holds the provider-reported token counts of one completion.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class TokenUsage:
    """Token usage data for cost calculation.
    
    Contains exact token counts as reported by the AI provider.
    """
    input_tokens: int
    output_tokens: int

    def __post_init__(self):
        """Validate token counts are non-negative."""
        if self.input_tokens < 0:
            raise ValueError("input_tokens cannot be negative")
        if self.output_tokens < 0:
            raise ValueError("output_tokens cannot be negative")
    
    @property
    def total_tokens(self) -> int:
        """Total tokens used (input + output)."""
        return self.input_tokens + self.output_tokens
