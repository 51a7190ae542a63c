"""
Token counting and usage tracking.

Extracts token counts from generative AI responses for cost calculation.
"""

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class TokenUsage:
    """Token usage data for cost calculation.

    Contains exact token counts as reported by the provider.
    """
    prompt_tokens: int
    completion_tokens: int

    def __post_init__(self):
        """Validate token counts are non-negative."""
        if self.prompt_tokens < 0 or self.completion_tokens < 0:
            raise ValueError("token counts cannot be negative")

    @property
    def total_tokens(self) -> int:
        """Total tokens used (prompt + completion)."""
        return self.prompt_tokens + self.completion_tokens

    @classmethod
    def from_response(cls, response: Any) -> "TokenUsage":
        """Read usage from a chat completion response.

        Raises:
            ValueError: If the response carries no usage information
        """
        usage = getattr(response, "usage", None)
        if not usage:
            raise ValueError("AI response missing usage information")
        return cls(
            prompt_tokens=usage.prompt_tokens or 0,
            completion_tokens=usage.completion_tokens or 0
        )
