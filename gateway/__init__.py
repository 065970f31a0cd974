"""Credit Gateway - prepaid credit proxy for OpenAI and Anthropic APIs."""

__version__ = "1.0.0"
