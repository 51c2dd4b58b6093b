"""Feature flag evaluation and A/B experiment assignment."""

__version__ = "0.1.0"
