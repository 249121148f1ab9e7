"""Ralph: an autonomous plan-and-build loop around an AI coding assistant."""

__version__ = "0.1.0"
