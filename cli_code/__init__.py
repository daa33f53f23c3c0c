"""cli-code: AI coding assistant for your terminal."""

__version__ = "0.3.0"
