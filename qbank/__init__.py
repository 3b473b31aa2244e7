"""Question-bank category tree and categorization engine."""

__version__ = "1.0.0"
