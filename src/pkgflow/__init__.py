"""Package-version processing pipeline with dead-letter redrive."""

__version__ = "0.1.0"
