"""SIFT Stream: streaming fact-check analysis sessions."""

__version__ = "1.0.0"
