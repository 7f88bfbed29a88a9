"""Resilient message delivery for the chat relay."""

__version__ = "1.0.0"
