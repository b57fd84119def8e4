"""Nudge: conversational reminder assistant over SMS and web chat."""

__version__ = "0.1.0"
