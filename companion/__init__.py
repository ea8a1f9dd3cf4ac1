"""Conversation memory and operator analytics for a chat companion."""

__version__ = "0.1.0"
