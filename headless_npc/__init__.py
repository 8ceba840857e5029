"""Headless NPC chat backend: conversational turns, session state and long-term memory."""

__version__ = "0.1.0"
