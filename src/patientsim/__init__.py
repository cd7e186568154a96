"""Conversational session engine for simulated-patient practice sessions."""

__version__ = "0.1.0"
