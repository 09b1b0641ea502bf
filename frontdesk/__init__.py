"""Conversational front-desk bot for a property-management company."""

__version__ = "0.1.0"
