"""Relay between a chat command issuer and a virtual-tabletop bridge agent."""

__version__ = "0.3.0"
