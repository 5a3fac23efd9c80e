"""Partwise MCP - component alternatives, compatibility analysis and learned preferences."""

__version__ = "0.3.0"
