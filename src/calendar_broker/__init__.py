"""Multi-account Google Calendar broker exposing calendar tools over MCP."""

__version__ = "0.1.0"
