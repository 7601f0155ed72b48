"""Agent-session client for the Fresh auth broker (Notion and Microsoft 365)."""

__version__ = "0.1.0"
