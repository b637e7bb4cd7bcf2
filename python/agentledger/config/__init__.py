"""Environment-driven configuration for agentledger."""

from agentledger.config.settings import Settings, get_settings

__all__ = ["Settings", "get_settings"]
