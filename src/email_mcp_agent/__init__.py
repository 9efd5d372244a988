"""Email MCP Agent - multi-account email access for automated callers.

This package fetches, caches, reads and sends email for several configured
accounts, keeping per-account storage bounded in size and age and in sync with
renamed account ids.
"""

__version__ = "0.1.0"

from email_mcp_agent.config import Settings, get_settings

__all__ = ["Settings", "get_settings", "__version__"]
