"""
Dependency injection for the session registry
"""

from functools import lru_cache
from inference_manager.services.session_registry import SessionRegistry


@lru_cache()
def get_session_registry() -> SessionRegistry:
    """
    Dependency injection for SessionRegistry.

    Returns a singleton instance that will be reused across requests,
    so every request sees the same sessions and their tunnels.
    """
    return SessionRegistry()
