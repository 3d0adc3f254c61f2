"""
FormRelay Configuration

Integration subscriptions, their in-memory store and service settings.
"""

from .schemas import AppSettings, IntegrationConfig
from .store import IntegrationConfigStore

__all__ = [
    "AppSettings",
    "IntegrationConfig",
    "IntegrationConfigStore",
]
