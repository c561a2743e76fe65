"""Service layer helpers (connection, REST client, settings)."""

from .api_client import AgentAPIClient, APIError, ClientSettings
from .connection import ConnectionSession, ConnectionState, SessionBindingError
from .settings import Settings, SettingsStore

__all__ = [
    "APIError",
    "AgentAPIClient",
    "ClientSettings",
    "ConnectionSession",
    "ConnectionState",
    "SessionBindingError",
    "Settings",
    "SettingsStore",
]
