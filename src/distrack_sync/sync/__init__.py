"""Sync module - DisTrack API access and the offline session queue."""

from .base_url import BaseUrlResolver
from .dt_client import DisTrackClient
from .http_client import ApiClient
from .protocols import (
    AuthProviderProtocol,
    BaseUrlProtocol,
    SecretStoreProtocol,
    SessionUploaderProtocol,
    StateStoreProtocol,
)
from .retry import BackoffConfig
from .session_queue import FlushResult, SessionQueue
from .state_store import StateStore

__all__ = [
    "ApiClient",
    "BaseUrlResolver",
    "DisTrackClient",
    "SessionQueue",
    "FlushResult",
    "StateStore",
    "BackoffConfig",
    "AuthProviderProtocol",
    "BaseUrlProtocol",
    "SecretStoreProtocol",
    "SessionUploaderProtocol",
    "StateStoreProtocol",
]
