"""Protocol types for token manager and session queue dependencies.

Defines the interfaces the core components require from their
collaborators, so tests can pass fakes and the HTTP layer doesn't import
the token manager directly.
"""

from typing import Any, Optional, Protocol, runtime_checkable

import requests


@runtime_checkable
class StateStoreProtocol(Protocol):
    """Durable plain key-value storage."""

    def get(self, key: str, default: Any = None) -> Any: ...

    def set(self, key: str, value: Any) -> None: ...

    def delete(self, key: str) -> None: ...


@runtime_checkable
class SecretStoreProtocol(Protocol):
    """Durable encrypted storage for tokens."""

    def get(self, name: str) -> Optional[str]: ...

    def set(self, name: str, value: str) -> None: ...

    def delete(self, name: str) -> None: ...


@runtime_checkable
class AuthProviderProtocol(Protocol):
    """What the request wrapper needs from the token manager."""

    def get_auth_header(self) -> dict[str, str]: ...

    def refresh(self) -> None: ...


@runtime_checkable
class BaseUrlProtocol(Protocol):
    def resolve(self) -> str: ...


@runtime_checkable
class SessionUploaderProtocol(Protocol):
    """What the session queue needs to deliver one item."""

    def upload_session(self, payload: dict) -> requests.Response: ...
