"""Auth module - device identity, token lifecycle and device linking."""

from .device import DeviceIdentity
from .keychain import SecretStore
from .linking import LinkFlow, LinkState
from .token_manager import TokenManager

__all__ = ["DeviceIdentity", "SecretStore", "LinkFlow", "LinkState", "TokenManager"]
