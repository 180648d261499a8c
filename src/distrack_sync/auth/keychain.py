"""Secure token storage using the system keychain."""

import logging
from typing import Optional

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

from ..errors import StorageError

__all__ = ["SecretStore", "ACCESS_TOKEN_KEY", "REFRESH_TOKEN_KEY"]

logger = logging.getLogger(__name__)

SERVICE_NAME = "DisTrack"
ACCESS_TOKEN_KEY = "access_token"
REFRESH_TOKEN_KEY = "refresh_token"


class SecretStore:
    """Named secrets in the system keychain."""

    def __init__(self, service_name: str = SERVICE_NAME):
        """Initialize secret store.

        Args:
            service_name: Service name for keychain entries
        """
        self.service_name = service_name

    def get(self, name: str) -> Optional[str]:
        """Read a secret, None if absent."""
        try:
            return keyring.get_password(self.service_name, name)
        except KeyringError as e:
            logger.error(f"Failed to read {name} from keychain: {e}")
            raise StorageError(f"Cannot read {name} from keychain") from e

    def set(self, name: str, value: str) -> None:
        """Write a secret."""
        try:
            keyring.set_password(self.service_name, name, value)
        except KeyringError as e:
            logger.error(f"Failed to store {name} in keychain: {e}")
            raise StorageError(f"Cannot store {name} in keychain") from e

    def delete(self, name: str) -> None:
        """Delete a secret; missing entries are ignored."""
        try:
            keyring.delete_password(self.service_name, name)
        except PasswordDeleteError:
            # Didn't exist
            pass
        except KeyringError as e:
            logger.error(f"Failed to delete {name} from keychain: {e}")
            raise StorageError(f"Cannot delete {name} from keychain") from e
