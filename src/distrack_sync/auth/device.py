"""Stable per-installation device identifier."""

import logging
import threading
import uuid
from typing import Optional

from ..sync.protocols import StateStoreProtocol

__all__ = ["DeviceIdentity", "DEVICE_ID_KEY"]

logger = logging.getLogger(__name__)

DEVICE_ID_KEY = "device_id"


class DeviceIdentity:
    """Generates the device id once and persists it forever."""

    def __init__(self, state: StateStoreProtocol):
        self.state = state
        self._device_id: Optional[str] = None
        self._lock = threading.Lock()

    def get_or_create(self) -> str:
        """Return the device id, generating and persisting it on first use."""
        with self._lock:
            if self._device_id:
                return self._device_id

            existing = self.state.get(DEVICE_ID_KEY)
            if isinstance(existing, str) and existing:
                self._device_id = existing
                return existing

            device_id = str(uuid.uuid4())
            self.state.set(DEVICE_ID_KEY, device_id)
            self._device_id = device_id
            logger.info("Generated new device id")
            return device_id
