"""Resolves the DisTrack service base URL once per process."""

import logging
import os
import threading
from pathlib import Path
from typing import Optional

from ..config import Config
from ..errors import DisTrackError

__all__ = ["BaseUrlResolver", "API_URL_ENV"]

logger = logging.getLogger(__name__)

API_URL_ENV = "DISTRACK_API_URL"
LINK_FILE_NAME = "link.txt"


class BaseUrlResolver:
    """Resolves and caches the service base URL.

    Precedence: DISTRACK_API_URL environment variable, then the first line
    of link.txt in the config directory, then Config.api_url.
    """

    def __init__(self, config: Optional[Config] = None, link_file: Optional[Path] = None):
        self.config = config or Config()
        self.link_file = link_file or Config.get_config_dir() / LINK_FILE_NAME
        self._cached: Optional[str] = None
        self._lock = threading.Lock()

    def resolve(self) -> str:
        with self._lock:
            if self._cached:
                return self._cached

            url = os.getenv(API_URL_ENV) or self._read_link_file() or self.config.api_url
            url = (url or "").strip().rstrip("/")
            if not url:
                raise DisTrackError("DisTrack API base URL is not configured")

            self._cached = url
            logger.info(f"Using API base URL: {url}")
            return url

    def reset(self) -> None:
        """Forget the cached URL; the next resolve() reads the sources again."""
        with self._lock:
            self._cached = None

    def _read_link_file(self) -> Optional[str]:
        if not self.link_file.exists():
            return None
        try:
            lines = self.link_file.read_text(encoding="utf-8").strip().splitlines()
        except OSError as e:
            logger.warning(f"Failed to read {self.link_file}: {e}")
            return None
        return lines[0].strip() if lines else None
