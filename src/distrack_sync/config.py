"""Configuration management for DisTrack Sync."""

import json
import logging
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Optional

from platformdirs import user_config_dir, user_data_dir, user_log_dir

__all__ = [
    "Config",
    "QueueSettings",
    "LinkSettings",
    "setup_logging",
    "DEFAULT_API_URL",
    "MAX_QUEUE_ITEMS",
]

logger = logging.getLogger(__name__)

APP_NAME = "DisTrack"
APP_AUTHOR = "DisTrack"

DEFAULT_API_URL = "https://api.endpoint-system.uk"
DEFAULT_REQUEST_TIMEOUT = 30  # seconds

# Session queue
DEFAULT_FLUSH_INTERVAL = 60  # seconds
MIN_FLUSH_INTERVAL = 10
MAX_QUEUE_ITEMS = 500

# Device linking
DEFAULT_POLL_INTERVAL = 5  # seconds
MAX_POLL_INTERVAL = 60


@dataclass
class QueueSettings:
    """Offline session queue configuration."""

    flush_interval_seconds: int = DEFAULT_FLUSH_INTERVAL
    max_items: int = MAX_QUEUE_ITEMS


@dataclass
class LinkSettings:
    """Device linking configuration."""

    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL
    max_poll_interval_seconds: float = MAX_POLL_INTERVAL


@dataclass
class Config:
    """Main configuration object."""

    api_url: str = DEFAULT_API_URL
    request_timeout: int = DEFAULT_REQUEST_TIMEOUT
    queue: QueueSettings = field(default_factory=QueueSettings)
    link: LinkSettings = field(default_factory=LinkSettings)
    debug_mode: bool = False

    @classmethod
    def get_config_dir(cls) -> Path:
        """Get the configuration directory path."""
        return Path(user_config_dir(APP_NAME, APP_AUTHOR))

    @classmethod
    def get_data_dir(cls) -> Path:
        """Get the data directory path (state database)."""
        return Path(user_data_dir(APP_NAME, APP_AUTHOR))

    @classmethod
    def get_log_dir(cls) -> Path:
        """Get the log directory path."""
        return Path(user_log_dir(APP_NAME, APP_AUTHOR))

    @classmethod
    def get_config_file(cls) -> Path:
        """Get the config file path."""
        return cls.get_config_dir() / "config.json"

    @classmethod
    def load(cls, config_file: Optional[Path] = None) -> "Config":
        """Load config from file, or return defaults."""
        config_file = config_file or cls.get_config_file()
        if config_file.exists():
            try:
                with open(config_file, "r") as f:
                    data = json.load(f)
                return cls._from_dict(data)
            except Exception as e:
                logger.warning(f"Failed to load config: {e}, using defaults")
        return cls()

    @classmethod
    def _from_dict(cls, data: dict) -> "Config":
        """Create Config from dictionary."""
        queue_data = data.pop("queue", {})
        link_data = data.pop("link", {})

        queue = QueueSettings(
            **{k: v for k, v in queue_data.items() if k in QueueSettings.__dataclass_fields__}
        )
        queue.flush_interval_seconds = max(MIN_FLUSH_INTERVAL, queue.flush_interval_seconds)
        queue.max_items = max(1, queue.max_items)

        link = LinkSettings(
            **{k: v for k, v in link_data.items() if k in LinkSettings.__dataclass_fields__}
        )

        return cls(
            queue=queue,
            link=link,
            **{k: v for k, v in data.items() if k in cls.__dataclass_fields__},
        )

    def save(self, config_file: Optional[Path] = None) -> None:
        """Save config to file."""
        config_file = config_file or self.get_config_file()
        config_file.parent.mkdir(parents=True, exist_ok=True)

        with open(config_file, "w") as f:
            json.dump(asdict(self), f, indent=2)
        logger.info(f"Config saved to {config_file}")


def setup_logging(debug: bool = False) -> None:
    """Configure logging."""
    log_dir = Config.get_log_dir()
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "distrack-sync.log"

    level = logging.DEBUG if debug else logging.INFO
    format_str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    logging.basicConfig(
        level=level,
        format=format_str,
        handlers=[
            logging.FileHandler(log_file),
            logging.StreamHandler(),
        ],
    )

    # Reduce noise from libraries
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("requests").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
