"""Wires the token manager, API client and session queue together.

Editor glue (status bar, panels, activity hooks) talks to DisTrackSync only.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

import requests

from .auth import LinkFlow, SecretStore, TokenManager
from .config import Config
from .schemas import SessionPayload, StreakData
from .sync import ApiClient, BaseUrlResolver, DisTrackClient, SessionQueue, StateStore
from .sync.protocols import SecretStoreProtocol, StateStoreProtocol

__all__ = ["DisTrackSync"]

logger = logging.getLogger(__name__)


class DisTrackSync:
    """Owns one instance of every core component for the process."""

    def __init__(
        self,
        config: Optional[Config] = None,
        secrets: Optional[SecretStoreProtocol] = None,
        state: Optional[StateStoreProtocol] = None,
        session: Optional[requests.Session] = None,
        base_url: Optional[BaseUrlResolver] = None,
        auto_flush: bool = True,
    ) -> None:
        self.config = config or Config.load()
        self.secrets = secrets or SecretStore()
        self.state = state or StateStore()
        self.base_url = base_url or BaseUrlResolver(self.config)
        self._session = session or requests.Session()

        self.tokens = TokenManager(
            secrets=self.secrets,
            state=self.state,
            base_url=self.base_url,
            session=self._session,
            timeout=self.config.request_timeout,
        )
        self.api = ApiClient(
            base_url=self.base_url,
            auth=self.tokens,
            session=self._session,
            timeout=self.config.request_timeout,
        )
        self.client = DisTrackClient(self.api)
        self.queue = SessionQueue(
            uploader=self.client,
            state=self.state,
            max_items=self.config.queue.max_items,
            flush_interval=self.config.queue.flush_interval_seconds,
            auto_flush=auto_flush,
        )
        self.linking = LinkFlow(self.client, self.tokens, self.config.link)

    def start(self) -> None:
        """Initialize credentials and start the periodic queue flush."""
        self.tokens.initialize()
        self.queue.start()
        if self.tokens.has_linked_account():
            logger.info("Linked account found")
        else:
            logger.info("No linked account - sessions will queue until linked")

    def stop(self) -> None:
        """Stop flushing and release resources. Does not flush."""
        self.queue.close()
        self._session.close()
        close_state = getattr(self.state, "close", None)
        if close_state:
            close_state()

    def record_session(
        self,
        duration: float,
        languages: Optional[dict[str, float]] = None,
        current_streak: int = 0,
        longest_streak: int = 0,
        session_date: Optional[str] = None,
    ) -> str:
        """Queue a finished coding session for upload.

        Returns:
            The session id
        """
        payload = SessionPayload(
            duration=duration,
            session_date=session_date or datetime.now(timezone.utc).isoformat(),
            languages=dict(languages or {}),
            streak_data=StreakData(current_streak, longest_streak),
        )
        session_id = self.queue.enqueue(payload)
        logger.info(f"Session {session_id} queued ({duration:.0f}s)")
        return session_id

    def __enter__(self) -> "DisTrackSync":
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.stop()
