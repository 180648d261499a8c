"""Device linking flow.

The extension asks the service for a link code, the user confirms it in the
browser (or in Discord), and the extension polls until the service hands
out the first token pair.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from ..config import LinkSettings
from ..errors import (
    ApiError,
    DisTrackError,
    LinkExpiredError,
    RequestCancelledError,
    TransientNetworkError,
)
from ..schemas import LinkSession, LinkVerification, TokenGrant
from ..sync.dt_client import DisTrackClient
from ..sync.retry import BackoffConfig
from .token_manager import TokenManager

__all__ = ["LinkFlow", "LinkState"]

logger = logging.getLogger(__name__)

# /v1/link/finish statuses
PENDING_STATUSES = {404, 409, 425}
EXPIRED_STATUSES = {400, 410}


@dataclass
class LinkState:
    """Outcome of a linking attempt."""

    linked: bool = False
    device_id: Optional[str] = None
    link_code: Optional[str] = None
    error: Optional[str] = None


class LinkFlow:
    """Drives a device through link start, confirmation polling and token storage."""

    def __init__(
        self,
        client: DisTrackClient,
        tokens: TokenManager,
        settings: Optional[LinkSettings] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize link flow.

        Args:
            client: DisTrack API client
            tokens: Token manager that receives the first token pair
            settings: Poll interval configuration
            sleep: Blocking wait between polls (injectable for tests)
            clock: Monotonic clock used for the link code deadline
        """
        self.client = client
        self.tokens = tokens
        self.settings = settings or LinkSettings()
        self._sleep = sleep
        self._clock = clock

    def start(self) -> LinkSession:
        """Ask the service for a link code for this device."""
        session = self.client.start_link(self.tokens.get_device_id())
        logger.info(f"Link started, code expires in {session.expires_in}s")
        return session

    def finish(self, session: LinkSession) -> Optional[TokenGrant]:
        """Poll once for confirmation.

        Returns:
            The stored TokenGrant, or None while the user hasn't confirmed yet

        Raises:
            LinkExpiredError: The link session expired or was rejected
        """
        try:
            data = self.client.finish_link(self.tokens.get_device_id(), session.poll_token)
        except ApiError as e:
            if e.status_code in PENDING_STATUSES:
                return None
            if e.status_code in EXPIRED_STATUSES:
                raise LinkExpiredError() from e
            raise

        grant = TokenGrant.from_link_response(data)
        self.tokens.store_tokens(grant)
        logger.info("Device linked")
        return grant

    def wait_for_confirmation(
        self,
        session: LinkSession,
        cancel_event: Optional[threading.Event] = None,
    ) -> TokenGrant:
        """Poll until the link is confirmed or the code expires.

        Transient failures back off exponentially, capped at the configured
        maximum poll interval.

        Raises:
            LinkExpiredError: Code expired before confirmation
            RequestCancelledError: cancel_event was set
        """
        interval = session.poll_interval or self.settings.poll_interval_seconds
        backoff = BackoffConfig(
            base_delay=interval,
            max_delay=self.settings.max_poll_interval_seconds,
        )
        deadline = self._clock() + session.expires_in
        failures = 0

        while True:
            if cancel_event is not None and cancel_event.is_set():
                raise RequestCancelledError("Linking cancelled")

            delay = interval
            try:
                grant = self.finish(session)
                failures = 0
            except TransientNetworkError as e:
                logger.warning(f"Link poll failed: {e}")
                delay = backoff.delay(failures)
                failures += 1
                grant = None

            if grant is not None:
                return grant

            if self._clock() + delay >= deadline:
                raise LinkExpiredError()
            self._sleep(delay)

    def link(
        self,
        on_code: Optional[Callable[[LinkSession], None]] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> LinkState:
        """Run the whole linking flow.

        Args:
            on_code: Called with the link session so the UI can show the code
            cancel_event: Set it to abandon the flow

        Returns:
            LinkState with the result; errors are reported, not raised
        """
        link_code = None
        try:
            session = self.start()
            link_code = session.link_code
            if on_code:
                on_code(session)
            self.wait_for_confirmation(session, cancel_event)
        except DisTrackError as e:
            logger.warning(f"Linking failed: {e}")
            return LinkState(linked=False, link_code=link_code, error=str(e))

        return LinkState(
            linked=True,
            device_id=self.tokens.get_device_id(),
            link_code=link_code,
        )

    def relink(
        self,
        on_code: Optional[Callable[[LinkSession], None]] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> LinkState:
        """Drop the current credentials and link again."""
        self.tokens.clear_tokens()
        return self.link(on_code=on_code, cancel_event=cancel_event)

    def verify_code(self, code: str) -> LinkVerification:
        """Check a code the user typed in against the service."""
        result = self.client.verify_link_code(code.strip())
        if result.success and result.user:
            logger.info(f"Link code verified for user {result.user.user_id}")
        return result

    def unlink(self) -> None:
        self.tokens.clear_tokens()
        logger.info("Device unlinked")
