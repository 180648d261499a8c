"""Device-linked access/refresh token lifecycle.

Tokens live in the system keychain; the access token expiry lives in the
plain state store. The in-memory copy is an immutable Credentials value
that is swapped whole under a lock, so concurrent readers never see a
half-updated pair.

Refresh is single-flight: the first caller performs the network exchange
and parks a Future in the pending slot; every caller arriving while it runs
waits on that Future and sees the same outcome.
"""

import logging
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Callable, Optional

import requests

from ..errors import (
    ApiError,
    InvalidCredentialError,
    NotInitializedError,
    NotLinkedError,
)
from ..schemas import TokenGrant
from ..sync.http_client import post_json
from ..sync.protocols import BaseUrlProtocol, SecretStoreProtocol, StateStoreProtocol
from .device import DeviceIdentity
from .keychain import ACCESS_TOKEN_KEY, REFRESH_TOKEN_KEY

__all__ = ["TokenManager", "Credentials", "EXPIRY_BUFFER_MS", "ACCESS_EXPIRES_KEY"]

logger = logging.getLogger(__name__)

ACCESS_EXPIRES_KEY = "access_token_expires_at"
REFRESH_PATH = "/v1/auth/refresh"

# Access tokens this close to expiry are refreshed before use
EXPIRY_BUFFER_MS = 60_000


@dataclass(frozen=True)
class Credentials:
    """Cached credential set."""

    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at_ms: Optional[int] = None  # epoch milliseconds


_UNLINKED = Credentials()


class TokenManager:
    """Owns the credential state machine."""

    def __init__(
        self,
        secrets: SecretStoreProtocol,
        state: StateStoreProtocol,
        base_url: BaseUrlProtocol,
        session: Optional[requests.Session] = None,
        timeout: float = 30,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize token manager.

        Args:
            secrets: Keychain-backed store for the token pair
            state: Plain store for the expiry timestamp and device id
            base_url: Resolver for the service base URL
            session: Optional requests session used for the refresh call
            timeout: Refresh request timeout in seconds
            clock: Returns the current time as epoch seconds
        """
        self.secrets = secrets
        self.state = state
        self.base_url = base_url
        self.timeout = timeout
        self._session = session or requests.Session()
        self._owns_session = session is None
        self._clock = clock
        self._device = DeviceIdentity(state)

        self._initialized = False
        self._tokens_loaded = False
        self._credentials = _UNLINKED
        self._lock = threading.RLock()

        self._refresh_lock = threading.Lock()
        self._pending_refresh: Optional[Future] = None

    # -- lifecycle ---------------------------------------------------------

    def initialize(self) -> None:
        """Load or create the device id. Credentials load lazily."""
        self._device.get_or_create()
        self._initialized = True
        logger.info("Token manager initialized")

    def _require_initialized(self) -> None:
        if not self._initialized:
            raise NotInitializedError()

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _ensure_tokens_loaded(self) -> Credentials:
        self._require_initialized()
        with self._lock:
            if not self._tokens_loaded:
                expires_at = self.state.get(ACCESS_EXPIRES_KEY)
                self._credentials = Credentials(
                    access_token=self.secrets.get(ACCESS_TOKEN_KEY),
                    refresh_token=self.secrets.get(REFRESH_TOKEN_KEY),
                    expires_at_ms=int(expires_at) if expires_at is not None else None,
                )
                self._tokens_loaded = True
            return self._credentials

    # -- queries -----------------------------------------------------------

    def get_device_id(self) -> str:
        self._require_initialized()
        return self._device.get_or_create()

    def has_linked_account(self) -> bool:
        """True when a refresh token is stored, valid access token or not."""
        return bool(self._ensure_tokens_loaded().refresh_token)

    def is_access_token_valid(self) -> bool:
        credentials = self._ensure_tokens_loaded()
        return self._is_usable(credentials)

    def _is_usable(self, credentials: Credentials) -> bool:
        if not credentials.access_token or credentials.expires_at_ms is None:
            return False
        return credentials.expires_at_ms - self._now_ms() > EXPIRY_BUFFER_MS

    def get_auth_header(self) -> dict[str, str]:
        """Authorization header for the current access token.

        Refreshes first when the access token is missing or about to expire.

        Raises:
            NotLinkedError: No access token even after refreshing
        """
        credentials = self._ensure_tokens_loaded()
        if not self._is_usable(credentials):
            self.refresh()
            credentials = self._ensure_tokens_loaded()

        if not credentials.access_token:
            raise NotLinkedError()
        return {"Authorization": f"Bearer {credentials.access_token}"}

    # -- refresh -----------------------------------------------------------

    def refresh(self) -> None:
        """Exchange the refresh token for a new token pair.

        Concurrent callers share one network exchange and its outcome.

        Raises:
            NotLinkedError: No refresh token is stored
            InvalidCredentialError: Server rejected the refresh token (401/404);
                stored credentials have been cleared
            TransientNetworkError: Network or server failure; credentials kept
        """
        self._ensure_tokens_loaded()

        with self._refresh_lock:
            pending = self._pending_refresh
            owner = pending is None
            if owner:
                pending = Future()
                self._pending_refresh = pending

        if not owner:
            logger.debug("Joining in-flight token refresh")
            pending.result()
            return

        error: Optional[BaseException] = None
        try:
            self._exchange_refresh_token()
        except BaseException as e:
            error = e
            raise
        finally:
            with self._refresh_lock:
                self._pending_refresh = None
            if error is None:
                pending.set_result(None)
            else:
                pending.set_exception(error)

    def _exchange_refresh_token(self) -> None:
        refresh_token = self._ensure_tokens_loaded().refresh_token
        if not refresh_token:
            raise NotLinkedError()

        url = f"{self.base_url.resolve()}{REFRESH_PATH}"
        body = {"device_id": self.get_device_id(), "refresh_token": refresh_token}

        try:
            data = post_json(self._session, url, body, timeout=self.timeout)
        except ApiError as e:
            if e.status_code in (401, 404):
                logger.warning(
                    f"Refresh token rejected ({e.status_code}), clearing credentials"
                )
                self.clear_tokens()
                raise InvalidCredentialError() from e
            raise

        self.store_tokens(TokenGrant.from_refresh_response(data, refresh_token))
        logger.info("Access token refreshed")

    # -- mutation ----------------------------------------------------------

    def store_tokens(self, grant: TokenGrant) -> None:
        """Persist a token pair and make it current."""
        self._require_initialized()
        expires_at = self._now_ms() + int(grant.expires_in * 1000)

        with self._lock:
            self.secrets.set(ACCESS_TOKEN_KEY, grant.access_token)
            self.secrets.set(REFRESH_TOKEN_KEY, grant.refresh_token)
            self.state.set(ACCESS_EXPIRES_KEY, expires_at)

            self._credentials = Credentials(
                access_token=grant.access_token,
                refresh_token=grant.refresh_token,
                expires_at_ms=expires_at,
            )
            self._tokens_loaded = True
        logger.info("Tokens stored")

    def clear_tokens(self) -> None:
        """Forget all credentials; the device becomes unlinked."""
        self._require_initialized()
        with self._lock:
            self.secrets.delete(ACCESS_TOKEN_KEY)
            self.secrets.delete(REFRESH_TOKEN_KEY)
            self.state.delete(ACCESS_EXPIRES_KEY)

            self._credentials = _UNLINKED
            self._tokens_loaded = True
        logger.info("Tokens cleared")

    def close(self) -> None:
        """Close the refresh session if we own it."""
        if self._owns_session:
            self._session.close()
