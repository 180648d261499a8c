"""HTTP client for the DisTrack API with one-shot refresh on 401."""

import json
import logging
import threading
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Optional

import requests

from .. import __version__
from ..errors import (
    ApiError,
    AuthenticationError,
    RequestCancelledError,
    RequestTimeoutError,
    TransientNetworkError,
)
from .protocols import AuthProviderProtocol, BaseUrlProtocol

__all__ = ["ApiClient", "post_json", "USER_AGENT"]

logger = logging.getLogger(__name__)

USER_AGENT = f"DisTrack-Sync/{__version__}"

# How often an in-flight request checks its cancel event
CANCEL_POLL_INTERVAL = 0.05  # seconds


def _error_detail(response: requests.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return ""
    if isinstance(data, dict):
        return str(data.get("message") or data.get("error") or "")
    return ""


def _send(
    session: requests.Session,
    method: str,
    url: str,
    headers: dict,
    data: Optional[bytes],
    timeout: float,
) -> requests.Response:
    """Send one request, translating transport failures."""
    try:
        return session.request(method, url, headers=headers, data=data, timeout=timeout)
    except requests.exceptions.Timeout as e:
        raise RequestTimeoutError() from e
    except requests.exceptions.ConnectionError as e:
        raise TransientNetworkError("Cannot connect to DisTrack API") from e
    except requests.exceptions.RequestException as e:
        raise TransientNetworkError(f"Request to DisTrack API failed: {e}") from e


def _close_abandoned(future: Future) -> None:
    if not future.cancelled() and future.exception() is None:
        future.result().close()


def _send_cancellable(
    session: requests.Session,
    method: str,
    url: str,
    headers: dict,
    data: Optional[bytes],
    timeout: float,
    cancel_event: Optional[threading.Event],
) -> requests.Response:
    """Send one request, returning early with RequestCancelledError on cancel.

    The request runs on a worker thread so the caller is released as soon as
    cancel_event is set. An abandoned response is closed when it arrives.
    """
    if cancel_event is None:
        return _send(session, method, url, headers, data, timeout)

    future: Future = Future()

    def run() -> None:
        try:
            future.set_result(_send(session, method, url, headers, data, timeout))
        except BaseException as e:
            future.set_exception(e)

    threading.Thread(target=run, name="distrack-request", daemon=True).start()

    while True:
        try:
            return future.result(timeout=CANCEL_POLL_INTERVAL)
        except FutureTimeoutError:
            pass
        if cancel_event.is_set() and not future.done():
            future.add_done_callback(_close_abandoned)
            logger.debug(f"{method} {url} cancelled while in flight")
            raise RequestCancelledError()


def _raise_for_status(response: requests.Response) -> None:
    """Map an error status to the DisTrack error types."""
    status = response.status_code
    if status < 400:
        return
    if status >= 500:
        raise TransientNetworkError(f"Server error: {status}", status_code=status)
    if status == 401:
        raise AuthenticationError(_error_detail(response) or "Invalid or expired access token")
    raise ApiError(status, _error_detail(response))


def _encode_body(body: Any) -> Optional[bytes]:
    if body is None:
        return None
    if isinstance(body, bytes):
        return body
    if isinstance(body, str):
        return body.encode("utf-8")
    return json.dumps(body).encode("utf-8")


def post_json(
    session: requests.Session, url: str, body: dict, timeout: float = 30
) -> Any:
    """POST a JSON body without authentication and return the decoded reply.

    Raises:
        ApiError: For 4xx responses (status_code carries the status)
        TransientNetworkError: For connection errors, timeouts and 5xx
    """
    headers = {
        "Accept": "application/json",
        "Content-Type": "application/json",
        "User-Agent": USER_AGENT,
    }
    response = _send(session, "POST", url, headers, _encode_body(body), timeout)
    _raise_for_status(response)
    try:
        return response.json() if response.content else {}
    except ValueError:
        return None


class ApiClient:
    """Authenticated request wrapper.

    Handles:
    - Base URL resolution
    - JSON bodies and Content-Type defaulting
    - Bearer auth from the token manager
    - A single refresh-and-retry when the server answers 401
    - Timeouts and caller cancellation

    Transient failures are not retried here; the session queue retries on
    its own schedule.
    """

    MAX_AUTH_RETRIES = 1

    def __init__(
        self,
        base_url: BaseUrlProtocol,
        auth: AuthProviderProtocol,
        session: Optional[requests.Session] = None,
        timeout: float = 30,
    ):
        """Initialize API client.

        Args:
            base_url: Resolver for the service base URL
            auth: Token manager supplying Authorization headers
            session: Optional requests session (for dependency injection/testing)
            timeout: Default request timeout in seconds
        """
        self.base_url = base_url
        self.auth = auth
        self.timeout = timeout
        self._session = session or requests.Session()
        self._owns_session = session is None

    @property
    def session(self) -> requests.Session:
        return self._session

    def _build_headers(self, body: Any, headers: Optional[dict]) -> dict:
        request_headers = {
            "Accept": "application/json",
            "User-Agent": USER_AGENT,
        }
        request_headers.update(headers or {})
        has_content_type = any(k.lower() == "content-type" for k in request_headers)
        if body is not None and not has_content_type:
            request_headers["Content-Type"] = "application/json"
        return request_headers

    def request(
        self,
        path: str,
        method: str = "GET",
        body: Any = None,
        headers: Optional[dict] = None,
        timeout: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> requests.Response:
        """Make an authenticated request to the DisTrack API.

        Args:
            path: Path relative to the base URL, e.g. "/v1/sessions"
            method: HTTP method
            body: JSON-serializable body, or raw str/bytes
            headers: Extra headers; an explicit Content-Type is kept
            timeout: Request timeout in seconds (defaults to the client's)
            cancel_event: Set it to abandon the request

        Returns:
            The successful response

        Raises:
            NotLinkedError: No usable credentials
            AuthenticationError: 401 again after refreshing
            ApiError: Other 4xx responses
            TransientNetworkError: Connection errors and 5xx
            RequestTimeoutError: Request timed out
            RequestCancelledError: cancel_event was set
        """
        url = f"{self.base_url.resolve()}{path}"
        request_headers = self._build_headers(body, headers)
        return self._perform(
            method.upper(),
            url,
            request_headers,
            _encode_body(body),
            timeout if timeout is not None else self.timeout,
            cancel_event,
            attempt=0,
        )

    def _perform(
        self,
        method: str,
        url: str,
        headers: dict,
        data: Optional[bytes],
        timeout: float,
        cancel_event: Optional[threading.Event],
        attempt: int,
    ) -> requests.Response:
        self._check_cancelled(cancel_event)
        send_headers = {**headers, **self.auth.get_auth_header()}

        response = _send_cancellable(
            self._session, method, url, send_headers, data, timeout, cancel_event
        )

        if response.status_code == 401 and attempt < self.MAX_AUTH_RETRIES:
            self._check_cancelled(cancel_event)
            logger.info(f"{method} {url} returned 401, refreshing token and retrying")
            self.auth.refresh()
            return self._perform(
                method, url, headers, data, timeout, cancel_event, attempt=attempt + 1
            )

        _raise_for_status(response)
        return response

    def public_request(
        self,
        path: str,
        method: str = "POST",
        body: Any = None,
        headers: Optional[dict] = None,
        timeout: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> requests.Response:
        """Make an unauthenticated request (device linking endpoints)."""
        url = f"{self.base_url.resolve()}{path}"
        request_headers = self._build_headers(body, headers)
        self._check_cancelled(cancel_event)
        response = _send_cancellable(
            self._session,
            method.upper(),
            url,
            request_headers,
            _encode_body(body),
            timeout if timeout is not None else self.timeout,
            cancel_event,
        )
        _raise_for_status(response)
        return response

    @staticmethod
    def _check_cancelled(cancel_event: Optional[threading.Event]) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise RequestCancelledError()

    def close(self) -> None:
        """Close the session if we own it."""
        if self._owns_session and self._session is not None:
            self._session.close()
            self._session = None

    def __enter__(self) -> "ApiClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
