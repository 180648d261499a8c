"""DisTrack API endpoints - session upload, account data and device linking."""

import logging
from typing import Any, Optional

import requests

from ..errors import MalformedResponseError
from ..schemas import LinkSession, LinkVerification
from .http_client import ApiClient

__all__ = ["DisTrackClient"]

logger = logging.getLogger(__name__)


def _json(response: requests.Response) -> Any:
    if not response.content:
        return {}
    try:
        return response.json()
    except ValueError as e:
        raise MalformedResponseError(f"Response from {response.url} is not JSON") from e


class DisTrackClient:
    """Endpoint surface of the DisTrack service."""

    def __init__(self, api: ApiClient):
        self.api = api

    # Sessions

    def upload_session(self, payload: dict) -> requests.Response:
        """Upload one finished session. Any 2xx means accepted."""
        return self.api.request("/v1/sessions", method="POST", body=payload)

    # Account

    def get_profile(self) -> dict:
        return _json(self.api.request("/v1/me"))

    def get_stats(self) -> dict:
        return _json(self.api.request("/v1/me/stats"))

    def get_leaderboard(self, limit: Optional[int] = None) -> Any:
        path = "/v1/leaderboard"
        if limit is not None:
            path = f"{path}?limit={int(limit)}"
        return _json(self.api.request(path))

    # Device linking (unauthenticated)

    def start_link(self, device_id: str) -> LinkSession:
        response = self.api.public_request("/v1/link/start", body={"device_id": device_id})
        return LinkSession.from_response(_json(response))

    def finish_link(self, device_id: str, poll_token: str) -> Any:
        """Raw /v1/link/finish body; status errors propagate as ApiError."""
        response = self.api.public_request(
            "/v1/link/finish",
            body={"device_id": device_id, "poll_token": poll_token},
        )
        return _json(response)

    def verify_link_code(self, code: str) -> LinkVerification:
        response = self.api.public_request("/extension/link", body={"code": code})
        return LinkVerification.from_response(_json(response))

    def close(self) -> None:
        self.api.close()
