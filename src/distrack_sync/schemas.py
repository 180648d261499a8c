"""Typed records for DisTrack API responses and queued session payloads.

Responses are parsed here, at the boundary, so that business logic never
sees a half-populated dict. A missing or mistyped required field raises
MalformedResponseError.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from .errors import InvalidSessionError, MalformedResponseError

__all__ = [
    "TokenGrant",
    "LinkSession",
    "LinkedUser",
    "LinkVerification",
    "StreakData",
    "SessionPayload",
    "QueuedSession",
]


def _require_str(data: Any, key: str, context: str) -> str:
    value = data.get(key) if isinstance(data, dict) else None
    if not isinstance(value, str) or not value:
        raise MalformedResponseError(f"{context}: missing '{key}'")
    return value


def _require_positive_number(data: Any, key: str, context: str) -> float:
    value = data.get(key) if isinstance(data, dict) else None
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise MalformedResponseError(f"{context}: missing or invalid '{key}'")
    return value


def _optional_str(data: dict, key: str) -> Optional[str]:
    value = data.get(key)
    return value if isinstance(value, str) and value else None


@dataclass(frozen=True)
class TokenGrant:
    """Access/refresh token pair issued by the service."""

    access_token: str
    refresh_token: str
    expires_in: float  # seconds

    @classmethod
    def from_refresh_response(cls, data: Any, current_refresh_token: str) -> "TokenGrant":
        """Parse a /v1/auth/refresh body.

        The service may rotate the refresh token; when it doesn't, the
        current one stays in use.
        """
        context = "Malformed refresh response"
        access_token = _require_str(data, "access_token", context)
        expires_in = _require_positive_number(data, "expires_in", context)
        refresh_token = _optional_str(data, "refresh_token") or current_refresh_token
        return cls(access_token, refresh_token, expires_in)

    @classmethod
    def from_link_response(cls, data: Any) -> "TokenGrant":
        """Parse a /v1/link/finish body."""
        context = "Link finish did not provide tokens"
        return cls(
            access_token=_require_str(data, "access_token", context),
            refresh_token=_require_str(data, "refresh_token", context),
            expires_in=_require_positive_number(data, "expires_in", context),
        )


@dataclass(frozen=True)
class LinkSession:
    """Pending device link started with /v1/link/start."""

    poll_token: str
    link_code: str
    verification_url: Optional[str]
    expires_in: float
    poll_interval: Optional[float] = None

    @classmethod
    def from_response(cls, data: Any) -> "LinkSession":
        context = "Malformed link start response"
        poll_token = _require_str(data, "poll_token", context)
        expires_in = _require_positive_number(data, "expires_in", context)

        # Older servers return the code as "code"
        link_code = _optional_str(data, "link_code") or _optional_str(data, "code")
        if not link_code:
            raise MalformedResponseError(f"{context}: missing 'link_code'")

        poll_interval = data.get("poll_interval")
        if isinstance(poll_interval, bool) or not isinstance(poll_interval, (int, float)):
            poll_interval = None
        elif poll_interval <= 0:
            poll_interval = None

        return cls(
            poll_token=poll_token,
            link_code=link_code,
            verification_url=_optional_str(data, "verification_url"),
            expires_in=expires_in,
            poll_interval=poll_interval,
        )


@dataclass(frozen=True)
class LinkedUser:
    """Account summary returned after a link code is verified."""

    user_id: str
    username: Optional[str] = None
    display_name: Optional[str] = None

    @classmethod
    def from_response(cls, data: Any) -> "LinkedUser":
        if not isinstance(data, dict):
            raise MalformedResponseError("Malformed linked user: expected an object")
        user_id = data.get("id")
        if isinstance(user_id, int) and not isinstance(user_id, bool):
            user_id = str(user_id)
        if not isinstance(user_id, str) or not user_id:
            raise MalformedResponseError("Malformed linked user: missing 'id'")
        return cls(
            user_id=user_id,
            username=_optional_str(data, "username"),
            display_name=_optional_str(data, "display_name"),
        )


@dataclass(frozen=True)
class LinkVerification:
    """Result of POST /extension/link."""

    success: bool
    user: Optional[LinkedUser] = None
    message: Optional[str] = None

    @classmethod
    def from_response(cls, data: Any) -> "LinkVerification":
        if not isinstance(data, dict):
            raise MalformedResponseError("Malformed link verification: expected an object")
        success = data.get("success")
        if not isinstance(success, bool):
            raise MalformedResponseError("Malformed link verification: missing 'success'")
        user = None
        if success:
            user = LinkedUser.from_response(data.get("user"))
        return cls(success=success, user=user, message=_optional_str(data, "message"))


@dataclass
class StreakData:
    current_streak: int = 0
    longest_streak: int = 0

    def to_dict(self) -> dict:
        return {
            "currentStreak": self.current_streak,
            "longestStreak": self.longest_streak,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "StreakData":
        return cls(
            current_streak=int(data.get("currentStreak", 0)),
            longest_streak=int(data.get("longestStreak", 0)),
        )


@dataclass
class SessionPayload:
    """One finished coding session, as uploaded to POST /v1/sessions."""

    duration: float  # seconds
    session_date: str  # ISO 8601
    languages: dict[str, float] = field(default_factory=dict)
    streak_data: StreakData = field(default_factory=StreakData)
    session_id: Optional[str] = None

    def with_session_id(self) -> "SessionPayload":
        """Return this payload with a session id, generating one if absent."""
        if self.session_id:
            return self
        return SessionPayload(
            duration=self.duration,
            session_date=self.session_date,
            languages=dict(self.languages),
            streak_data=self.streak_data,
            session_id=str(uuid.uuid4()),
        )

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "duration": self.duration,
            "sessionDate": self.session_date,
            "languages": dict(self.languages),
            "streakData": self.streak_data.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SessionPayload":
        """Build a payload from its upload form.

        Raises:
            InvalidSessionError: duration or sessionDate is missing
        """
        missing = [key for key in ("duration", "sessionDate") if data.get(key) is None]
        if missing:
            raise InvalidSessionError(f"Session payload missing {', '.join(missing)}")
        return cls(
            session_id=data.get("session_id"),
            duration=data["duration"],
            session_date=data["sessionDate"],
            languages=dict(data.get("languages") or {}),
            streak_data=StreakData.from_dict(data.get("streakData") or {}),
        )


@dataclass
class QueuedSession:
    """A session payload waiting in the offline queue."""

    payload: SessionPayload
    queued_at: datetime
    attempts: int = 0
    last_error: Optional[str] = None

    @property
    def session_id(self) -> str:
        return self.payload.session_id

    @classmethod
    def new(cls, payload: SessionPayload) -> "QueuedSession":
        return cls(
            payload=payload.with_session_id(),
            queued_at=datetime.now(timezone.utc),
        )

    def failed(self, error: str) -> "QueuedSession":
        """Copy of this item after one more failed upload."""
        return QueuedSession(
            payload=self.payload,
            queued_at=self.queued_at,
            attempts=self.attempts + 1,
            last_error=error,
        )

    def to_dict(self) -> dict:
        data = self.payload.to_dict()
        data["queuedAt"] = self.queued_at.isoformat()
        data["attempts"] = self.attempts
        if self.last_error is not None:
            data["lastError"] = self.last_error
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "QueuedSession":
        return cls(
            payload=SessionPayload.from_dict(data),
            queued_at=datetime.fromisoformat(data["queuedAt"]),
            attempts=max(0, int(data.get("attempts", 0))),
            last_error=data.get("lastError"),
        )
