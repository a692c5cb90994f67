"""OAuth token data structures.

TokenSet represents the token obtained at the end of a flow, either from the
token endpoint (authorization code grant) or from the redirect fragment
(implicit grant).
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping

# Fields of a token response that map onto TokenSet attributes
_KNOWN_FIELDS = {
    "access_token",
    "token_type",
    "refresh_token",
    "expires_in",
    "scope",
    "id_token",
}


def _expiry_from(expires_in: Any, now: datetime) -> datetime | None:
    try:
        seconds = int(expires_in)
    except (TypeError, ValueError):
        return None
    if seconds == 0:
        return None
    return now + timedelta(seconds=seconds)


@dataclass
class TokenSet:
    """OAuth token set with metadata.

    Attributes:
        access_token: The access token string (empty if only an id_token was requested)
        token_type: Token type (typically "Bearer")
        refresh_token: Optional refresh token
        expires_at: When the access token expires (UTC datetime)
        scope: Space-separated list of granted scopes
        id_token: OpenID Connect ID token, if any
        extra: Any other parameters returned with the token
        issued_at: When the token was issued (UTC datetime)
    """

    access_token: str
    token_type: str = "Bearer"
    refresh_token: str | None = None
    expires_at: datetime | None = None
    scope: str | None = None
    id_token: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)
    issued_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_token_response(cls, response: Mapping[str, Any]) -> "TokenSet":
        """Create TokenSet from an OAuth token endpoint JSON response.

        Args:
            response: JSON response from token endpoint

        Returns:
            TokenSet instance
        """
        now = datetime.now(timezone.utc)

        return cls(
            access_token=response["access_token"],
            token_type=response.get("token_type", "Bearer"),
            refresh_token=response.get("refresh_token"),
            expires_at=_expiry_from(response.get("expires_in"), now),
            scope=response.get("scope"),
            id_token=response.get("id_token"),
            extra={k: v for k, v in response.items() if k not in _KNOWN_FIELDS},
            issued_at=now,
        )

    @classmethod
    def from_fragment(cls, params: Mapping[str, str]) -> "TokenSet":
        """Create TokenSet from implicit-grant redirect parameters.

        The parameters arrive as strings (they were the URL fragment), so
        ``expires_in`` is parsed leniently and dropped if not a number.
        """
        now = datetime.now(timezone.utc)

        return cls(
            access_token=params.get("access_token", ""),
            token_type=params.get("token_type", ""),
            refresh_token=params.get("refresh_token") or None,
            expires_at=_expiry_from(params.get("expires_in"), now),
            scope=params.get("scope") or None,
            id_token=params.get("id_token") or None,
            extra={k: v for k, v in params.items() if k not in _KNOWN_FIELDS},
            issued_at=now,
        )
