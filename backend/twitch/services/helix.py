"""Twitch Helix client for the calls the bot core needs.

Token types:
- User Access Token: moderator lookups and EventSub websocket subscriptions
  are made with the broadcaster's (or bot's) own token.
- Refresh Token: exchanged for a new access token before expiry.
"""

import logging
from dataclasses import dataclass

import httpx

logger = logging.getLogger(__name__)

HELIX_BASE = "https://api.twitch.tv/helix"
OAUTH_BASE = "https://id.twitch.tv/oauth2"

# Helix caps page size at 100 for moderators
_PAGE_SIZE = 100
# Stop paginating after this many pages
_MAX_PAGES = 50


@dataclass
class TokenRefreshResult:
    """New token pair returned by a successful refresh."""

    access_token: str
    refresh_token: str
    expires_in: int | None = None


class HelixAPIError(Exception):
    """Raised when a Helix write call is rejected."""

    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(f"Helix error {status_code}: {message}")
        self.status_code = status_code


class HelixClient:
    """Client for interacting with Twitch Helix.

    Shares one httpx client for connection reuse. Pass *transport* to route
    requests elsewhere (tests use ``httpx.MockTransport``).
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 10.0,
    ):
        if not client_id or not client_secret:
            raise ValueError("Twitch client_id and client_secret are required")

        self.client_id = client_id
        self.client_secret = client_secret
        self._http = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def close(self) -> None:
        """Close the shared HTTP client. Call on shutdown."""
        await self._http.aclose()

    def _headers(self, token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {token}", "Client-Id": self.client_id}

    # ------------------------------------------------------------------
    # Moderation
    # ------------------------------------------------------------------

    async def get_moderators(
        self, broadcaster_id: str, access_token: str
    ) -> tuple[int, list[dict[str, str]]]:
        """Return ``(status_code, moderators)`` for a channel.

        Follows pagination while responses are 200. A non-200 page returns
        its status with whatever was collected so far. Network errors raise.
        """
        moderators: list[dict[str, str]] = []
        cursor: str | None = None

        for _ in range(_MAX_PAGES):
            params: dict[str, str | int] = {"broadcaster_id": broadcaster_id, "first": _PAGE_SIZE}
            if cursor:
                params["after"] = cursor

            response = await self._http.get(
                f"{HELIX_BASE}/moderation/moderators",
                params=params,
                headers=self._headers(access_token),
            )
            if response.status_code != 200:
                logger.debug(
                    f"GET moderators for {broadcaster_id} returned {response.status_code}"
                )
                return response.status_code, moderators

            data = response.json()
            moderators.extend(data.get("data", []))
            cursor = (data.get("pagination") or {}).get("cursor")
            if not cursor:
                break

        return 200, moderators

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    async def refresh_token(self, refresh_token: str) -> TokenRefreshResult | None:
        """Exchange a refresh token for a new access token.

        Twitch may rotate the refresh token too; the caller persists both.
        Returns None on any failure.
        """
        try:
            response = await self._http.post(
                f"{OAUTH_BASE}/token",
                data={
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "grant_type": "refresh_token",
                    "refresh_token": refresh_token,
                },
            )

            if response.status_code != 200:
                error_data = response.json() if response.text else {}
                error_msg = error_data.get("message", f"HTTP {response.status_code}")
                logger.error(f"Token refresh failed: {error_msg}")
                return None

            data = response.json()
            new_access_token = data.get("access_token")
            if not new_access_token:
                logger.error("Token refresh failed: no access_token in response")
                return None

            logger.debug("Successfully refreshed user access token")
            return TokenRefreshResult(
                access_token=new_access_token,
                refresh_token=data.get("refresh_token") or refresh_token,
                expires_in=data.get("expires_in"),
            )

        except httpx.TimeoutException:
            logger.error("Timeout while refreshing token")
            return None
        except Exception as e:
            logger.exception(f"Unexpected error refreshing token: {e}")
            return None

    # ------------------------------------------------------------------
    # EventSub
    # ------------------------------------------------------------------

    async def create_eventsub_subscription(
        self,
        subscription_type: str,
        version: str,
        condition: dict[str, str],
        session_id: str,
        access_token: str,
    ) -> None:
        """Subscribe *session_id* to one event type. Raises HelixAPIError on rejection."""
        response = await self._http.post(
            f"{HELIX_BASE}/eventsub/subscriptions",
            json={
                "type": subscription_type,
                "version": version,
                "condition": condition,
                "transport": {"method": "websocket", "session_id": session_id},
            },
            headers=self._headers(access_token),
        )
        # 409: already subscribed on this session
        if response.status_code in (202, 409):
            return

        try:
            message = response.json().get("message", response.text)
        except ValueError:
            message = response.text
        raise HelixAPIError(response.status_code, message)
