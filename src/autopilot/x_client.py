"""
Minimal X API v2 client.

Only the calls the control plane guards: posting a reply, looking up a
user, and refreshing an OAuth2 token. Calls are blocking ``requests``
calls; async callers wrap them in ``asyncio.to_thread``.
"""

import logging
from typing import Any, Dict, Optional

import requests

from .errors import XApiError, XAuthError

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.twitter.com/2"
TOKEN_URL = "https://api.twitter.com/2/oauth2/token"


class XApiClient:
    def __init__(
        self,
        bearer_token: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 30,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
    ):
        self.bearer_token = bearer_token
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.client_id = client_id
        self.client_secret = client_secret
        self.session = requests.Session()

    def _request(
        self,
        method: str,
        path: str,
        access_token: Optional[str] = None,
        **kwargs,
    ) -> Dict[str, Any]:
        response = self.session.request(
            method,
            f"{self.base_url}{path}",
            headers={
                "Authorization": f"Bearer {access_token or self.bearer_token}",
                "Content-Type": "application/json",
            },
            timeout=self.timeout,
            **kwargs,
        )
        if response.status_code in (401, 403):
            raise XAuthError(response.status_code, response.text[:200])
        if not response.ok:
            raise XApiError(response.status_code, response.text[:200])
        return response.json()

    def post_tweet(
        self,
        text: str,
        reply_to_tweet_id: Optional[str] = None,
        access_token: Optional[str] = None,
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {"text": text}
        if reply_to_tweet_id:
            body["reply"] = {"in_reply_to_tweet_id": reply_to_tweet_id}
        return self._request("POST", "/tweets", access_token=access_token, json=body)

    def get_user_by_username(self, username: str) -> Dict[str, Any]:
        data = self._request(
            "GET",
            f"/users/by/username/{username}",
            params={"user.fields": "verified,public_metrics"},
        )
        return data.get("data", {})

    def refresh_token(self, refresh_token: str) -> Dict[str, Any]:
        """Exchange a refresh token for a new access token."""
        if not self.client_id:
            raise XAuthError(0, "client_id is not configured")
        response = self.session.post(
            TOKEN_URL,
            data={
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": self.client_id,
            },
            auth=(self.client_id, self.client_secret) if self.client_secret else None,
            timeout=self.timeout,
        )
        if response.status_code in (400, 401):
            raise XAuthError(response.status_code, response.text[:200])
        if not response.ok:
            raise XApiError(response.status_code, response.text[:200])
        logger.info("Refreshed X access token")
        return response.json()
