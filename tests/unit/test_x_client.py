#!/usr/bin/env python3
"""
Unit tests for the X API client error mapping
"""

import pytest
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from autopilot.errors import ConfigurationError, TransientError, XApiError, XAuthError
from autopilot.x_client import TOKEN_URL, XApiClient


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self.ok = 200 <= status_code < 300
        self._payload = payload or {}
        self.text = text

    def json(self):
        return self._payload


class TestXApiClient:
    @pytest.fixture
    def client(self):
        return XApiClient("app-token", client_id="cid")

    def test_post_reply_body(self, client, monkeypatch):
        seen = {}

        def fake_request(method, url, headers, timeout, **kwargs):
            seen.update(method=method, url=url, headers=headers, **kwargs)
            return FakeResponse(201, {"data": {"id": "1"}})

        monkeypatch.setattr(client.session, "request", fake_request)
        client.post_tweet("hello", reply_to_tweet_id="42", access_token="user-token")

        assert seen["method"] == "POST"
        assert seen["url"] == "https://api.twitter.com/2/tweets"
        assert seen["headers"]["Authorization"] == "Bearer user-token"
        assert seen["json"] == {"text": "hello", "reply": {"in_reply_to_tweet_id": "42"}}

    def test_auth_failure_is_configuration_error(self, client, monkeypatch):
        monkeypatch.setattr(client.session, "request", lambda *a, **k: FakeResponse(401, text="Unauthorized"))

        with pytest.raises(XAuthError) as excinfo:
            client.get_user_by_username("alice")
        assert isinstance(excinfo.value, ConfigurationError)
        assert excinfo.value.status == 401

    def test_server_error_is_transient(self, client, monkeypatch):
        monkeypatch.setattr(client.session, "request", lambda *a, **k: FakeResponse(503, text="over capacity"))

        with pytest.raises(XApiError) as excinfo:
            client.post_tweet("hello")
        assert isinstance(excinfo.value, TransientError)

    def test_user_lookup_returns_data(self, client, monkeypatch):
        monkeypatch.setattr(
            client.session, "request",
            lambda *a, **k: FakeResponse(200, {"data": {"id": "7", "username": "alice"}}),
        )
        assert client.get_user_by_username("alice")["id"] == "7"

    def test_refresh_token(self, client, monkeypatch):
        seen = {}

        def fake_post(url, data, auth, timeout):
            seen.update(url=url, data=data, auth=auth)
            return FakeResponse(200, {"access_token": "new"})

        monkeypatch.setattr(client.session, "post", fake_post)

        assert client.refresh_token("r-1")["access_token"] == "new"
        assert seen["url"] == TOKEN_URL
        assert seen["data"]["grant_type"] == "refresh_token"
        assert seen["auth"] is None

    def test_refresh_without_client_id(self, monkeypatch):
        with pytest.raises(XAuthError):
            XApiClient("app-token").refresh_token("r-1")
