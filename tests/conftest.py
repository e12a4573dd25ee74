"""Shared fixtures: an in-memory store and a fake aiohttp session."""

import json
from unittest.mock import MagicMock

import aiohttp
import pytest

from bluos_adapter import config
from bluos_adapter.state_store import MemoryStateStore


class FakeResponse:
    def __init__(self, status=200, body=""):
        self.status = status
        self._body = body

    def raise_for_status(self):
        if self.status >= 400:
            raise aiohttp.ClientResponseError(
                request_info=MagicMock(), history=(), status=self.status, message="error")

    async def text(self):
        if isinstance(self._body, BaseException):
            raise self._body
        return self._body


class _FakeRequest:
    def __init__(self, outcome):
        self._outcome = outcome

    async def __aenter__(self):
        if isinstance(self._outcome, BaseException):
            raise self._outcome
        return self._outcome

    async def __aexit__(self, *exc):
        return False


class FakeSession:
    """Records (method, url, json) and answers from ``responses`` by URL."""

    def __init__(self):
        self.calls = []
        self.responses = {}
        self.closed = False

    def _request(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs.get("json")))
        outcome = self.responses.get(url, FakeResponse(200, ""))
        return _FakeRequest(outcome)

    def get(self, url, **kwargs):
        return self._request("GET", url, **kwargs)

    def post(self, url, **kwargs):
        return self._request("POST", url, **kwargs)

    async def close(self):
        self.closed = True


def devices_object(devices) -> dict:
    text = devices if isinstance(devices, str) else json.dumps(devices)
    return {"type": "config", "common": {"default": text}, "native": {}}


@pytest.fixture(autouse=True)
def empty_config(monkeypatch):
    """Never read a config file from disk during tests."""
    monkeypatch.setattr(config, "_config", {})
    monkeypatch.delenv("NOTIFY_SOCKET", raising=False)


@pytest.fixture
def store():
    return MemoryStateStore()


@pytest.fixture
def session():
    return FakeSession()
