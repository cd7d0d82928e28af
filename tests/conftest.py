import json

import pytest
from requests.structures import CaseInsensitiveDict

from update_stats import API_ROOT, Config, GitHubClient


class FakeResp:
    def __init__(self, payload=None, status_code=200, headers=None):
        self.payload = payload
        self.status_code = status_code
        self.headers = CaseInsensitiveDict(headers or {})
        self.text = "" if payload is None else json.dumps(payload)

    def json(self):
        if self.payload is None:
            raise ValueError("No JSON body")
        return self.payload


class FakeSession:
    """Routes GET paths (relative to the API root) to canned responses.

    A route value is a FakeResp, an exception instance to raise, or a
    callable taking the query params and returning either.
    """

    def __init__(self, routes):
        self.routes = routes
        self.headers = {}
        self.calls = []

    def get(self, url, params=None, timeout=None):
        path = url[len(API_ROOT):]
        self.calls.append((path, dict(params or {})))
        handler = self.routes.get(path)
        if handler is None:
            return FakeResp({"message": "Not Found"}, status_code=404)
        if callable(handler):
            handler = handler(params or {})
        if isinstance(handler, Exception):
            raise handler
        return handler


@pytest.fixture
def fake_resp():
    return FakeResp


@pytest.fixture
def make_client():
    def factory(routes, **config):
        config.setdefault("login", "octo")
        session = FakeSession(routes)
        return GitHubClient(Config(**config), session=session), session
    return factory
