"""Shared fixtures: a fake aiohttp client standing in for the Azure backend."""

from __future__ import annotations

from typing import Any

import pytest
from httpx import ASGITransport, AsyncClient

from azure_proxy import routes
from azure_proxy.app import create_app
from azure_proxy.config import ProxySettings
from helpers import FakeClient


@pytest.fixture
def settings() -> ProxySettings:
    return ProxySettings(
        azure_endpoint="https://example.openai.azure.com/",
        azure_api_key="test-key",
        azure_deployment="gpt5-deploy",
    )


@pytest.fixture(autouse=True)
def token_estimates(monkeypatch):
    # tiktoken fetches encodings over the network; route tests only need a number.
    calls = []

    def count(req, backend_model=None, encoding_name=None):
        calls.append((backend_model, encoding_name))
        return 0

    monkeypatch.setattr(routes, "count_request_tokens", count)
    monkeypatch.setattr(routes, "RETRY_BACKOFF_BASE", 0)
    return calls


@pytest.fixture
def make_client(settings):
    """Return a factory producing (httpx client, fake backend) pairs."""

    def _make(*responses: Any):
        app = create_app(settings)
        backend = FakeClient(*responses)
        app.state.http_client = backend
        transport = ASGITransport(app=app)
        return AsyncClient(transport=transport, base_url="http://test"), backend

    return _make
