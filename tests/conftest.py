"""Shared fixtures for cli-code tests."""

import json
import os
from unittest.mock import MagicMock

import pytest
import requests

from cli_code.config import Config, ModelSelection


@pytest.fixture
def tmp_dir(tmp_path):
    """Provide a temporary directory and cd into it."""
    orig = os.getcwd()
    os.chdir(tmp_path)
    yield tmp_path
    os.chdir(orig)


@pytest.fixture
def config(tmp_path):
    """A logged-in config that saves into tmp_path instead of the home directory."""
    cfg = Config(
        access_token="access-1",
        refresh_token="refresh-1",
        selected_model=ModelSelection(provider="anthropic", model="claude-test"),
        worker_url="http://worker.test",
        backend_url="http://backend.test",
    )
    cfg._config_source = str(tmp_path / "config.yml")
    return cfg


class FakeResponse:
    """Just enough of ``requests.Response`` for the chat and auth clients."""

    def __init__(self, status=200, chunks=(), body=None):
        self.status_code = status
        self._chunks = list(chunks)
        self._body = body
        self.closed = False

    @property
    def ok(self):
        return self.status_code < 400

    def iter_content(self, chunk_size=None):
        for chunk in self._chunks:
            if self.closed:
                return
            yield chunk.encode("utf-8") if isinstance(chunk, str) else chunk

    def json(self):
        if self._body is None:
            raise ValueError("no JSON body")
        return self._body

    def raise_for_status(self):
        if not self.ok:
            raise requests.HTTPError(f"{self.status_code}")

    def close(self):
        self.closed = True


def ndjson(*events):
    """Encode events as one NDJSON chunk per event."""
    return [json.dumps(e) + "\n" for e in events]


class FakeSession:
    """Replays queued responses and records every request."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def _next(self, method, url, kwargs):
        self.calls.append((method, url, kwargs))
        if not self.responses:
            raise AssertionError(f"unexpected {method} {url}")
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def post(self, url, **kwargs):
        return self._next("POST", url, kwargs)

    def get(self, url, **kwargs):
        return self._next("GET", url, kwargs)


@pytest.fixture
def mock_console():
    """A mock Rich Console that silently accepts all print calls."""
    c = MagicMock()
    c.print = MagicMock()
    c.input = MagicMock(return_value="n")
    return c
