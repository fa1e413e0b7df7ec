"""Pytest configuration for portal-ask tests."""

import dataclasses
from collections.abc import Callable
from types import SimpleNamespace

import httpx
import pytest

from portal_ask import config
from portal_ask.config import AskSettings
from portal_ask.sse import DONE_FRAME, encode_event
from portal_ask.transport import AskTransport


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Keep tests away from ~/.portal-ask and the caller's environment."""
    data_dir = tmp_path / "data"
    monkeypatch.setattr(config, "DATA_DIR", data_dir)
    monkeypatch.setattr(config, "ENV_PATH", data_dir / ".env")
    for name in ("BOLD_API_KEY", "BACKEND_URL", "ASK_TIMEOUT", "ASK_DEEP_TIMEOUT", "LOG_LEVEL"):
        # setenv first so anything written to os.environ later is undone too
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)
    return data_dir


@pytest.fixture
def settings():
    """Settings pointing at a fake backend, with no fallback replay delay."""
    return AskSettings(
        api_key="test-key",
        backend_url="https://api.example.com",
        timeout=5.0,
        deep_timeout=10.0,
        chunk_delay=0,
    )


def sse_body(*events, done: bool = True) -> bytes:
    """Encode events as an event-stream body."""
    body = b"".join(encode_event(e) for e in events)
    return body + DONE_FRAME if done else body


def sse_response(*events, done: bool = True) -> httpx.Response:
    return httpx.Response(
        200,
        headers={"content-type": "text/event-stream"},
        content=sse_body(*events, done=done),
    )


@pytest.fixture
def make_transport(settings) -> Callable[..., AskTransport]:
    """Build an AskTransport whose HTTP calls go to ``handler``."""

    def factory(handler, **overrides) -> AskTransport:
        transport_settings = dataclasses.replace(settings, **overrides)
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return AskTransport(transport_settings, client=client)

    return factory


@pytest.fixture
def sse():
    """Helpers for building event-stream responses."""
    return SimpleNamespace(body=sse_body, response=sse_response)


SOURCES = [
    {
        "id": "c_intro",
        "videoId": "vid-1",
        "title": "Intro to Pricing",
        "timestamp": "01:05",
        "timestampEnd": "01:40",
        "text": "Price on value, not cost.",
        "playbackId": "pb-1",
        "speaker": "Ada",
    },
    {
        "id": "c_churn",
        "videoId": "vid-2",
        "title": "Reducing Churn",
        "timestamp": 433,
        "timestamp_end": 470,
        "text": "Onboarding is where churn starts.",
        "playback_id": "pb-2",
        "speaker": "Grace",
    },
    {
        "id": "c_hiring",
        "video_id": "vid-3",
        "title": "Hiring Early",
        "timestamp": 3725,
        "text": "Hire for slope, not intercept.",
    },
]


@pytest.fixture
def wire_sources():
    """Three upstream source records in mixed wire casing."""
    return [dict(s) for s in SOURCES]
