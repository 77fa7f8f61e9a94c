"""Test doubles for the HTTP session, the clock and image payloads."""

from __future__ import annotations

import json
from io import BytesIO
from typing import Any, Dict, List, Optional, Tuple

from PIL import Image


class FakeClock:
    """Monotonic clock whose sleep() just moves time forward."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeResponse:
    def __init__(self, status_code: int = 200, body: Any = None, content: Optional[bytes] = None):
        if content is None:
            content = json.dumps(body).encode() if body is not None else b""
        self.status_code = status_code
        self.content = content

    def json(self) -> Any:
        return json.loads(self.content)


class FakeSession:
    """Replays queued responses for request() and get() separately.

    Queue items may be FakeResponse objects or exceptions to raise.
    ``latency`` advances the clock on every call to simulate slow responses.
    """

    def __init__(self, clock: Optional[FakeClock] = None, latency: float = 0.0) -> None:
        self.clock = clock
        self.latency = latency
        self.responses: List[Any] = []
        self.downloads: List[Any] = []
        self.calls: List[Dict[str, Any]] = []
        self.get_calls: List[Tuple[str, Dict[str, Any]]] = []

    def request(self, method: str, url: str, data=None, headers=None, timeout=None):
        self.calls.append({
            "method": method,
            "url": url,
            "body": json.loads(data) if data else None,
            "headers": headers or {},
            "at": self.clock() if self.clock else None,
        })
        return self._next(self.responses)

    def get(self, url: str, **kwargs):
        self.get_calls.append((url, kwargs))
        return self._next(self.downloads)

    def _next(self, queue: List[Any]):
        if self.clock and self.latency:
            # not a sleep: only pacing and backoff waits land in clock.sleeps
            self.clock.now += self.latency
        if not queue:
            raise AssertionError("unexpected HTTP call")
        item = queue.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item

    def posts_to(self, path: str) -> List[Dict[str, Any]]:
        return [c for c in self.calls if c["url"].endswith(path)]


def png_bytes(size: Tuple[int, int] = (64, 64), color=(200, 30, 30)) -> bytes:
    buf = BytesIO()
    Image.new("RGB", size, color).save(buf, "PNG")
    return buf.getvalue()


def chat_response(content: str, prompt_tokens: int = 1200, completion_tokens: int = 20) -> FakeResponse:
    return FakeResponse(200, {
        "choices": [{"message": {"role": "assistant", "content": content}}],
        "usage": {"prompt_tokens": prompt_tokens, "completion_tokens": completion_tokens},
    })


def image_response(url: str) -> FakeResponse:
    return FakeResponse(200, {"created": 1, "data": [{"url": url}]})


def error_response(status: int, message: str, **extra: Any) -> FakeResponse:
    return FakeResponse(status, {"error": {"message": message, **extra}})


def rate_limited() -> FakeResponse:
    return error_response(429, "Rate limit reached for images per minute", type="requests")
