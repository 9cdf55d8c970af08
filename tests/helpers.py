"""Shared test doubles: a fake clock and a routing MockTransport handler."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any, Union

import httpx

SPEECH_BASE = "https://eastus.api.cognitive.microsoft.com/speechtotext/v3.1"
BLOB_BASE = "https://acct.blob.core.windows.net/audio"
JOB_URL = f"{SPEECH_BASE}/transcriptions/remote-1"
FILES_URL = f"{JOB_URL}/files"
CONTENT_URL = "https://results.example.com/remote-1/transcript.json"
OPENAI_URL = "https://api.openai.com/v1/audio/transcriptions"

# base64("secret-key")
STORAGE_KEY = "c2VjcmV0LWtleQ=="

Handler = Union[httpx.Response, list, Callable[[httpx.Request], httpx.Response]]


class FakeClock:
    """Monotonic clock that only moves when something sleeps on it."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


class MockRemote:
    """Routes requests to canned responses by method and URL prefix.

    The first registered route whose prefix matches wins. A list handler is
    consumed in order and its last response repeats.
    """

    def __init__(self) -> None:
        self.routes: list[tuple[str, str, Handler]] = []
        self.requests: list[httpx.Request] = []

    def add(self, method: str, url_prefix: str, handler: Handler) -> None:
        self.routes.append((method.upper(), url_prefix, handler))

    def calls(self, method: str, url_prefix: str) -> list[httpx.Request]:
        return [
            r for r in self.requests
            if r.method == method.upper() and bare_url(r).startswith(url_prefix)
        ]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = bare_url(request)
        for method, prefix, handler in self.routes:
            if request.method == method and url.startswith(prefix):
                if isinstance(handler, list):
                    return _fresh(handler.pop(0) if len(handler) > 1 else handler[0])
                if isinstance(handler, httpx.Response):
                    return _fresh(handler)
                return handler(request)
        return httpx.Response(404, json={"error": {"message": f"No route for {request.method} {url}"}})


def bare_url(request: httpx.Request) -> str:
    return f"{request.url.scheme}://{request.url.host}{request.url.path}"


def job_status(status: str, **extra: Any) -> httpx.Response:
    """A batch job status document as the speech service returns it."""
    body = {"self": JOB_URL, "status": status, "links": {"files": FILES_URL}}
    body.update(extra)
    return httpx.Response(200, json=body)


def _fresh(response: httpx.Response) -> httpx.Response:
    # A Response is bound to one request; canned ones are copied per call
    return httpx.Response(response.status_code, headers=response.headers, content=response.content)
