import asyncio
from types import SimpleNamespace

import aiohttp


class FakeResponse:
    """Minimal stand-in for aiohttp.ClientResponse."""

    def __init__(self, status=200, payload=None, delay=0.0, before=None):
        self.status = status
        self._payload = payload
        self._delay = delay
        self._before = before

    async def __aenter__(self):
        if self._before is not None:
            await self._before()
        if self._delay:
            await asyncio.sleep(self._delay)
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    def __await__(self):
        return self.__aenter__().__await__()

    def raise_for_status(self):
        if self.status >= 400:
            raise aiohttp.ClientResponseError(
                request_info=SimpleNamespace(real_url="https://pds.invalid"), history=(), status=self.status
            )

    async def json(self):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


class FakeSession:
    """
    Minimal stand-in for aiohttp.ClientSession.

    routes maps a handle (the 'handle' query parameter) to a FakeResponse or to
    an exception raised when the request is made.
    """

    def __init__(self, routes=None, post_response=None):
        self.routes = routes or {}
        self.post_response = post_response or FakeResponse(payload={})
        self.calls = []
        self.posts = []
        self.closed = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.closed = True
        return False

    def get(self, url, params=None):
        self.calls.append((url, params))
        route = self.routes[params["handle"]]
        if isinstance(route, Exception):
            raise route
        return route

    def post(self, url, headers=None, json=None, **kwargs):
        self.posts.append({"url": url, "headers": headers, "json": json})
        return self.post_response
