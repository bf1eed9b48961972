import asyncio

import aiohttp
import pytest

import bluesky_handles
from bluesky_handles import RESOLVE_HANDLE_ENDPOINT, resolve_handles
from conftest import FakeResponse, FakeSession

PDS_URL = "https://pds.invalid"


@pytest.mark.asyncio
async def test_resolve_handles_success_and_not_found(capsys):
    session = FakeSession({
        "a.bsky.social": FakeResponse(payload={"did": "did:plc:1"}),
        "b.bsky.social": FakeResponse(status=400, payload={"error": "InvalidRequest"}),
    })

    result = await resolve_handles({"a.bsky.social", "b.bsky.social"}, PDS_URL, session=session)

    assert result == {"a.bsky.social": "did:plc:1", "b.bsky.social": None}
    assert "'b.bsky.social' could not be resolved (not_found)" in capsys.readouterr().err


@pytest.mark.asyncio
async def test_resolve_handles_requests_each_unique_handle_once():
    session = FakeSession({
        "a.bsky.social": FakeResponse(payload={"did": "did:plc:1"}),
        "b.bsky.social": FakeResponse(payload={"did": "did:plc:2"}),
    })

    result = await resolve_handles(
        ["a.bsky.social", "b.bsky.social", "a.bsky.social"], PDS_URL + "/", session=session
    )

    assert result == {"a.bsky.social": "did:plc:1", "b.bsky.social": "did:plc:2"}
    assert session.calls == [
        (PDS_URL + RESOLVE_HANDLE_ENDPOINT, {"handle": "a.bsky.social"}),
        (PDS_URL + RESOLVE_HANDLE_ENDPOINT, {"handle": "b.bsky.social"}),
    ]


@pytest.mark.asyncio
async def test_resolve_handles_empty_input():
    assert await resolve_handles(set(), PDS_URL) == {}


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response, reason",
    [
        (FakeResponse(status=500, payload={}), "http_error"),
        (FakeResponse(status=401, payload={}), "http_error"),
        (FakeResponse(payload=ValueError("Expecting value")), "malformed"),
        (FakeResponse(payload={"handle": "a.bsky.social"}), "malformed"),
        (FakeResponse(payload=["did:plc:1"]), "malformed"),
        (aiohttp.ClientConnectionError("connection refused"), "network"),
    ],
)
async def test_resolve_handles_failures_map_to_none(capsys, response, reason):
    session = FakeSession({
        "a.bsky.social": response,
        "ok.bsky.social": FakeResponse(payload={"did": "did:plc:ok"}),
    })

    result = await resolve_handles(["a.bsky.social", "ok.bsky.social"], PDS_URL, session=session)

    assert result == {"a.bsky.social": None, "ok.bsky.social": "did:plc:ok"}
    assert f"({reason})" in capsys.readouterr().err


@pytest.mark.asyncio
async def test_resolve_handles_timeout_only_affects_slow_handle(capsys):
    session = FakeSession({
        "slow.bsky.social": FakeResponse(payload={"did": "did:plc:slow"}, delay=5),
        "fast.bsky.social": FakeResponse(payload={"did": "did:plc:fast"}),
    })

    result = await resolve_handles(["slow.bsky.social", "fast.bsky.social"], PDS_URL, session=session, timeout=0.05)

    assert result == {"slow.bsky.social": None, "fast.bsky.social": "did:plc:fast"}
    assert "(timeout)" in capsys.readouterr().err


@pytest.mark.asyncio
async def test_resolve_handles_runs_lookups_concurrently():
    second_started = asyncio.Event()

    async def wait_for_second():
        await second_started.wait()

    async def mark_second_started():
        second_started.set()

    session = FakeSession({
        "a.bsky.social": FakeResponse(payload={"did": "did:plc:1"}, before=wait_for_second),
        "b.bsky.social": FakeResponse(payload={"did": "did:plc:2"}, before=mark_second_started),
    })

    # The first lookup can only finish once the second one has started.
    result = await asyncio.wait_for(
        resolve_handles(["a.bsky.social", "b.bsky.social"], PDS_URL, session=session, timeout=None),
        timeout=2,
    )

    assert result == {"a.bsky.social": "did:plc:1", "b.bsky.social": "did:plc:2"}


@pytest.mark.asyncio
async def test_resolve_handles_opens_and_closes_its_own_session(monkeypatch):
    session = FakeSession({"a.bsky.social": FakeResponse(payload={"did": "did:plc:1"})})
    monkeypatch.setattr(bluesky_handles.aiohttp, "ClientSession", lambda: session)

    result = await resolve_handles(["a.bsky.social"], PDS_URL)

    assert result == {"a.bsky.social": "did:plc:1"}
    assert session.closed


@pytest.mark.asyncio
async def test_resolve_handles_unexpected_error_only_affects_its_handle(capsys):
    session = FakeSession({
        "a.bsky.social": RuntimeError("Session is closed"),
        "ok.bsky.social": FakeResponse(payload={"did": "did:plc:ok"}),
    })

    result = await resolve_handles(["a.bsky.social", "ok.bsky.social"], PDS_URL, session=session)

    assert result == {"a.bsky.social": None, "ok.bsky.social": "did:plc:ok"}
    assert "'a.bsky.social' (error): Session is closed" in capsys.readouterr().err
