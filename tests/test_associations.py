import json
from typing import List

import httpx
import pytest

from program_search.associations import _chunks, _parse_links, fetch_links, retry_delay
from program_search.crm_fetch import _http_client


class Sleeps:
    def __init__(self) -> None:
        self.calls: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.calls.append(delay)


def _client(handler) -> httpx.AsyncClient:
    return _http_client("t", transport=httpx.MockTransport(handler))


def _echo_links(request: httpx.Request) -> httpx.Response:
    ids = [item["id"] for item in json.loads(request.content)["inputs"]]
    return httpx.Response(
        200,
        json={"results": [{"from": {"id": i}, "to": [{"toObjectId": int(i) + 1000}]} for i in ids]},
    )


def test_chunks():
    assert _chunks(["a", "b", "c"], 2) == [["a", "b"], ["c"]]
    assert _chunks([], 50) == []


def test_parse_links_skips_empty_and_dedupes():
    payload = {
        "results": [
            {"from": {"id": 1}, "to": [{"toObjectId": 10}, {"toObjectId": 10}, {"toObjectId": 11}]},
            {"from": {"id": "2"}, "to": []},
            {"from": {}, "to": [{"toObjectId": 12}]},
        ]
    }
    assert _parse_links(payload) == {"1": ["10", "11"]}


def test_retry_delay():
    assert [retry_delay(429, r) for r in range(4)] == [2.0, 4.0, 8.0, 16.0]
    assert retry_delay(500, 3) == 2.0
    assert retry_delay(None, 0) == 2.0


@pytest.mark.asyncio
async def test_batches_of_fifty_with_delay_between_batches():
    bodies = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return _echo_links(request)

    sleeps = Sleeps()
    ids = [str(i) for i in range(120)]
    seen_batches = []

    async with _client(handler) as client:
        links = await fetch_links(
            client,
            "2-50911446",
            "companies",
            ids,
            sleep=sleeps,
            on_batch=lambda batch, batch_links: seen_batches.append((len(batch), len(batch_links))),
        )

    assert [len(b["inputs"]) for b in bodies] == [50, 50, 20]
    assert bodies[0]["inputs"][0] == {"id": "0"}
    # delay only between batches
    assert sleeps.calls == [0.25, 0.25]
    assert seen_batches == [(50, 50), (50, 50), (20, 20)]
    assert len(links) == 120
    assert links["7"] == ["1007"]


@pytest.mark.asyncio
async def test_rate_limit_backs_off_exponentially_then_succeeds():
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        if calls["n"] <= 3:
            return httpx.Response(429, text="slow down")
        return _echo_links(request)

    sleeps = Sleeps()
    async with _client(handler) as client:
        links = await fetch_links(client, "a", "b", ["1", "2"], sleep=sleeps)

    assert sleeps.calls == [2.0, 4.0, 8.0]
    assert links == {"1": ["1001"], "2": ["1002"]}


@pytest.mark.asyncio
async def test_other_failures_use_flat_delay():
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        if calls["n"] == 1:
            return httpx.Response(502, text="bad gateway")
        if calls["n"] == 2:
            raise httpx.ReadTimeout("timed out", request=request)
        return _echo_links(request)

    sleeps = Sleeps()
    async with _client(handler) as client:
        links = await fetch_links(client, "a", "b", ["5"], sleep=sleeps)

    assert sleeps.calls == [2.0, 2.0]
    assert links == {"5": ["1005"]}


@pytest.mark.asyncio
async def test_batch_skipped_after_max_attempts():
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        ids = [item["id"] for item in json.loads(request.content)["inputs"]]
        if ids[0] == "0":
            return httpx.Response(429)
        return _echo_links(request)

    sleeps = Sleeps()
    applied = []
    ids = [str(i) for i in range(60)]
    async with _client(handler) as client:
        links = await fetch_links(
            client, "a", "b", ids, sleep=sleeps, on_batch=lambda batch, bl: applied.append(batch[0])
        )

    # 5 attempts on the first batch, 1 on the second
    assert calls["n"] == 6
    # no sleep after the final attempt; then the inter-batch delay
    assert sleeps.calls == [2.0, 4.0, 8.0, 16.0, 0.25]
    assert applied == ["50"]
    assert sorted(links) == [str(i) for i in range(50, 60)]
