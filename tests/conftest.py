"""
Shared fixtures for the program search tests.

Two views of the same small data set are provided:

* ``make_snapshot()`` builds an already-parsed in-memory ``Snapshot``
  (2 partners, 3 programs, 3 sessions) for filter, facet, ranking and
  search tests.
* ``FakeCrm`` serves the same records as raw CRM payloads through
  ``httpx.MockTransport`` for fetcher and cache refresh tests.

P1 (Camp) -> partner A, sessions S1 (2025-06-10) and S2 (2025-05-15)
P2 (Camp) -> partner A, no sessions
P3 (Experience) -> partner B, session S3 (no start date)
"""

import asyncio
import json
from typing import Dict, List

import httpx
import pytest

from program_search.cache import CacheStore, Entity, Snapshot
from program_search.config import SCHEMA_DIR
from program_search.crm_fetch import _http_client
from program_search.schema_registry import SchemaRegistry, set_registry

PARTNER_TYPE = "companies"
PROGRAM_TYPE = "2-50911446"
SESSION_TYPE = "2-50911450"


# Registry
@pytest.fixture(scope="session")
def registry() -> SchemaRegistry:
    reg = SchemaRegistry(SCHEMA_DIR)
    reg.load()
    return reg


@pytest.fixture(autouse=True)
def _process_registry(registry):
    set_registry(registry)
    yield
    set_registry(None)


# In-memory snapshot
def make_snapshot() -> Snapshot:
    partners = {
        "101": Entity(
            "101",
            {
                "name": "Lakeside Camps Inc",
                "country_hq": "United States",
                "us_state": "ME",
                "vibe": "Traditional;Outdoorsy",
                "four_sentence_summary_for_parents": "A classic lakeside summer camp in Maine.",
            },
        ),
        "102": Entity(
            "102",
            {
                "name": "Summit Adventures",
                "country_hq": "Canada",
                "us_state": None,
                "vibe": "Outdoorsy",
                "four_sentence_summary_for_parents": "Mountain travel programs for teens.",
            },
        ),
    }
    programs = {
        "201": Entity(
            "201",
            {
                "program_name": "Lakeside Overnight Camp",
                "program_type": "Camp",
                "region": "Northeast",
                "primary_camp_type": "Overnight",
                "camp_subtype": "Traditional;Sports",
                "accommodations": "Cabins",
                "description": "<p>Sleepaway camp on <b>Long Lake</b>.</p>",
            },
        ),
        "202": Entity(
            "202",
            {
                "program_name": "Lakeside Day Camp",
                "program_type": "Camp",
                "region": "Northeast",
                "primary_camp_type": "Day",
                "camp_subtype": "Traditional",
                "description": "Day camp for younger campers.",
            },
        ),
        "203": Entity(
            "203",
            {
                "program_name": "Summit Alpine Trek",
                "program_type": "Experience",
                "region": "West",
                "experience_subtype": "Travel;Leadership",
                "accommodations": "Tents;Homestay",
                "description": "Three weeks hiking the Alps.",
            },
        ),
    }
    sessions = {
        "301": Entity(
            "301",
            {
                "session_name": "Full Summer",
                "start_date": "2025-06-10",
                "end_date": "2025-07-01",
                "weeks": 3.0,
                "age__min_": 8.0,
                "age__max_": 14.0,
                "tuition__current_": 4500.0,
                "tuition_currency": "USD",
                "sport_options": "Soccer;Swimming",
            },
        ),
        "302": Entity(
            "302",
            {
                "session_name": "Early Session",
                "start_date": "2025-05-15",
                "end_date": "2025-06-01",
                "weeks": 2.0,
                "age__min_": None,
                "age__max_": 12.0,
                "tuition__current_": 3000.0,
                "tuition_currency": "USD",
                "sport_options": "Soccer;Horseback Riding",
            },
        ),
        "303": Entity(
            "303",
            {
                "session_name": "Alpine Trek",
                "start_date": None,
                "end_date": None,
                "weeks": 1.0,
                "age__min_": 13.0,
                "age__max_": 17.0,
                "tuition__current_": 12000.0,
                "tuition_currency": "CAD",
                "locations": "Swiss Alps; Chamonix",
            },
        ),
    }
    return Snapshot(
        partners=partners,
        programs=programs,
        sessions=sessions,
        program_to_partner={"201": "101", "202": "101", "203": "102"},
        program_to_sessions={"201": ["301", "302"], "203": ["303"]},
    )


@pytest.fixture
def snapshot() -> Snapshot:
    return make_snapshot()


@pytest.fixture
def store(registry, snapshot) -> CacheStore:
    s = CacheStore(registry=registry)
    s.load_snapshot(snapshot)
    return s


# Fake CRM upstream
RAW_OBJECTS: Dict[str, List[dict]] = {
    PARTNER_TYPE: [
        {"id": "101", "properties": {"name": "Lakeside Camps Inc", "country_hq": "United States", "us_state": "ME"}},
        {"id": "102", "properties": {"name": "Summit Adventures", "country_hq": "Canada", "us_state": ""}},
    ],
    PROGRAM_TYPE: [
        {
            "id": "201",
            "properties": {"program_name": "Lakeside Overnight Camp", "recordtype_name": "Camp", "region__c": "Northeast"},
            "createdAt": "2024-01-05T10:00:00Z",
            "updatedAt": "2024-11-01T09:30:00Z",
        },
        {"id": "202", "properties": {"program_name": "Lakeside Day Camp", "recordtype_name": "camp", "region__c": "Northeast"}},
        {"id": "203", "properties": {"program_name": "Summit Alpine Trek", "recordtype_name": "Experience", "region__c": "West"}},
    ],
    SESSION_TYPE: [
        {"id": "301", "properties": {"session_name": "Full Summer", "start_date__c": "2025-06-10", "age_range_min__c": "8", "weeks": "3"}},
        {"id": "302", "properties": {"session_name": "Early Session", "start_date__c": "2025-05-15", "age_range_min__c": ""}},
        {"id": "303", "properties": {"session_name": "Alpine Trek", "start_date__c": None, "tuition_current": "12000"}},
    ],
}


class FakeCrm:
    """Async ``httpx.MockTransport`` handler serving objects and associations."""

    def __init__(self) -> None:
        self.objects = {k: list(v) for k, v in RAW_OBJECTS.items()}
        self.partner_links: Dict[str, List[str]] = {"201": ["101"], "202": ["101"], "203": ["102"]}
        self.session_links: Dict[str, List[str]] = {"201": ["301", "302"], "203": ["303"]}
        self.object_status = 200
        self.association_status = 200
        self.delay = 0.0
        self.requests: List[httpx.Request] = []

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        path = request.url.path

        if request.method == "GET" and path.startswith("/crm/v3/objects/"):
            if self.object_status != 200:
                return httpx.Response(self.object_status, text="upstream unavailable")
            object_type = path.rsplit("/", 1)[-1]
            return httpx.Response(200, json={"results": self.objects.get(object_type, [])})

        if request.method == "POST" and path.startswith("/crm/v4/associations/"):
            if self.association_status != 200:
                return httpx.Response(self.association_status, text="nope")
            to_type = path.split("/")[5]
            links = self.partner_links if to_type == PARTNER_TYPE else self.session_links
            ids = [item["id"] for item in json.loads(request.content)["inputs"]]
            results = [
                {"from": {"id": i}, "to": [{"toObjectId": int(t), "associationTypes": []} for t in links[i]]}
                for i in ids
                if i in links
            ]
            return httpx.Response(200, json={"status": "COMPLETE", "results": results})

        return httpx.Response(404, text="not found")

    def client_factory(self, token: str) -> httpx.AsyncClient:
        return _http_client(token, transport=httpx.MockTransport(self))


async def _no_sleep(delay: float) -> None:
    return None


@pytest.fixture
def fake_crm() -> FakeCrm:
    return FakeCrm()


@pytest.fixture
def live_store(registry, fake_crm) -> CacheStore:
    """Empty store wired to the fake CRM, with association delays disabled."""
    return CacheStore(registry=registry, client_factory=fake_crm.client_factory, sleep=_no_sleep)
