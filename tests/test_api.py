import pytest
from fastapi.testclient import TestClient

from program_search.api import app
from program_search.cache import CacheStore, set_store

client = TestClient(app)


@pytest.fixture(autouse=True)
def _reset_store():
    yield
    set_store(None)


@pytest.fixture
def warm_store(store):
    set_store(store)
    return store


def test_health():
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "healthy"}


def test_search_envelope(warm_store):
    r = client.post("/search", json={"page_size": 10})
    assert r.status_code == 200
    body = r.json()
    assert body["success"] is True
    assert body["data"]["total_count"] == 2
    assert [item["program"]["id"] for item in body["data"]["results"]] == ["201", "203"]
    assert body["meta"]["request_id"].startswith("search-")
    assert "processing_time_ms" in body["meta"]


def test_search_with_filters_and_query(warm_store):
    r = client.post(
        "/search",
        json={
            "query": "overnight",
            "program_type": "Camp",
            "filters": {
                "operator": "AND",
                "filters": [{"field": "weeks", "operator": "between", "value": [2, 3]}],
            },
        },
    )
    assert r.status_code == 200
    data = r.json()["data"]
    assert [item["program"]["id"] for item in data["results"]] == ["201"]
    assert data["results"][0]["matching_session_count"] == 2
    assert data["applied_filters"][0]["display_value"] == "2 - 3"


def test_search_schema_violation_is_422(warm_store):
    r = client.post("/search", json={"page": 0})
    assert r.status_code == 422
    body = r.json()
    assert body["success"] is False
    assert body["error"]["code"] == "INVALID_REQUEST"


def test_search_bad_filter_shape_is_422(warm_store):
    r = client.post(
        "/search",
        json={"filters": {"filters": [{"field": "weeks", "operator": "in"}]}},
    )
    assert r.status_code == 422
    assert r.json()["error"]["code"] == "INVALID_REQUEST"


def test_search_unknown_filter_field_is_422(warm_store):
    r = client.post(
        "/search",
        json={"filters": {"filters": [{"field": "no_such_field", "operator": "eq", "value": "x"}]}},
    )
    assert r.status_code == 422
    assert r.json()["error"]["code"] == "INVALID_REQUEST"
    assert "no_such_field" in r.json()["error"]["message"]


def test_search_while_cache_loading_is_503(live_store, fake_crm, monkeypatch):
    monkeypatch.setenv("HUBSPOT_ACCESS_TOKEN", "server-token")
    fake_crm.object_status = 500
    set_store(live_store)

    r = client.post("/search", json={})
    assert r.status_code == 503
    assert r.json()["error"]["code"] == "CACHE_LOADING"


def test_search_without_server_token_is_500(monkeypatch):
    monkeypatch.delenv("HUBSPOT_ACCESS_TOKEN", raising=False)
    set_store(CacheStore())

    r = client.post("/search", json={})
    assert r.status_code == 500
    assert r.json()["error"]["code"] == "MISSING_CREDENTIALS"


def test_schema_for_program_type():
    r = client.get("/schema", params={"programType": "Experience"})
    assert r.status_code == 200
    data = r.json()["data"]
    facetable = {f["field"] for f in data["facetableFields"]}
    assert "experience_subtype" in facetable
    assert "primary_camp_type" not in facetable
    assert data["config"]["filters"]["primaryFilter"] == "program_type"


def test_cache_stats(warm_store):
    r = client.get("/cache")
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["programs_count"] == 3
    assert data["programs_with_sessions"] == 2
    assert data["is_stale"] is False


def test_cache_refresh_requires_bearer_token():
    r = client.post("/cache/refresh")
    assert r.status_code == 401
    assert r.json()["error"]["code"] == "UNAUTHORIZED"

    r = client.post("/cache/refresh", headers={"Authorization": "Basic abc"})
    assert r.status_code == 401


def test_full_cache_refresh_uses_caller_token(live_store, fake_crm):
    set_store(live_store)

    r = client.post("/cache/refresh", params={"full": "true"}, headers={"Authorization": "Bearer caller-token"})
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["programs_count"] == 3
    assert data["programs_with_sessions"] == 2
    assert data["programs_with_partner"] == 3
    assert {req.headers["Authorization"] for req in fake_crm.requests} == {"Bearer caller-token"}


def test_cache_refresh_failure_is_500(live_store, fake_crm):
    fake_crm.object_status = 500
    set_store(live_store)

    r = client.post("/cache/refresh", params={"full": "true"}, headers={"Authorization": "Bearer t"})
    assert r.status_code == 500
    assert r.json()["error"]["code"] == "REFRESH_FAILED"
