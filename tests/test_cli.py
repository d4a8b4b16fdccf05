import json

import pytest

from program_search import cli
from program_search.cache import CacheStore


@pytest.fixture
def offline_cli(store, monkeypatch):
    monkeypatch.setenv("HUBSPOT_ACCESS_TOKEN", "t")
    monkeypatch.setattr(cli, "_load_store", lambda token: store)
    return store


def test_sessions_frame(store):
    df = cli.sessions_frame(store)
    assert list(df.columns[:6]) == ["program_id", "program_name", "program_type", "partner_id", "partner_name", "session_id"]
    # one row per session, one row for the childless program
    assert len(df) == 4
    childless = df[df["program_id"] == "202"]
    assert len(childless) == 1
    assert childless["session_id"].isna().all()
    p1 = df[df["program_id"] == "201"]
    assert list(p1["session_id"]) == ["301", "302"]
    assert list(p1["tuition"]) == [4500.0, 3000.0]


def test_coverage_frame(store):
    df = cli.coverage_frame(store)
    assert df.loc["Camp", "programs"] == 2
    assert df.loc["Camp", "with_sessions"] == 1
    assert df.loc["Experience", "with_partner"] == 1
    assert list(df.index) == ["Camp", "Experience"]


def test_coverage_frame_empty():
    df = cli.coverage_frame(CacheStore())
    assert df.empty


def test_search_command_prints_response(offline_cli, capsys):
    code = cli.main(["search", "--query", "adventures"])
    assert code == 0
    out = json.loads(capsys.readouterr().out)
    assert out["total_count"] == 1
    assert out["results"][0]["program"]["id"] == "203"


def test_search_command_inline_filters(offline_cli, capsys):
    filters = json.dumps({"filters": [{"field": "start_date", "operator": "gte", "value": "2025-06-01"}]})
    assert cli.main(["search", "--filters", filters, "--program-type", "Camp"]) == 0
    out = json.loads(capsys.readouterr().out)
    assert [r["program"]["id"] for r in out["results"]] == ["201"]
    assert out["results"][0]["matching_session_count"] == 1


def test_export_command_writes_csv(offline_cli, tmp_path, capsys):
    target = tmp_path / "out" / "sessions.csv"
    assert cli.main(["export", "--out", str(target)]) == 0
    assert target.exists()
    assert target.read_text(encoding="utf-8").splitlines()[0].startswith("program_id,program_name")
    assert "Wrote 4 rows" in capsys.readouterr().out
