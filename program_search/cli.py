# program_search/cli.py
"""
Operator CLI for program search.

Commands:
- refresh     full two-phase refresh in-process, then print cache stats
- search      load the cache in-process and run one search (JSON out)
- export      load the cache and write a flat program/session CSV
- properties  list upstream CRM property definitions for one entity kind
- status      print cache stats from a running API
- diagnose    probe a running API: cache health plus result counts per program type

Commands that load the cache read the CRM token from HUBSPOT_ACCESS_TOKEN.
"""

from __future__ import annotations
import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Dict, List, Optional

import httpx
import pandas as pd
from loguru import logger

from .cache import CacheStore
from .config import (
    HTTP_CONNECT_TIMEOUT,
    HTTP_READ_TIMEOUT,
    HTTP_USER_AGENT,
    FilterGroup,
    SearchRequest,
    get_access_token,
)
from .crm_fetch import _http_client, fetch_property_definitions
from .schema_registry import ENTITY_KINDS, get_registry
from .search import run_search

DEFAULT_API_URL = "http://localhost:8000"


def _load_store(token: str) -> CacheStore:
    store = CacheStore()
    asyncio.run(store.refresh_full(token))
    return store


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False))


# ---------------------------
# Frames
# ---------------------------

def sessions_frame(store: CacheStore) -> pd.DataFrame:
    """
    One row per (program, session) pair; programs without sessions get a
    single row with empty session columns.
    """
    rows: List[Dict] = []
    for program in store.all_programs():
        partner = store.partner_for_program(program.id)
        base = {
            "program_id": program.id,
            "program_name": program.get("program_name"),
            "program_type": program.get("program_type"),
            "partner_id": partner.id if partner else None,
            "partner_name": partner.get("name") if partner else None,
        }
        sessions = store.sessions_for_program(program.id)
        if not sessions:
            rows.append({**base, "session_id": None})
            continue
        for s in sessions:
            rows.append(
                {
                    **base,
                    "session_id": s.id,
                    "session_name": s.get("session_name"),
                    "start_date": s.get("start_date"),
                    "end_date": s.get("end_date"),
                    "age_min": s.get("age__min_"),
                    "age_max": s.get("age__max_"),
                    "tuition": s.get("tuition__current_"),
                    "currency": s.get("tuition_currency"),
                }
            )
    cols = [
        "program_id",
        "program_name",
        "program_type",
        "partner_id",
        "partner_name",
        "session_id",
        "session_name",
        "start_date",
        "end_date",
        "age_min",
        "age_max",
        "tuition",
        "currency",
    ]
    df = pd.DataFrame(rows)
    for c in cols:
        if c not in df.columns:
            df[c] = None
    return df[cols]


def coverage_frame(store: CacheStore) -> pd.DataFrame:
    """Per program type: programs, programs with sessions, programs with a partner."""
    snap = store.snapshot
    df = pd.DataFrame(
        [
            {
                "program_type": p.get("program_type") or "(none)",
                "has_sessions": bool(snap.program_to_sessions.get(pid)),
                "has_partner": pid in snap.program_to_partner,
            }
            for pid, p in snap.programs.items()
        ],
        columns=["program_type", "has_sessions", "has_partner"],
    )
    if df.empty:
        return pd.DataFrame(columns=["programs", "with_sessions", "with_partner"])
    out = df.groupby("program_type").agg(
        programs=("has_sessions", "size"),
        with_sessions=("has_sessions", "sum"),
        with_partner=("has_partner", "sum"),
    )
    return out.sort_values("programs", ascending=False)


# ---------------------------
# Commands
# ---------------------------

def cmd_refresh(args) -> int:
    store = _load_store(get_access_token())
    _print_json(store.stats().model_dump(mode="json"))
    print(coverage_frame(store).to_string())
    return 0


def cmd_search(args) -> int:
    filters: Optional[FilterGroup] = None
    if args.filters:
        raw = args.filters
        if not raw.lstrip().startswith("{"):
            raw = Path(raw).read_text(encoding="utf-8")
        filters = FilterGroup.model_validate_json(raw)
    req = SearchRequest(
        query=args.query,
        program_type=args.program_type,
        filters=filters,
        page=args.page,
        page_size=args.page_size,
        include_empty_results=args.include_empty,
    )
    store = _load_store(get_access_token())
    resp = run_search(req, store)
    _print_json(resp.model_dump(mode="json"))
    return 0


def cmd_export(args) -> int:
    store = _load_store(get_access_token())
    df = sessions_frame(store)
    out = Path(args.out)
    out.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(out, index=False)
    print(f"Wrote {len(df)} rows to {out}")
    return 0


async def _properties(kind: str, token: str) -> List[Dict]:
    object_type = get_registry().upstream_object_type(kind)
    async with _http_client(token) as client:
        return await fetch_property_definitions(client, object_type)


def cmd_properties(args) -> int:
    defs = asyncio.run(_properties(args.kind, get_access_token()))
    df = pd.DataFrame(defs)
    cols = [c for c in ("name", "label", "type", "fieldType", "groupName") if c in df.columns]
    df = df[cols].sort_values("name") if "name" in cols else df
    if args.csv:
        df.to_csv(args.csv, index=False)
        print(f"Wrote {len(df)} properties to {args.csv}")
    else:
        print(df.to_string(index=False))
    return 0


def _api_client() -> httpx.Client:
    return httpx.Client(
        headers={"User-Agent": HTTP_USER_AGENT},
        timeout=httpx.Timeout(HTTP_READ_TIMEOUT, connect=HTTP_CONNECT_TIMEOUT),
        trust_env=False,
    )


def cmd_status(args) -> int:
    with _api_client() as client:
        r = client.get(f"{args.api_url.rstrip('/')}/cache")
    body = r.json()
    _print_json(body.get("data") or body)
    return 0 if r.status_code == 200 else 1


def cmd_diagnose(args) -> int:
    base = args.api_url.rstrip("/")
    rows: List[Dict] = []
    with _api_client() as client:
        stats = client.get(f"{base}/cache").json().get("data") or {}
        print("Cache:")
        _print_json(stats)
        if not stats.get("programs_count"):
            print("WARNING: no programs in cache; it may need a refresh")
        if not stats.get("programs_with_sessions"):
            print("WARNING: no program-session links; associations may still be loading")

        program_types = [None] + [rt.value for rt in get_registry().record_types().values()]
        for program_type in program_types:
            for include_empty in (False, True):
                body = {"program_type": program_type, "include_empty_results": include_empty, "page_size": 10}
                r = client.post(f"{base}/search", json=body)
                payload = r.json()
                data = payload.get("data") or {}
                rows.append(
                    {
                        "program_type": program_type or "(all)",
                        "include_empty": include_empty,
                        "status": r.status_code,
                        "total_count": data.get("total_count"),
                        "facets": len(data.get("facets") or []),
                        "error": (payload.get("error") or {}).get("code"),
                    }
                )
    df = pd.DataFrame(rows)
    print(df.to_string(index=False))
    return 0 if (df["status"] == 200).all() else 1


def main(argv: Optional[List[str]] = None) -> int:
    ap = argparse.ArgumentParser(prog="program-search")
    sub = ap.add_subparsers(dest="command", required=True)

    p = sub.add_parser("refresh", help="full refresh and print cache stats")
    p.set_defaults(func=cmd_refresh)

    p = sub.add_parser("search", help="run one search against a freshly loaded cache")
    p.add_argument("--query", default=None)
    p.add_argument("--program-type", default=None)
    p.add_argument("--filters", default=None, help="filter group JSON, inline or a file path")
    p.add_argument("--page", type=int, default=1)
    p.add_argument("--page-size", type=int, default=20)
    p.add_argument("--include-empty", action="store_true")
    p.set_defaults(func=cmd_search)

    p = sub.add_parser("export", help="write programs and sessions to CSV")
    p.add_argument("--out", default="artifacts/program_sessions.csv")
    p.set_defaults(func=cmd_export)

    p = sub.add_parser("properties", help="list upstream property definitions")
    p.add_argument("kind", choices=ENTITY_KINDS)
    p.add_argument("--csv", default=None, help="optional CSV output path")
    p.set_defaults(func=cmd_properties)

    p = sub.add_parser("status", help="cache stats from a running API")
    p.add_argument("--api-url", default=DEFAULT_API_URL)
    p.set_defaults(func=cmd_status)

    p = sub.add_parser("diagnose", help="probe a running API")
    p.add_argument("--api-url", default=DEFAULT_API_URL)
    p.set_defaults(func=cmd_diagnose)

    args = ap.parse_args(argv)
    logger.remove()
    logger.add(sys.stderr, level="INFO")
    return args.func(args)


if __name__ == "__main__":
    raise SystemExit(main())
