from __future__ import annotations
"""
Configuration for the program search backend.

Constants are read once at import time; the handful that operators tune in
deployment can be overridden through environment variables.  The Pydantic
request/response schemas shared by the search pipeline, the API and the CLI
live at the bottom of this module.
"""

import os
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field

from .errors import MissingCredentialsError

# Paths
PACKAGE_ROOT = Path(__file__).resolve().parent
SCHEMA_DIR = Path(os.getenv("PROGRAM_SEARCH_SCHEMA_DIR", str(PACKAGE_ROOT / "schemas")))

SEARCH_CONFIG_FILE = "search-config.json"
PROPERTY_SCHEMA_FILES: Dict[str, str] = {
    "partner": "partner-properties.json",
    "program": "program-properties.json",
    "session": "session-properties.json",
}

# Upstream CRM
ACCESS_TOKEN_ENV = "HUBSPOT_ACCESS_TOKEN"
CRM_API_BASE = os.getenv("HUBSPOT_API_BASE", "https://api.hubapi.com")

# HubSpot object type ids per entity kind.  Custom objects use the
# "2-<portal object id>" form; search-config.json may override these.
UPSTREAM_OBJECT_TYPES: Dict[str, str] = {
    "partner": "companies",
    "program": "2-50911446",
    "session": "2-50911450",
}

OBJECT_PAGE_LIMIT = 100

# HTTP hardening
HTTP_CONNECT_TIMEOUT = 5.0
HTTP_READ_TIMEOUT = 30.0
HTTP_USER_AGENT = "program-search/1.0"

# Association batch reads.  The upstream allows roughly 100 calls / 10s per
# app; batches of 50 with a short pause stay well under that.
ASSOCIATION_BATCH_SIZE = 50
ASSOCIATION_BATCH_DELAY_S = 0.25
ASSOCIATION_RETRY_DELAY_S = 2.0
ASSOCIATION_MAX_RETRIES = 5
ASSOCIATION_PROGRESS_EVERY = 10

# Cache
CACHE_TTL_SECONDS = float(os.getenv("PROGRAM_SEARCH_CACHE_TTL_SECONDS", "3600"))
INITIAL_LOAD_TIMEOUT_S = float(os.getenv("PROGRAM_SEARCH_INITIAL_LOAD_TIMEOUT_S", "12"))
CACHE_LOADING_MESSAGE = "Cache is still loading. Please try again in a few seconds."

# Property parsing
MULTI_VALUE_DELIMITER = ";"
TRUTHY_STRINGS = {"true", "yes", "1", "y"}

# Missing values pass these operators (open-ended bounds)
NULL_PASS_OPERATORS: Dict[str, List[str]] = {
    "age__min_": ["lte"],
    "age__max_": ["gte"],
}
DATE_FIELD_NAMES = {"start_date", "end_date"}

# Text ranking
RANK_PROGRAM_NAME_FIELD = "program_name"
RANK_PARTNER_NAME_FIELD = "name"
RANK_WEIGHT_PROGRAM_NAME = 2.0
RANK_WEIGHT_PARTNER_NAME = 1.5
RANK_WEIGHT_TEXT = 1.0
RANK_MIN_SIMILARITY = 0.6
RANK_MIN_QUERY_CHARS = 2

# Default ordering without a query
DEFAULT_SORT_FIELD = "start_date"

# Pagination
DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100

# Discriminator
DISCRIMINATOR_FIELD = "program_type"


def get_access_token() -> str:
    """Return the CRM access token from the environment."""
    token = os.getenv(ACCESS_TOKEN_ENV)
    if not token:
        raise MissingCredentialsError(f"{ACCESS_TOKEN_ENV} environment variable is not set")
    return token


# Pydantic schemas
class EntityKind(str, Enum):
    PARTNER = "partner"
    PROGRAM = "program"
    SESSION = "session"


class FilterOperator(str, Enum):
    EQ = "eq"
    NEQ = "neq"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    BETWEEN = "between"
    CONTAINS = "contains"
    IN = "in"


Scalar = Union[str, float, int, bool, None]
PropertyValue = Union[str, float, bool, None]


class Filter(BaseModel):
    field: str = Field(min_length=1)
    operator: FilterOperator
    value: Union[Scalar, List[Scalar]] = None
    entity_kind: Optional[EntityKind] = None


class FilterGroup(BaseModel):
    operator: Literal["AND", "OR"] = "AND"
    filters: List[Filter] = Field(default_factory=list)
    groups: List["FilterGroup"] = Field(default_factory=list)


FilterGroup.model_rebuild()


class SortOption(BaseModel):
    field: str
    direction: Literal["asc", "desc"] = "asc"
    entity_kind: Literal["program", "session"] = "session"


class SearchRequest(BaseModel):
    query: Optional[str] = Field(default=None, max_length=500)
    filters: Optional[FilterGroup] = None
    program_type: Optional[str] = None
    sort: Optional[SortOption] = None
    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE)
    include_empty_results: bool = False


class EntityRecord(BaseModel):
    id: str
    properties: Dict[str, PropertyValue]
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class SearchResultItem(BaseModel):
    program: EntityRecord
    partner: Optional[EntityRecord] = None
    sessions: List[EntityRecord]
    matching_session_count: int = Field(ge=0)
    total_session_count: int = Field(ge=0)
    score: float = 0.0


class FacetValue(BaseModel):
    value: str
    label: str
    count: int = Field(ge=0)
    selected: bool = False


class FacetResult(BaseModel):
    field: str
    label: str
    entity_kind: EntityKind
    values: List[FacetValue]


class AppliedFilter(BaseModel):
    field: str
    label: str
    entity_kind: EntityKind
    operator: FilterOperator
    value: Any = None
    display_value: str


class SearchResponse(BaseModel):
    results: List[SearchResultItem]
    total_count: int
    page: int
    page_size: int
    total_pages: int
    facets: List[FacetResult]
    applied_filters: List[AppliedFilter]
    search_time_ms: int


class CacheStats(BaseModel):
    partners_count: int
    programs_count: int
    sessions_count: int
    last_refreshed: Optional[str] = None
    cache_age_ms: int
    refresh_in_progress: bool
    associations_loading: bool
    associations_last_refreshed: Optional[str] = None
    programs_with_sessions: int
    programs_with_partner: int
    is_stale: bool


class HealthResponse(BaseModel):
    status: str
