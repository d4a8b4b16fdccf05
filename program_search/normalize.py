from __future__ import annotations

"""
Normalization utilities used across the program search backend.

Two concerns live here:

* Property parsing.  The CRM returns every property as a string (or
  ``None``) under its upstream internal name.  ``parse_properties`` maps
  those raw names onto the canonical field names declared in the schema
  files and coerces values by declared type: numeric strings become
  floats, boolean-like strings become ``bool`` and the program
  discriminator is mapped onto its canonical record type value.
* Text cleaning.  Rich-text CRM fields may contain HTML; the helpers
  below strip tags and normalise whitespace before text is used for
  fuzzy ranking.
"""

import math
import re
import unicodedata
from typing import Dict, List, Mapping, Optional

from bs4 import BeautifulSoup

from .config import (
    DISCRIMINATOR_FIELD,
    MULTI_VALUE_DELIMITER,
    TRUTHY_STRINGS,
    PropertyValue,
)
from .schema_registry import SchemaRegistry

MAX_TEXT_CHARS = 20_000


# ---------------------------
# Raw → canonical field names
# ---------------------------

# Upstream internal names that differ from the canonical field names.
RAW_PROPERTY_MAP: Dict[str, Dict[str, str]] = {
    "partner": {},
    "program": {
        "recordtype_name": "program_type",
        "description__c": "description",
        "primary_camp_type__c": "primary_camp_type",
        "camp_subtype__c": "camp_subtype",
        "region__c": "region",
        "gender_structure_subtype__c": "gender_structure",
        "brother_sister_conditional_on_gender__c": "brother_sister",
        "is_brother__sister": "is_brother_sister",
        "programming_philosophy__c": "programming_philosophy",
        "accommodations__c": "accommodations",
        "provider_id": "provider_id_external_",
    },
    "session": {
        "start_date__c": "start_date",
        "end_date__c": "end_date",
        "age_range_min__c": "age__min_",
        "age_range_max__c": "age__max_",
        "tuition_current": "tuition__current_",
        "currencyisocode": "tuition_currency",
        "locations_traveled__c": "locations",
        "sport_options__c": "sport_options",
        "arts_options__c": "arts_options",
        "education_options__c": "education_options",
        "itinerary__c": "itinerary",
    },
}

# Raw names requested even though no schema field is declared for them
# (external ids used for linking and diagnostics).
EXTRA_RAW_PROPERTIES: Dict[str, List[str]] = {
    "partner": ["programid", "provider_ext_id_salesforce", "website_for_recommendation_entry"],
    "program": ["program_id", "provider_id"],
    "session": ["session_id", "program_id"],
}


def canonical_name(kind: str, raw: str) -> str:
    return RAW_PROPERTY_MAP.get(kind, {}).get(raw, raw)


def raw_name(kind: str, canonical: str) -> str:
    for raw, canon in RAW_PROPERTY_MAP.get(kind, {}).items():
        if canon == canonical:
            return raw
    return canonical


def raw_properties_for(kind: str, registry: SchemaRegistry) -> List[str]:
    """
    The exact upstream property list to request for ``kind``: the raw
    name of every configured field plus the mapping-required extras.
    Order is stable and duplicates are removed.
    """
    names = [raw_name(kind, p.name) for p in registry.schema(kind).properties]
    names.extend(EXTRA_RAW_PROPERTIES.get(kind, []))
    seen = set()
    out: List[str] = []
    for n in names:
        if n not in seen:
            seen.add(n)
            out.append(n)
    return out


# ---------------------------
# Value coercion
# ---------------------------

def parse_number(value) -> Optional[float]:
    """Parse a numeric CRM value; unparseable or NaN values become ``None``."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        text = str(value).strip().replace(",", "")
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def parse_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in TRUTHY_STRINGS


def split_multi_value(value) -> List[str]:
    """Split a ``;``-joined multi-select value into trimmed parts."""
    if value is None:
        return []
    return [part.strip() for part in str(value).split(MULTI_VALUE_DELIMITER) if part.strip()]


def parse_properties(
    kind: str,
    raw_props: Mapping[str, Optional[str]],
    registry: SchemaRegistry,
) -> Dict[str, PropertyValue]:
    """
    Convert one upstream property bag into canonical field names and types.

    Empty strings become ``None``.  Unknown properties are kept under
    their canonical (or raw) name as strings.
    """
    parsed: Dict[str, PropertyValue] = {}
    for key, value in (raw_props or {}).items():
        name = canonical_name(kind, key)
        if value is None or (isinstance(value, str) and value.strip() == ""):
            parsed[name] = None
            continue

        prop = registry.field(kind, name)
        if kind == "program" and name == DISCRIMINATOR_FIELD:
            parsed[name] = registry.canonical_discriminator(value)
        elif prop is not None and prop.type == "number":
            parsed[name] = parse_number(value)
        elif prop is not None and prop.type == "bool":
            parsed[name] = parse_bool(value)
        else:
            parsed[name] = value
    return parsed


# ---------------------------
# Text cleaning
# ---------------------------

def clamp_text_length(text: str, max_chars: int = MAX_TEXT_CHARS) -> str:
    if not isinstance(text, str):
        text = str(text)
    if len(text) <= max_chars:
        return text
    return text[:max_chars]


def normalize_whitespace(text: str) -> str:
    """
    Collapse all whitespace runs into a single space and strip edges.
    """
    if not text:
        return ""
    return re.sub(r"\s+", " ", text).strip()


def normalize_unicode(text: str) -> str:
    if not text:
        return ""
    return unicodedata.normalize("NFC", text)


def strip_html(raw: str) -> str:
    """
    Strip HTML tags using BeautifulSoup and tidy spacing around
    punctuation.  Text without a ``<`` is returned untouched.
    """
    if not raw:
        return ""
    if "<" not in raw:
        return raw
    soup = BeautifulSoup(raw, "lxml")
    text = normalize_whitespace(soup.get_text(" ", strip=True))
    return re.sub(r"\s+([.,!?;:])", r"\1", text)


def basic_clean(text) -> str:
    """
    Cleaning applied to every text fragment that feeds fuzzy ranking:

    - clamp length
    - strip HTML
    - normalize unicode
    - normalize whitespace
    """
    if text is None:
        return ""
    text = clamp_text_length(str(text))
    text = strip_html(text)
    text = normalize_unicode(text)
    return normalize_whitespace(text)
