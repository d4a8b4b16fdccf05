from __future__ import annotations

"""
Schema registry for the program search backend.

The registry reads the declarative JSON files under ``SCHEMA_DIR`` once,
validates them into Pydantic models and answers the metadata questions the
rest of the pipeline asks: which fields exist per entity kind, which
operators a field accepts, which fields apply to a given program type and
how option values are labelled.

The JSON files use the camelCase keys the presentation layer consumes;
the models expose snake_case attributes.

Example::

    from program_search.schema_registry import get_registry
    registry = get_registry()
    for fd in registry.fields_for("session", filterable=True, discriminator="Camp"):
        print(fd.field, fd.operators)
"""

import json
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from .config import (
    DATE_FIELD_NAMES,
    NULL_PASS_OPERATORS,
    PROPERTY_SCHEMA_FILES,
    SCHEMA_DIR,
    SEARCH_CONFIG_FILE,
    UPSTREAM_OBJECT_TYPES,
    FilterOperator,
)
from .errors import SchemaConfigError

ENTITY_KINDS = ("partner", "program", "session")

# Order used when a filter leaf does not name its entity kind
FIELD_RESOLUTION_ORDER = ("program", "session", "partner")


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PropertyOption(_CamelModel):
    value: str
    label: str
    display_order: int = 0
    numeric_value: Optional[float] = None
    hidden: bool = False


class Bucket(_CamelModel):
    value: str
    label: str
    min: Optional[float] = None
    max: Optional[float] = None

    def contains(self, number: float) -> bool:
        if self.min is not None and number < self.min:
            return False
        if self.max is not None and number > self.max:
            return False
        return True


class PropertyDefinition(_CamelModel):
    name: str
    label: str
    type: Literal["string", "number", "bool", "date", "datetime", "enumeration"]
    field_type: str = "text"
    description: str = ""
    searchable: bool = False
    filterable: bool = False
    facetable: bool = False
    display_in_results: bool = False
    display_order: int = 0
    required: bool = False
    multi_select: bool = False
    applicable_record_types: Optional[List[str]] = None
    applicable_parent_program_types: Optional[List[str]] = None
    options: Optional[List[PropertyOption]] = None
    filter_operators: Optional[List[FilterOperator]] = None
    buckets: Optional[List[Bucket]] = None
    currency: Optional[str] = None
    null_pass_operators: Optional[List[FilterOperator]] = None

    @property
    def is_date(self) -> bool:
        return self.type in ("date", "datetime") or self.name in DATE_FIELD_NAMES


class RecordType(_CamelModel):
    value: str
    label: str
    description: str = ""
    display_order: int = 0


class PropertySchema(_CamelModel):
    object_type: str
    display_name: Optional[str] = None
    record_types: Dict[str, RecordType] = Field(default_factory=dict)
    properties: List[PropertyDefinition]


class ObjectConfig(_CamelModel):
    object_type: str
    upstream_object_type: str
    display_name: str
    plural_display_name: str
    primary_display_property: str
    searchable_fields: List[str] = Field(default_factory=list)
    link_template: str = ""


class AssociationConfig(_CamelModel):
    from_object: str
    to_object: str
    association_type_id: int
    direction: Literal["forward", "backward"] = "forward"


class DefaultSort(_CamelModel):
    field: str
    direction: Literal["asc", "desc"] = "asc"


class FilterConfig(_CamelModel):
    primary_filter: str
    default_sort: DefaultSort


class SearchConfig(_CamelModel):
    version: str
    last_updated: Optional[str] = None
    refresh_interval_ms: int = 3_600_000
    objects: Dict[str, ObjectConfig] = Field(default_factory=dict)
    associations: Dict[str, AssociationConfig] = Field(default_factory=dict)
    filters: FilterConfig


class FieldDescriptor(_CamelModel):
    """Filterable/facetable field as exposed to callers."""

    field: str
    label: str
    entity_kind: str
    type: str
    operators: List[FilterOperator]
    multi_select: bool = False
    options: Optional[List[PropertyOption]] = None
    buckets: Optional[List[Bucket]] = None
    applicable_record_types: Optional[List[str]] = None
    applicable_parent_program_types: Optional[List[str]] = None


def default_operators(prop: PropertyDefinition) -> List[FilterOperator]:
    """Type-based operator defaults used when a field does not declare any."""
    if prop.type == "string":
        names = ["eq", "contains"]
    elif prop.type in ("number", "date", "datetime"):
        names = ["eq", "gte", "lte", "between"]
    elif prop.type == "bool":
        names = ["eq"]
    elif prop.type == "enumeration":
        names = ["in", "eq"] if prop.multi_select else ["eq", "in"]
    else:
        names = ["eq"]
    return [FilterOperator(n) for n in names]


def _read_json(path: Path) -> Any:
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except FileNotFoundError as e:
        raise SchemaConfigError(f"Schema file not found: {path}") from e
    except json.JSONDecodeError as e:
        raise SchemaConfigError(f"Schema file {path} is not valid JSON: {e}") from e


class SchemaRegistry:
    """Parsed schema configuration, loaded once and then read-only."""

    def __init__(self, schema_dir: Path | str = SCHEMA_DIR) -> None:
        self.schema_dir = Path(schema_dir)
        self._config: Optional[SearchConfig] = None
        self._schemas: Dict[str, PropertySchema] = {}
        self._by_name: Dict[str, Dict[str, PropertyDefinition]] = {}

    @property
    def loaded(self) -> bool:
        return self._config is not None

    def load(self) -> None:
        """Read and validate every schema file.  Safe to call repeatedly."""
        if self.loaded:
            return
        try:
            config = SearchConfig.model_validate(_read_json(self.schema_dir / SEARCH_CONFIG_FILE))
            schemas = {
                kind: PropertySchema.model_validate(_read_json(self.schema_dir / filename))
                for kind, filename in PROPERTY_SCHEMA_FILES.items()
            }
        except ValidationError as e:
            raise SchemaConfigError(f"Invalid schema configuration in {self.schema_dir}: {e}") from e

        by_name: Dict[str, Dict[str, PropertyDefinition]] = {}
        for kind, schema in schemas.items():
            names: Dict[str, PropertyDefinition] = {}
            for prop in schema.properties:
                if prop.name in names:
                    raise SchemaConfigError(f"Duplicate {kind} property '{prop.name}'")
                names[prop.name] = prop
            by_name[kind] = names

        self._schemas = schemas
        self._by_name = by_name
        self._config = config
        logger.info(
            "Schemas loaded from {} ({} partner, {} program, {} session properties)",
            self.schema_dir,
            len(by_name["partner"]),
            len(by_name["program"]),
            len(by_name["session"]),
        )

    # ---------------------------
    # Raw access
    # ---------------------------

    @property
    def config(self) -> SearchConfig:
        self.load()
        return self._config  # type: ignore[return-value]

    def schema(self, kind: str) -> PropertySchema:
        self.load()
        try:
            return self._schemas[kind]
        except KeyError:
            raise ValueError(f"Unknown entity kind: {kind}") from None

    def field(self, kind: str, name: str) -> Optional[PropertyDefinition]:
        self.load()
        return self._by_name.get(kind, {}).get(name)

    def has_field(self, kind: str, name: str) -> bool:
        return self.field(kind, name) is not None

    def entity_kind_for(self, name: str) -> Optional[str]:
        """First entity kind (program, session, partner) declaring ``name``."""
        for kind in FIELD_RESOLUTION_ORDER:
            if self.has_field(kind, name):
                return kind
        return None

    def upstream_object_type(self, kind: str) -> str:
        obj = self.config.objects.get(kind)
        if obj is not None:
            return obj.upstream_object_type
        return UPSTREAM_OBJECT_TYPES[kind]

    def searchable_fields(self, kind: str) -> List[PropertyDefinition]:
        return [p for p in self.schema(kind).properties if p.searchable]

    # ---------------------------
    # Operators / applicability
    # ---------------------------

    def operators_for(self, prop: PropertyDefinition) -> List[FilterOperator]:
        if prop.filter_operators:
            return list(prop.filter_operators)
        return default_operators(prop)

    def null_pass_operators(self, kind: str, name: str) -> List[str]:
        prop = self.field(kind, name)
        if prop is not None and prop.null_pass_operators is not None:
            return [op.value for op in prop.null_pass_operators]
        return NULL_PASS_OPERATORS.get(name, [])

    def is_applicable(self, kind: str, name: str, discriminator: Optional[str]) -> bool:
        """Whether a field applies to programs of type ``discriminator``.

        Fields without applicability rules, or rules containing ``*``, apply
        everywhere.  Partner fields always apply.
        """
        if not discriminator or kind == "partner":
            return True
        prop = self.field(kind, name)
        if prop is None:
            return False
        rules = prop.applicable_record_types if kind == "program" else prop.applicable_parent_program_types
        if not rules:
            return True
        wanted = discriminator.lower()
        return "*" in rules or any(r.lower() == wanted for r in rules)

    def fields_for(
        self,
        kind: str,
        filterable: bool = False,
        facetable: bool = False,
        discriminator: Optional[str] = None,
    ) -> List[FieldDescriptor]:
        out: List[FieldDescriptor] = []
        for prop in self.schema(kind).properties:
            if filterable and not prop.filterable:
                continue
            if facetable and not prop.facetable:
                continue
            if not self.is_applicable(kind, prop.name, discriminator):
                continue
            out.append(
                FieldDescriptor(
                    field=prop.name,
                    label=prop.label,
                    entity_kind=kind,
                    type=prop.type,
                    operators=self.operators_for(prop),
                    multi_select=prop.multi_select,
                    options=prop.options,
                    buckets=prop.buckets,
                    applicable_record_types=prop.applicable_record_types,
                    applicable_parent_program_types=prop.applicable_parent_program_types,
                )
            )
        return out

    # ---------------------------
    # Labels / discriminator
    # ---------------------------

    def field_label(self, kind: str, name: str) -> str:
        prop = self.field(kind, name)
        return prop.label if prop else name

    def option_label(self, kind: str, name: str, value: str) -> str:
        prop = self.field(kind, name)
        if prop is None or not prop.options:
            return value
        for opt in prop.options:
            if opt.value == value:
                return opt.label or value
        return value

    def record_types(self) -> Dict[str, RecordType]:
        return self.schema("program").record_types

    def canonical_discriminator(self, raw: Optional[str]) -> Optional[str]:
        """Map a raw program type (value, key or label) onto its canonical value."""
        if raw is None:
            return None
        text = str(raw).strip()
        if not text:
            return None
        wanted = text.lower()
        for key, rt in self.record_types().items():
            if wanted in (key.lower(), rt.value.lower(), rt.label.lower()):
                return rt.value
        return text

    # ---------------------------
    # Presentation-layer description
    # ---------------------------

    def build_schema_response(self, discriminator: Optional[str] = None) -> Dict[str, Any]:
        filterable: List[FieldDescriptor] = []
        facetable: List[FieldDescriptor] = []
        for kind in ("program", "session", "partner"):
            filterable.extend(self.fields_for(kind, filterable=True, discriminator=discriminator))
            facetable.extend(self.fields_for(kind, facetable=True, discriminator=discriminator))
        return {
            "config": self.config.model_dump(mode="json", by_alias=True),
            "programProperties": self.schema("program").model_dump(mode="json", by_alias=True),
            "sessionProperties": self.schema("session").model_dump(mode="json", by_alias=True),
            "partnerProperties": self.schema("partner").model_dump(mode="json", by_alias=True),
            "filterableFields": [fd.model_dump(mode="json", by_alias=True, exclude_none=True) for fd in filterable],
            "facetableFields": [fd.model_dump(mode="json", by_alias=True, exclude_none=True) for fd in facetable],
        }


_registry: Optional[SchemaRegistry] = None


def get_registry() -> SchemaRegistry:
    """Process-wide registry, loaded on first use."""
    global _registry
    if _registry is None:
        _registry = SchemaRegistry()
    _registry.load()
    return _registry


def set_registry(registry: Optional[SchemaRegistry]) -> None:
    """Replace the process-wide registry (tests, alternate schema dirs)."""
    global _registry
    _registry = registry
