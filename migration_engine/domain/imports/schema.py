"""
Target schema descriptors.

The engine never hard-codes the entities it imports into. A ``SchemaProvider``
supplies, per target entity type, the field list (types, required-ness, enum
values, examples), cross-field business rules, the reference lookups used by
validation, and the dependency order used by rollback.
"""

import json
import logging
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Protocol, Union

from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)


class FieldType(str, Enum):
    STRING = "string"
    TEXT = "text"
    INTEGER = "integer"
    DECIMAL = "decimal"
    BOOLEAN = "boolean"
    DATE = "date"
    DATETIME = "datetime"
    EMAIL = "email"
    PHONE = "phone"
    ENUM = "enum"
    REFERENCE = "reference"


class TargetField(BaseModel):
    name: str
    type: FieldType = FieldType.STRING
    required: bool = False
    enum_values: List[str] = Field(default_factory=list)
    examples: List[str] = Field(default_factory=list)
    aliases: List[str] = Field(default_factory=list)
    default: Optional[Any] = None
    reference_entity: Optional[str] = None
    format: Optional[str] = None  # preset validator name, see validators.PRESET_PATTERNS
    max_length: Optional[int] = None
    description: Optional[str] = None

    @field_validator("enum_values")
    def normalize_enum_values(cls, values: List[str]) -> List[str]:
        return [str(v) for v in values]


class BusinessRule(BaseModel):
    """
    Declarative cross-field check.

    ``operator`` compares ``field`` with ``other_field`` (or the literal
    ``value``); ``required_if`` requires ``field`` whenever ``other_field``
    equals ``value`` (or is non-empty when ``value`` is None).
    """
    name: str
    field: str
    operator: str  # gte, lte, gt, lt, eq, ne, required_if
    other_field: Optional[str] = None
    value: Optional[Any] = None
    severity: str = "error"
    message: Optional[str] = None

    @field_validator("operator")
    def check_operator(cls, value: str) -> str:
        allowed = {"gte", "lte", "gt", "lt", "eq", "ne", "required_if"}
        if value not in allowed:
            raise ValueError(f"Unsupported business rule operator '{value}'")
        return value


class EmbeddedEntity(BaseModel):
    """
    A parent entity carried inline in each source row (e.g. the reporter of a case).

    ``fields`` maps the embedded entity's field names to target fields of the
    owning record. The parent is written first and its id is stored in
    ``link_field`` on the owning record.
    """
    entity_type: str
    fields: Dict[str, str]
    link_field: str


class TargetSchema(BaseModel):
    entity_type: str
    fields: List[TargetField]
    source_id_field: Optional[str] = None
    business_rules: List[BusinessRule] = Field(default_factory=list)
    embedded: List[EmbeddedEntity] = Field(default_factory=list)

    def field(self, name: str) -> Optional[TargetField]:
        for target_field in self.fields:
            if target_field.name == name:
                return target_field
        return None

    @property
    def field_names(self) -> List[str]:
        return [f.name for f in self.fields]

    @property
    def required_fields(self) -> List[TargetField]:
        return [f for f in self.fields if f.required]


class SchemaProvider(Protocol):
    def get_schema(self, entity_type: str) -> TargetSchema:
        ...

    def exists(self, entity_type: str, entity_id: Any) -> bool:
        ...

    def dependency_rank(self, entity_type: str) -> int:
        ...


Lookup = Union[Callable[[str], bool], Iterable[Any]]


class StaticSchemaProvider:
    """
    In-process schema provider built from a fixed list of schemas.

    Reference lookups are either callables ``id -> bool`` or collections of
    known ids, keyed by entity type.
    """

    def __init__(self, schemas: Iterable[TargetSchema], lookups: Optional[Mapping[str, Lookup]] = None):
        self._schemas: Dict[str, TargetSchema] = {schema.entity_type: schema for schema in schemas}
        self._lookups: Dict[str, Callable[[str], bool]] = {}
        for entity_type, lookup in (lookups or {}).items():
            self.register_lookup(entity_type, lookup)

    def register_lookup(self, entity_type: str, lookup: Lookup) -> None:
        if callable(lookup):
            self._lookups[entity_type] = lookup
        else:
            known = {str(item) for item in lookup}
            self._lookups[entity_type] = lambda entity_id, _known=known: str(entity_id) in _known

    def get_schema(self, entity_type: str) -> TargetSchema:
        try:
            return self._schemas[entity_type]
        except KeyError:
            raise KeyError(f"No target schema registered for entity type '{entity_type}'")

    def has_schema(self, entity_type: str) -> bool:
        return entity_type in self._schemas

    def exists(self, entity_type: str, entity_id: Any) -> bool:
        lookup = self._lookups.get(entity_type)
        if lookup is None:
            logger.debug(f"No reference lookup registered for '{entity_type}'")
            return False
        return bool(lookup(str(entity_id).strip()))

    def dependency_rank(self, entity_type: str, _seen: Optional[set] = None) -> int:
        """
        0 for entities with no embedded parents, otherwise one more than the
        highest-ranked parent. Rollback deletes higher ranks first.
        """
        seen = _seen or set()
        if entity_type in seen or entity_type not in self._schemas:
            return 0
        seen.add(entity_type)
        parents = [embedded.entity_type for embedded in self._schemas[entity_type].embedded]
        if not parents:
            return 0
        return 1 + max(self.dependency_rank(parent, seen) for parent in parents)


def load_schemas(path: str) -> List[TargetSchema]:
    """
    Load target schema descriptors from a JSON file.

    The file holds either a list of schema objects or ``{"schemas": [...]}``.
    """
    with open(path, "r", encoding="utf-8") as handle:
        payload = json.load(handle)
    if isinstance(payload, dict):
        payload = payload.get("schemas", [])
    schemas = [TargetSchema.model_validate(item) for item in payload]
    logger.info(f"Loaded {len(schemas)} target schema(s) from {path}")
    return schemas
