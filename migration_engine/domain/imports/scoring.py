"""
Column-to-field confidence scoring.

``HeuristicScorer`` works standalone and is the baseline every other scorer
falls back to. It combines three signals per (column, target field) pair:

* name similarity: normalized names and aliases, with a containment bonus
  and a difflib ratio otherwise
* type compatibility between the profiled column type and the field type
* value overlap: observed values against enum values, or value shapes
  against declared examples

When a field declares enum values or examples the value signal can carry the
score on its own, so ``Incident_Type`` holding ``Harassment``/``Theft`` still
lands on a ``category`` enum of ``HARASSMENT``/``THEFT``.
"""

import logging
import re
from dataclasses import dataclass
from difflib import SequenceMatcher
from typing import Dict, Iterable, List

from migration_engine.api.schemas.shared import ColumnProfile
from migration_engine.domain.imports.schema import FieldType, TargetField, TargetSchema

logger = logging.getLogger(__name__)

_CAMEL_RE = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")

_TYPE_COMPATIBILITY: Dict[FieldType, Dict[str, float]] = {
    FieldType.STRING: {"string": 1.0, "email": 0.8, "phone": 0.8, "integer": 0.7, "decimal": 0.6, "date": 0.5, "boolean": 0.5},
    FieldType.TEXT: {"string": 1.0, "email": 0.5, "phone": 0.5, "integer": 0.4, "decimal": 0.4, "date": 0.4, "boolean": 0.3},
    FieldType.INTEGER: {"integer": 1.0, "decimal": 0.6, "boolean": 0.3, "string": 0.3, "phone": 0.2},
    FieldType.DECIMAL: {"decimal": 1.0, "integer": 0.9, "string": 0.3},
    FieldType.BOOLEAN: {"boolean": 1.0, "integer": 0.4, "string": 0.3},
    FieldType.DATE: {"date": 1.0, "string": 0.4, "integer": 0.2},
    FieldType.DATETIME: {"date": 1.0, "string": 0.4, "integer": 0.2},
    FieldType.EMAIL: {"email": 1.0, "string": 0.4},
    FieldType.PHONE: {"phone": 1.0, "integer": 0.6, "string": 0.4},
    FieldType.ENUM: {"string": 1.0, "boolean": 0.6, "integer": 0.5, "decimal": 0.3},
    FieldType.REFERENCE: {"string": 0.9, "integer": 0.9, "email": 0.6},
}
EMPTY_COLUMN_COMPATIBILITY = 0.5


def normalize_name(name: str) -> str:
    """``reportedAt``, ``Reported_At`` and ``reported at`` all become ``reportedat``."""
    spaced = _CAMEL_RE.sub(" ", str(name or ""))
    return re.sub(r"[^a-z0-9]", "", spaced.lower())


def name_tokens(name: str) -> set:
    spaced = _CAMEL_RE.sub(" ", str(name or ""))
    return {token for token in re.split(r"[^a-z0-9]+", spaced.lower()) if token}


def normalize_enum_value(value) -> str:
    return re.sub(r"[^A-Z0-9]+", "_", str(value).strip().upper()).strip("_")


def value_shape(value) -> str:
    """Collapse a value to its character-class shape, e.g. ``E-10042`` -> ``A-9``."""
    shape = re.sub(r"[A-Za-z]", "A", str(value).strip())
    shape = re.sub(r"\d", "9", shape)
    return re.sub(r"(.)\1+", r"\1", shape)


def name_similarity(source: str, target: str) -> float:
    left, right = normalize_name(source), normalize_name(target)
    if not left or not right:
        return 0.0
    if left == right:
        return 1.0
    if left in right or right in left:
        shorter, longer = sorted((len(left), len(right)))
        return 0.7 + (shorter / longer) * 0.3
    ratio = SequenceMatcher(None, left, right).ratio()
    left_tokens, right_tokens = name_tokens(source), name_tokens(target)
    if left_tokens and right_tokens:
        overlap = len(left_tokens & right_tokens) / len(left_tokens | right_tokens)
        ratio = max(ratio, overlap)
    return ratio


@dataclass(frozen=True)
class FieldScore:
    target_field: str
    score: float
    name_score: float = 0.0
    type_score: float = 0.0
    value_score: float = 0.0
    reason: str = ""


class FieldScorer:
    """Interface for mapping scorers."""

    def score(self, profile: ColumnProfile, target_field: TargetField) -> FieldScore:
        raise NotImplementedError

    def score_column(self, profile: ColumnProfile, schema: TargetSchema) -> List[FieldScore]:
        """Scores for every field of the schema, best first."""
        scores = [self.score(profile, target_field) for target_field in schema.fields]
        return sorted(scores, key=lambda s: s.score, reverse=True)


class HeuristicScorer(FieldScorer):
    def name_score(self, profile: ColumnProfile, target_field: TargetField) -> float:
        candidates = [target_field.name, *target_field.aliases]
        return max(name_similarity(profile.name, candidate) for candidate in candidates)

    def type_score(self, profile: ColumnProfile, target_field: TargetField) -> float:
        if profile.inferred_type == "empty":
            return EMPTY_COLUMN_COMPATIBILITY
        return _TYPE_COMPATIBILITY.get(target_field.type, {}).get(profile.inferred_type, 0.1)

    @staticmethod
    def _observed(profile: ColumnProfile) -> Iterable:
        if profile.top_values:
            return [(vc.value, vc.count) for vc in profile.top_values]
        return [(value, 1) for value in profile.sample_values]

    def value_score(self, profile: ColumnProfile, target_field: TargetField) -> float:
        observed = list(self._observed(profile))
        total = sum(count for _, count in observed)
        if not total:
            return 0.0

        if target_field.enum_values:
            allowed = {normalize_enum_value(v) for v in target_field.enum_values}
            hits = sum(count for value, count in observed if normalize_enum_value(value) in allowed)
            return hits / total

        if target_field.examples:
            examples = {str(e).strip().lower() for e in target_field.examples}
            shapes = {value_shape(e) for e in target_field.examples}
            hits = sum(
                count
                for value, count in observed
                if str(value).strip().lower() in examples or value_shape(value) in shapes
            )
            return hits / total
        return 0.0

    def score(self, profile: ColumnProfile, target_field: TargetField) -> FieldScore:
        n = self.name_score(profile, target_field)
        t = self.type_score(profile, target_field)

        if target_field.enum_values:
            v = self.value_score(profile, target_field)
            combined = max(0.15 * n + 0.25 * t + 0.6 * v, 0.75 * n + 0.25 * t)
            reason = f"name {n:.2f}, type {t:.2f}, enum overlap {v:.2f}"
        elif target_field.examples:
            v = self.value_score(profile, target_field)
            combined = max(0.5 * n + 0.2 * t + 0.3 * v, 0.75 * n + 0.25 * t)
            reason = f"name {n:.2f}, type {t:.2f}, example shape match {v:.2f}"
        else:
            v = 0.0
            combined = 0.75 * n + 0.25 * t
            reason = f"name {n:.2f}, type {t:.2f}"

        return FieldScore(
            target_field=target_field.name,
            score=round(min(1.0, combined), 4),
            name_score=round(n, 4),
            type_score=round(t, 4),
            value_score=round(v, 4),
            reason=reason,
        )
