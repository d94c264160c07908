"""
Mapping engine: assigns source columns to target fields.

Proposals are scored per column by a pluggable ``FieldScorer``. Confirmed
entries are never re-scored, template entries short-circuit scoring for exact
column-name matches, and a target field can be claimed by only one column
(first claim wins, the loser stays unmapped).
"""

import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import func
from sqlalchemy.orm import Session

from migration_engine.api.schemas.shared import (
    ColumnProfile,
    FieldMapping,
    MappingEntry,
    MappingStatus,
    UnmappedAction,
    ValueMap,
)
from migration_engine.core.config import settings
from migration_engine.core.exceptions import InvalidMapping, MappingIncomplete, TemplateNotFound
from migration_engine.db.models import FieldMappingRecord, ImportJob, MappingTemplate
from migration_engine.domain.imports.schema import FieldType, TargetSchema
from migration_engine.domain.imports.scoring import FieldScorer, HeuristicScorer
from migration_engine.utils.date import infer_date_pattern

logger = logging.getLogger(__name__)

TIE_EPSILON = 1e-6


def propose_mapping(
    profiles: Sequence[ColumnProfile],
    schema: TargetSchema,
    scorer: Optional[FieldScorer] = None,
    previous: Optional[FieldMapping] = None,
    template: Optional[FieldMapping] = None,
    auto_accept_threshold: Optional[float] = None,
    proposal_threshold: Optional[float] = None,
) -> FieldMapping:
    """
    Propose a column → field mapping.

    Args:
        profiles: Column profiles in file order
        schema: Target schema being imported into
        scorer: Scoring strategy (heuristic by default)
        previous: Existing mapping; its confirmed entries are kept verbatim
        template: Template mapping applied to exactly-matching column names

    Returns:
        A new FieldMapping with one entry per column, in column order
    """
    scorer = scorer or HeuristicScorer()
    auto_accept = settings.auto_accept_threshold if auto_accept_threshold is None else auto_accept_threshold
    propose = settings.proposal_threshold if proposal_threshold is None else proposal_threshold

    claimed: Dict[str, str] = {}
    decided: Dict[str, MappingEntry] = {}

    # 1. User-confirmed entries are immutable under re-scoring
    if previous is not None:
        for entry in previous.entries:
            if entry.status == MappingStatus.CONFIRMED:
                decided[entry.source_column] = entry.model_copy()
                if entry.target_field:
                    claimed[entry.target_field] = entry.source_column

    # 2. Template entries for exact column-name matches
    if template is not None:
        for profile in profiles:
            if profile.name in decided:
                continue
            template_entry = template.entry_for(profile.name)
            if template_entry is None or not template_entry.target_field:
                continue
            target = template_entry.target_field
            if schema.field(target) is None or target in claimed:
                continue
            decided[profile.name] = MappingEntry(
                source_column=profile.name,
                target_field=target,
                confidence=1.0,
                status=MappingStatus.TEMPLATE,
                rule_id=template_entry.rule_id,
                reason="matched saved template",
            )
            claimed[target] = profile.name

    # 3. Greedy scoring in column order
    entries: List[MappingEntry] = []
    for profile in profiles:
        if profile.name in decided:
            entries.append(decided[profile.name])
            continue
        entry = _score_column(profile, schema, scorer, claimed, auto_accept, propose)
        if entry.target_field:
            claimed[entry.target_field] = profile.name
        entries.append(entry)

    mapping = FieldMapping(
        entries=entries,
        unmapped_action=previous.unmapped_action if previous else UnmappedAction.IGNORE,
        field_defaults=dict(previous.field_defaults) if previous else {},
        template_id=(previous.template_id if previous else None),
        template_version=(previous.template_version if previous else None),
    )
    if template is not None:
        mapping.template_id = template.template_id
        mapping.template_version = template.template_version
        if not mapping.field_defaults:
            mapping.field_defaults = dict(template.field_defaults)
        mapping.unmapped_action = template.unmapped_action

    auto = sum(1 for e in entries if e.status == MappingStatus.AUTO_ACCEPTED)
    pending = sum(1 for e in entries if e.status == MappingStatus.NEEDS_CONFIRMATION)
    logger.info(
        f"Proposed mapping for {len(entries)} columns -> {schema.entity_type}: "
        f"{auto} auto-accepted, {pending} need confirmation, {len(entries) - len(mapping.mapped_entries())} unmapped"
    )
    return mapping


def _score_column(
    profile: ColumnProfile,
    schema: TargetSchema,
    scorer: FieldScorer,
    claimed: Dict[str, str],
    auto_accept: float,
    propose: float,
) -> MappingEntry:
    scores = scorer.score_column(profile, schema)
    if not scores:
        return MappingEntry(source_column=profile.name, reason="target schema has no fields")

    best = scores[0]
    if best.score < propose:
        return MappingEntry(
            source_column=profile.name,
            confidence=best.score,
            reason=f"best candidate '{best.target_field}' scored {best.score:.2f}",
        )

    tied = [s for s in scores if best.score - s.score <= TIE_EPSILON]
    winner = next((s for s in tied if s.target_field not in claimed), None)
    if winner is None:
        owners = ", ".join(f"'{claimed[s.target_field]}'" for s in tied)
        return MappingEntry(
            source_column=profile.name,
            confidence=best.score,
            reason=f"'{best.target_field}' already claimed by {owners}",
        )

    status = MappingStatus.AUTO_ACCEPTED if winner.score >= auto_accept else MappingStatus.NEEDS_CONFIRMATION
    return MappingEntry(
        source_column=profile.name,
        target_field=winner.target_field,
        confidence=winner.score,
        status=status,
        reason=winner.reason,
    )


def confirm_mapping(
    current: FieldMapping,
    submitted: Iterable[MappingEntry],
    schema: TargetSchema,
    columns: Iterable[str],
    unmapped_action: Optional[UnmappedAction] = None,
    field_defaults: Optional[Dict[str, Any]] = None,
) -> FieldMapping:
    """
    Apply user decisions. Every submitted entry becomes ``confirmed``;
    a submitted entry with no target marks the column as deliberately unmapped.

    Raises:
        InvalidMapping: unknown column or field, or one field mapped twice
    """
    known_columns = list(columns)
    by_column = {entry.source_column: entry.model_copy() for entry in current.entries}
    for column in known_columns:
        by_column.setdefault(column, MappingEntry(source_column=column))

    for entry in submitted:
        if entry.source_column not in by_column:
            raise InvalidMapping(
                f"Column '{entry.source_column}' does not exist in the uploaded file",
                field=entry.source_column,
            )
        if entry.target_field is not None and schema.field(entry.target_field) is None:
            raise InvalidMapping(
                f"Target field '{entry.target_field}' does not exist on {schema.entity_type}",
                field=entry.target_field,
                suggested_fix=f"Use one of: {', '.join(schema.field_names)}",
            )
        by_column[entry.source_column] = MappingEntry(
            source_column=entry.source_column,
            target_field=entry.target_field,
            confidence=1.0 if entry.target_field else 0.0,
            status=MappingStatus.CONFIRMED,
            rule_id=entry.rule_id,
            reason="confirmed by user",
        )

    ordered = [by_column[c] for c in known_columns] + [
        entry for column, entry in by_column.items() if column not in known_columns
    ]

    seen: Dict[str, str] = {}
    for entry in ordered:
        if not entry.is_mapped:
            continue
        if entry.target_field in seen:
            raise InvalidMapping(
                f"Target field '{entry.target_field}' is mapped from both "
                f"'{seen[entry.target_field]}' and '{entry.source_column}'",
                field=entry.target_field,
                suggested_fix="Map each target field from a single source column.",
            )
        seen[entry.target_field] = entry.source_column

    defaults = dict(current.field_defaults)
    if field_defaults is not None:
        for name in field_defaults:
            if schema.field(name) is None:
                raise InvalidMapping(f"Default configured for unknown field '{name}'", field=name)
        defaults = dict(field_defaults)

    return FieldMapping(
        entries=ordered,
        unmapped_action=unmapped_action or current.unmapped_action,
        field_defaults=defaults,
        template_id=current.template_id,
        template_version=current.template_version,
    )


def missing_required_fields(
    mapping: FieldMapping, schema: TargetSchema, derived_fields: Iterable[str] = ()
) -> List[str]:
    """Required fields with no mapped column, no default and no deriving rule."""
    covered = set(mapping.mapped_targets()) | set(mapping.field_defaults) | set(derived_fields)
    return [f.name for f in schema.required_fields if f.name not in covered and f.default is None]


def ensure_mapping_complete(mapping: FieldMapping, schema: TargetSchema, derived_fields: Iterable[str] = ()) -> None:
    """
    Raises:
        MappingIncomplete: a required field has no mapped column and no default
    """
    missing = missing_required_fields(mapping, schema, derived_fields)
    if missing:
        raise MappingIncomplete(missing)


def suggest_rules(mapping: FieldMapping, schema: TargetSchema, profiles: Sequence[ColumnProfile]) -> Dict[str, dict]:
    """
    Rule configurations inferred from column samples, keyed by target field.

    Date targets get a ``date_format`` rule with the layout inferred from the
    samples; numeric and boolean targets fed by text columns get a conversion.
    """
    by_name = {p.name: p for p in profiles}
    suggestions: Dict[str, dict] = {}
    for entry in mapping.mapped_entries():
        target_field = schema.field(entry.target_field)
        profile = by_name.get(entry.source_column)
        if target_field is None or profile is None:
            continue
        if target_field.type in (FieldType.DATE, FieldType.DATETIME):
            samples = [vc.value for vc in profile.top_values] or list(profile.sample_values)
            suggestions[target_field.name] = {
                "type": "date_format",
                "input_format": infer_date_pattern(samples),
                "include_time": target_field.type == FieldType.DATETIME,
            }
        elif target_field.type in (FieldType.INTEGER, FieldType.DECIMAL) and profile.inferred_type == "string":
            suggestions[target_field.name] = {"type": "string_ops", "operations": ["trim", "to_number"]}
        elif target_field.type == FieldType.BOOLEAN and profile.inferred_type != "boolean":
            suggestions[target_field.name] = {"type": "string_ops", "operations": ["trim", "to_boolean"]}
        elif target_field.type == FieldType.EMAIL:
            suggestions[target_field.name] = {"type": "string_ops", "operations": ["trim", "lower"]}
    return suggestions


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

def load_mapping(db: Session, job_id: str) -> Optional[FieldMapping]:
    record = db.query(FieldMappingRecord).filter(FieldMappingRecord.job_id == job_id).first()
    if record is None:
        return None
    return FieldMapping(
        entries=[MappingEntry.model_validate(e) for e in record.entries or []],
        unmapped_action=UnmappedAction(record.unmapped_action),
        field_defaults=record.field_defaults or {},
        template_id=record.template_id,
        template_version=record.template_version,
    )


def store_mapping(db: Session, job: ImportJob, mapping: FieldMapping) -> None:
    record = db.query(FieldMappingRecord).filter(FieldMappingRecord.job_id == job.id).first()
    if record is None:
        record = FieldMappingRecord(job_id=job.id, tenant_id=job.tenant_id)
        db.add(record)
    record.entries = [e.model_dump(mode="json") for e in mapping.entries]
    record.unmapped_action = mapping.unmapped_action.value
    record.field_defaults = mapping.field_defaults
    record.template_id = mapping.template_id
    record.template_version = mapping.template_version
    db.flush()


def save_template(
    db: Session,
    *,
    tenant_id: str,
    name: str,
    source_system: str,
    target_entity_type: str,
    mapping: FieldMapping,
    value_maps: Optional[List[ValueMap]] = None,
) -> MappingTemplate:
    """
    Persist a mapping as the next immutable version of a named template.
    """
    current_version = (
        db.query(func.max(MappingTemplate.version))
        .filter(MappingTemplate.tenant_id == tenant_id, MappingTemplate.name == name)
        .scalar()
    )
    entries = [
        {"source_column": e.source_column, "target_field": e.target_field, "rule_id": e.rule_id}
        for e in mapping.mapped_entries()
    ]
    template = MappingTemplate(
        tenant_id=tenant_id,
        name=name,
        version=(current_version or 0) + 1,
        source_system=source_system,
        target_entity_type=target_entity_type,
        entries=entries,
        unmapped_action=mapping.unmapped_action.value,
        field_defaults=mapping.field_defaults,
        value_maps=[vm.model_dump(mode="json", include={"target_field", "entries", "default_value", "case_sensitive"}) for vm in value_maps or []],
    )
    db.add(template)
    db.flush()
    logger.info(f"Saved mapping template '{name}' v{template.version} ({len(entries)} fields) for tenant {tenant_id}")
    return template


def get_template(db: Session, tenant_id: str, template_id: str, version: Optional[int] = None) -> MappingTemplate:
    """
    Look up a template by id, or by the id's name at an explicit version.

    Raises:
        TemplateNotFound
    """
    template = (
        db.query(MappingTemplate)
        .filter(MappingTemplate.id == template_id, MappingTemplate.tenant_id == tenant_id)
        .first()
    )
    if template is not None and version is not None and template.version != version:
        template = (
            db.query(MappingTemplate)
            .filter(
                MappingTemplate.tenant_id == tenant_id,
                MappingTemplate.name == template.name,
                MappingTemplate.version == version,
            )
            .first()
        )
    if template is None:
        raise TemplateNotFound(f"Mapping template '{template_id}' not found")
    return template


def list_templates(
    db: Session,
    tenant_id: str,
    source_system: Optional[str] = None,
    target_entity_type: Optional[str] = None,
) -> List[MappingTemplate]:
    query = db.query(MappingTemplate).filter(MappingTemplate.tenant_id == tenant_id)
    if source_system:
        query = query.filter(MappingTemplate.source_system == source_system)
    if target_entity_type:
        query = query.filter(MappingTemplate.target_entity_type == target_entity_type)
    return query.order_by(MappingTemplate.name, MappingTemplate.version.desc()).all()


def template_to_mapping(template: MappingTemplate) -> FieldMapping:
    return FieldMapping(
        entries=[
            MappingEntry(
                source_column=e["source_column"],
                target_field=e.get("target_field"),
                confidence=1.0,
                status=MappingStatus.TEMPLATE,
                rule_id=e.get("rule_id"),
            )
            for e in template.entries or []
        ],
        unmapped_action=UnmappedAction(template.unmapped_action),
        field_defaults=template.field_defaults or {},
        template_id=template.id,
        template_version=template.version,
    )


def template_value_maps(template: MappingTemplate) -> List[ValueMap]:
    return [ValueMap.model_validate(vm) for vm in template.value_maps or []]
