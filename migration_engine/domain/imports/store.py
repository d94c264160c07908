"""
Durable record store for imported entities.

``RecordStore`` is the seam to the target domain. ``SqlRecordStore`` keeps
records in the ``target_records`` table of the engine's own database, which
lets the executor write the ``imported_records`` journal inside the same
transaction as the batch through the ``journal`` callback.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from migration_engine.core.exceptions import BatchCommitFailed, MigrationError, RecordWriteError
from migration_engine.db.models import TargetRecord
from migration_engine.db.session import session_scope
from migration_engine.utils.serialization import compute_content_hash, make_json_safe

logger = logging.getLogger(__name__)

Journal = Callable[[Session], None]


@dataclass
class StoredRecord:
    id: str
    entity_type: str
    source_record_id: str
    data: Dict[str, Any]
    content_hash: str


@dataclass
class WriteOp:
    """One create or update inside a batch; ``target_id`` is assigned up front."""

    action: str  # "create" or "update"
    entity_type: str
    source_system: str
    source_record_id: str
    target_id: str
    data: Dict[str, Any]
    row_number: Optional[int] = None
    previous: Optional[Dict[str, Any]] = None


@dataclass
class RevertOp:
    """Reverse of a WriteOp: delete a created record or restore previous values."""

    action: str  # "delete" or "restore"
    entity_type: str
    target_id: str
    previous: Optional[Dict[str, Any]] = None


class RecordStore(Protocol):
    def find_by_source_keys(
        self, tenant_id: str, source_system: str, entity_type: str, source_record_ids: Iterable[str]
    ) -> Dict[str, StoredRecord]:
        ...

    def get(self, tenant_id: str, entity_type: str, record_id: str) -> Optional[StoredRecord]:
        ...

    def write_batch(self, tenant_id: str, ops: List[WriteOp], journal: Optional[Journal] = None) -> None:
        ...

    def revert_batch(self, tenant_id: str, ops: List[RevertOp], journal: Optional[Journal] = None) -> None:
        ...

    def content_hash(self, data: Dict[str, Any]) -> str:
        ...


def _to_stored(row: TargetRecord) -> StoredRecord:
    return StoredRecord(
        id=row.id,
        entity_type=row.entity_type,
        source_record_id=row.source_record_id,
        data=dict(row.data or {}),
        content_hash=row.content_hash,
    )


class SqlRecordStore:
    """
    Record store backed by the ``target_records`` table.

    Each ``write_batch``/``revert_batch`` call is one transaction. A failing
    operation aborts the whole batch and is reported as ``RecordWriteError``
    carrying its index; failures outside any operation surface as
    ``BatchCommitFailed``.
    """

    def __init__(self, session_factory=None):
        self.session_factory = session_factory

    def content_hash(self, data: Dict[str, Any]) -> str:
        return compute_content_hash(data)

    def find_by_source_keys(
        self, tenant_id: str, source_system: str, entity_type: str, source_record_ids: Iterable[str]
    ) -> Dict[str, StoredRecord]:
        ids = list({str(i) for i in source_record_ids})
        if not ids:
            return {}
        with session_scope(self.session_factory) as db:
            rows = (
                db.query(TargetRecord)
                .filter(
                    TargetRecord.tenant_id == tenant_id,
                    TargetRecord.source_system == source_system,
                    TargetRecord.entity_type == entity_type,
                    TargetRecord.source_record_id.in_(ids),
                )
                .all()
            )
            return {row.source_record_id: _to_stored(row) for row in rows}

    def get(self, tenant_id: str, entity_type: str, record_id: str) -> Optional[StoredRecord]:
        with session_scope(self.session_factory) as db:
            row = (
                db.query(TargetRecord)
                .filter(
                    TargetRecord.id == record_id,
                    TargetRecord.tenant_id == tenant_id,
                    TargetRecord.entity_type == entity_type,
                )
                .first()
            )
            return _to_stored(row) if row is not None else None

    def check_write(self, op: WriteOp) -> None:
        """Hook for store-level constraints; raise to reject a single operation."""

    def _apply_write(self, db: Session, tenant_id: str, op: WriteOp) -> None:
        self.check_write(op)
        data = make_json_safe(op.data)
        if op.action == "create":
            db.add(
                TargetRecord(
                    id=op.target_id,
                    tenant_id=tenant_id,
                    entity_type=op.entity_type,
                    source_system=op.source_system,
                    source_record_id=op.source_record_id,
                    data=data,
                    content_hash=self.content_hash(data),
                )
            )
        elif op.action == "update":
            row = db.get(TargetRecord, op.target_id)
            if row is None or row.tenant_id != tenant_id:
                raise LookupError(f"{op.entity_type} '{op.target_id}' no longer exists")
            row.data = data
            row.content_hash = self.content_hash(data)
        else:
            raise ValueError(f"Unknown write action '{op.action}'")
        db.flush()

    def write_batch(self, tenant_id: str, ops: List[WriteOp], journal: Optional[Journal] = None) -> None:
        try:
            with session_scope(self.session_factory) as db:
                for index, op in enumerate(ops):
                    try:
                        self._apply_write(db, tenant_id, op)
                    except MigrationError:
                        raise
                    except Exception as exc:
                        raise RecordWriteError(
                            index,
                            f"Could not {op.action} {op.entity_type} for source record '{op.source_record_id}': {exc}",
                            cause=exc,
                            row_number=op.row_number,
                        ) from exc
                if journal is not None:
                    journal(db)
        except MigrationError:
            raise
        except SQLAlchemyError as exc:
            raise BatchCommitFailed(-1, f"Batch commit failed: {exc}") from exc

    def revert_batch(self, tenant_id: str, ops: List[RevertOp], journal: Optional[Journal] = None) -> None:
        try:
            with session_scope(self.session_factory) as db:
                for op in ops:
                    row = db.get(TargetRecord, op.target_id)
                    if row is None or row.tenant_id != tenant_id:
                        logger.info(f"{op.entity_type} '{op.target_id}' already removed; nothing to revert")
                        continue
                    if op.action == "delete":
                        db.delete(row)
                    else:
                        data = make_json_safe(op.previous or {})
                        row.data = data
                        row.content_hash = self.content_hash(data)
                    db.flush()
                if journal is not None:
                    journal(db)
        except SQLAlchemyError as exc:
            raise BatchCommitFailed(-1, f"Rollback batch failed: {exc}") from exc
