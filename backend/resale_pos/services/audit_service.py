# Overview: Service-layer operations for audit; append-only records of sale engine state changes.

from __future__ import annotations

from typing import Any

from ..extensions import db
from ..models import AuditLogEntry
from ..models.enums import AuditAction

"""
Audit Recorder invariants

- Append-only: entries are never updated or deleted.
- Entries are written inside the same DB transaction as the change they record,
  so a rolled-back operation leaves nothing behind.
- The recorder holds no business rules; callers decide what to record.
"""


class AuditRepository:
    """Storage port for audit entries."""

    def append(
        self,
        *,
        actor_user_id: int | None,
        action: str,
        entity_type: str,
        entity_id: int | None,
        before: Any = None,
        after: Any = None,
        meta: Any = None,
    ) -> None:
        raise NotImplementedError


class SqlAuditRepository(AuditRepository):
    """Writes into the current db.session; commit is owned by the caller."""

    def append(
        self,
        *,
        actor_user_id: int | None,
        action: str,
        entity_type: str,
        entity_id: int | None,
        before: Any = None,
        after: Any = None,
        meta: Any = None,
    ) -> None:
        db.session.add(AuditLogEntry(
            actor_user_id=actor_user_id,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            before_json=before,
            after_json=after,
            meta_json=meta,
        ))


class AuditRecorder:
    def __init__(self, repository: AuditRepository):
        self.repository = repository

    def record(
        self,
        actor_user_id: int | None,
        action: AuditAction,
        entity_type: str,
        entity_id: int | None,
        *,
        before: Any = None,
        after: Any = None,
        meta: Any = None,
    ) -> None:
        self.repository.append(
            actor_user_id=actor_user_id,
            action=AuditAction(action).value,
            entity_type=entity_type,
            entity_id=entity_id,
            before=before,
            after=after,
            meta=meta,
        )
