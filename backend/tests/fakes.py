"""
In-memory repositories for service tests.

They follow the same contracts as the SQL repositories so the coordinator and
orchestrator can be exercised without touching idempotency/audit tables.
"""

from resale_pos.services.audit_service import AuditRepository
from resale_pos.services.idempotency_service import (
    DuplicateReservation,
    IdempotencyRepository,
    StoredRecord,
)


class InMemoryAuditRepository(AuditRepository):
    def __init__(self):
        self.entries = []

    def append(self, *, actor_user_id, action, entity_type, entity_id, before=None, after=None, meta=None):
        self.entries.append({
            "actor_user_id": actor_user_id,
            "action": action,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "before": before,
            "after": after,
            "meta": meta,
        })

    def actions(self):
        return [entry["action"] for entry in self.entries]


class InMemoryIdempotencyRepository(IdempotencyRepository):
    def __init__(self):
        self.records = {}
        self._next_id = 1

    def insert_reservation(self, actor_user_id, route, key, request_hash, expires_at):
        scope = (actor_user_id, route, key)
        if scope in self.records:
            raise DuplicateReservation(key)
        record = StoredRecord(
            id=self._next_id,
            request_hash=request_hash,
            response_status=None,
            response_body=None,
            expires_at=expires_at,
        )
        self._next_id += 1
        self.records[scope] = record
        return record.id

    def find(self, actor_user_id, route, key):
        return self.records.get((actor_user_id, route, key))

    def _scope_of(self, record_id):
        for scope, record in self.records.items():
            if record.id == record_id:
                return scope
        return None

    def store_response(self, record_id, status, body):
        scope = self._scope_of(record_id)
        if scope is None:
            return
        record = self.records[scope]
        if record.response_status is not None:
            return
        self.records[scope] = StoredRecord(
            id=record.id,
            request_hash=record.request_hash,
            response_status=status,
            response_body=body,
            expires_at=record.expires_at,
        )

    def delete(self, record_id):
        scope = self._scope_of(record_id)
        if scope is not None:
            del self.records[scope]

    def purge_expired(self, now):
        expired = [scope for scope, record in self.records.items() if record.expires_at < now]
        for scope in expired:
            del self.records[scope]
        return len(expired)
