from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class AuditLogEntry(db.Model):
    """
    Append-only record of a state change.

    IMMUTABLE: never updated or deleted. Entries are written inside the same
    transaction as the change they describe, so a rolled-back operation leaves
    no audit trail behind.
    """
    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("ix_audit_logs_entity_created", "entity_type", "entity_id", "created_at"),
        db.Index("ix_audit_logs_actor_created", "actor_user_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    actor_user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    action = db.Column(db.String(64), nullable=False, index=True)
    entity_type = db.Column(db.String(32), nullable=False)
    entity_id = db.Column(db.Integer, nullable=True)

    before_json = db.Column(db.JSON, nullable=True)
    after_json = db.Column(db.JSON, nullable=True)
    meta_json = db.Column(db.JSON, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "actor_user_id": self.actor_user_id,
            "action": self.action,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "before": self.before_json,
            "after": self.after_json,
            "meta": self.meta_json,
            "created_at": to_utc_z(self.created_at),
        }


class IdempotencyRecord(db.Model):
    """
    One row per logical write attempt under a client-supplied key.

    The unique (actor, route, key) constraint is what makes duplicate
    submissions safe: only one insert can win. response_status/body stay NULL
    while the attempt is in flight and are written exactly once.
    """
    __tablename__ = "idempotency_keys"
    __table_args__ = (
        db.UniqueConstraint("actor_user_id", "route", "key", name="uq_idempotency_actor_route_key"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    actor_user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    route = db.Column(db.String(128), nullable=False)
    key = db.Column(db.String(255), nullable=False)

    request_hash = db.Column(db.String(64), nullable=False)
    response_status = db.Column(db.Integer, nullable=True)
    response_body = db.Column(db.JSON, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)

    @property
    def is_completed(self) -> bool:
        return self.response_status is not None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "actor_user_id": self.actor_user_id,
            "route": self.route,
            "key": self.key,
            "request_hash": self.request_hash,
            "response_status": self.response_status,
            "created_at": to_utc_z(self.created_at),
            "expires_at": to_utc_z(self.expires_at),
        }
