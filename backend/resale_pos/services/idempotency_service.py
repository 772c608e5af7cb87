# Overview: Service-layer operations for idempotency; deduplicates retried writes and replays stored responses.

"""
Idempotency Coordinator

WHY: POS terminals retry on flaky networks. A retried "create sale" must not
produce a second sale or a second payment; it must return the response the
first attempt produced.

LIFECYCLE of a key (scoped to actor + route + client key):
1. begin(): insert a reservation (unique constraint decides the winner)
2. the operation runs in its own transaction
3. complete(): store the final status/body exactly once
   or abandon(): drop the reservation when the operation crashed

A repeated begin() with the same key resolves to:
- Replay      same fingerprint, response stored
- InProgress  same fingerprint, no response yet
- Conflict    different fingerprint (client reused a key for another request)
Expired records are replaced by a fresh reservation.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable

from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import IdempotencyRecord
from ..results import ErrorCode, Failure
from ..time_utils import as_utc_naive, utcnow

logger = logging.getLogger(__name__)

# Matches IdempotencyRecord.key (String(255))
MAX_KEY_LENGTH = 255


class DuplicateReservation(Exception):
    """Raised by a repository when (actor, route, key) already exists."""
    pass


@dataclass(frozen=True)
class StoredRecord:
    id: int
    request_hash: str
    response_status: int | None
    response_body: Any
    expires_at: datetime

    @property
    def is_completed(self) -> bool:
        return self.response_status is not None


# Outcomes of begin()

@dataclass(frozen=True)
class Fresh:
    reservation_id: int


@dataclass(frozen=True)
class Replay:
    status: int
    body: Any


@dataclass(frozen=True)
class Conflict:
    def to_failure(self) -> Failure:
        return Failure(
            ErrorCode.IDEMPOTENCY_CONFLICT,
            "Idempotency key was already used with a different request",
            "idempotency_key_reused",
        )


@dataclass(frozen=True)
class InProgress:
    def to_failure(self) -> Failure:
        return Failure(
            ErrorCode.IN_PROGRESS,
            "A request with this idempotency key is still being processed",
            "request_in_progress",
        )


def request_fingerprint(payload: Any) -> str:
    """SHA-256 of the payload serialized with sorted keys and no whitespace."""
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class IdempotencyRepository:
    """Storage port for idempotency records."""

    def insert_reservation(
        self,
        actor_user_id: int,
        route: str,
        key: str,
        request_hash: str,
        expires_at: datetime,
    ) -> int:
        raise NotImplementedError

    def find(self, actor_user_id: int, route: str, key: str) -> StoredRecord | None:
        raise NotImplementedError

    def store_response(self, record_id: int, status: int, body: Any) -> None:
        raise NotImplementedError

    def delete(self, record_id: int) -> None:
        raise NotImplementedError

    def purge_expired(self, now: datetime) -> int:
        raise NotImplementedError


class SqlIdempotencyRepository(IdempotencyRepository):
    """
    SQLAlchemy-backed records.

    Every method commits on its own: reservations must be visible to other
    requests before the guarded operation starts, and a stored response must
    survive regardless of what the caller does next.
    """

    def insert_reservation(self, actor_user_id, route, key, request_hash, expires_at) -> int:
        record = IdempotencyRecord(
            actor_user_id=actor_user_id,
            route=route,
            key=key,
            request_hash=request_hash,
            expires_at=expires_at,
        )
        db.session.add(record)
        try:
            db.session.commit()
        except IntegrityError as exc:
            db.session.rollback()
            raise DuplicateReservation(key) from exc
        return record.id

    def find(self, actor_user_id, route, key) -> StoredRecord | None:
        record = db.session.query(IdempotencyRecord).filter_by(
            actor_user_id=actor_user_id, route=route, key=key
        ).first()
        if record is None:
            return None
        return StoredRecord(
            id=record.id,
            request_hash=record.request_hash,
            response_status=record.response_status,
            response_body=record.response_body,
            expires_at=as_utc_naive(record.expires_at),
        )

    def store_response(self, record_id, status, body) -> None:
        # Guarded on response_status IS NULL: the first stored response wins
        db.session.query(IdempotencyRecord).filter(
            IdempotencyRecord.id == record_id,
            IdempotencyRecord.response_status.is_(None),
        ).update(
            {"response_status": status, "response_body": body},
            synchronize_session=False,
        )
        db.session.commit()

    def delete(self, record_id) -> None:
        db.session.query(IdempotencyRecord).filter_by(id=record_id).delete(synchronize_session=False)
        db.session.commit()

    def purge_expired(self, now) -> int:
        deleted = db.session.query(IdempotencyRecord).filter(
            IdempotencyRecord.expires_at < now
        ).delete(synchronize_session=False)
        db.session.commit()
        return deleted


class IdempotencyCoordinator:
    # Bounded so a record that keeps vanishing between insert and lookup cannot spin forever
    MAX_RESOLVE_ATTEMPTS = 3

    def __init__(
        self,
        repository: IdempotencyRepository,
        *,
        ttl_hours: int = 24,
        now: Callable[[], datetime] = utcnow,
    ):
        self.repository = repository
        self.ttl = timedelta(hours=ttl_hours)
        self.now = now

    def begin(self, actor_user_id: int, route: str, key: str, payload: Any):
        """Reserve (actor, route, key) or resolve the existing reservation."""
        request_hash = request_fingerprint(payload)

        for _ in range(self.MAX_RESOLVE_ATTEMPTS):
            now = self.now()
            try:
                reservation_id = self.repository.insert_reservation(
                    actor_user_id, route, key, request_hash, now + self.ttl
                )
                return Fresh(reservation_id)
            except DuplicateReservation:
                pass

            existing = self.repository.find(actor_user_id, route, key)
            if existing is None:
                # Deleted between our insert and lookup; try again
                continue
            if existing.expires_at <= now:
                logger.info("Replacing expired idempotency record %s for route %s", existing.id, route)
                self.repository.delete(existing.id)
                continue
            if existing.request_hash != request_hash:
                return Conflict()
            if existing.is_completed:
                return Replay(existing.response_status, existing.response_body)
            return InProgress()

        return InProgress()

    def complete(self, reservation_id: int, status: int, body: Any) -> None:
        self.repository.store_response(reservation_id, status, body)

    def abandon(self, reservation_id: int) -> None:
        """Drop a reservation whose operation crashed so a retry can run it."""
        self.repository.delete(reservation_id)

    def purge_expired(self) -> int:
        return self.repository.purge_expired(self.now())
