"""Idempotency lease store.

A lease is an exclusive, time-bounded claim on (scope, user, idempotency key).
The first request to acquire it does the work; concurrent duplicates see it as
in progress; once completed, retries replay the stored response verbatim.
Expired leases are reclaimed on the next acquire for the same key, and can be
swept in bulk with ``sweep_expired``.
"""

import hashlib
import logging
import re
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Optional, Union

from sqlalchemy import delete, select, update

from inkframe.common.config import InkframeSettings
from inkframe.common.database import DatabaseManager, insert_if_absent
from inkframe.common.exceptions import LeaseLostError
from inkframe.idempotency.models import (
    LEASE_COMPLETED,
    LEASE_LOCKED,
    IdempotencyLeaseModel,
)

logger = logging.getLogger(__name__)

IDEMPOTENCY_HEADER = "X-Idempotency-Key"
IDEMPOTENCY_KEY_MIN_LENGTH = 8
IDEMPOTENCY_KEY_MAX_LENGTH = 128
IDEMPOTENCY_KEY_PATTERN = re.compile(r"^[A-Za-z0-9._:-]+$")


def normalize_idempotency_key(raw: Optional[str]) -> Optional[str]:
    """Return the trimmed key if it is well formed, otherwise None."""
    if raw is None:
        return None
    key = raw.strip()
    if not (IDEMPOTENCY_KEY_MIN_LENGTH <= len(key) <= IDEMPOTENCY_KEY_MAX_LENGTH):
        return None
    if not IDEMPOTENCY_KEY_PATTERN.match(key):
        return None
    return key


def lease_key(scope: str, user_id: str, idempotency_key: str) -> str:
    """Hash (scope, user, key) into the lease primary key."""
    material = "\x1f".join((scope, user_id, idempotency_key))
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class LeaseToken:
    """Proof of holding a lease: the lease key plus this holder's id."""

    key: str
    holder: str


@dataclass(frozen=True)
class LeaseAcquired:
    token: LeaseToken


@dataclass(frozen=True)
class LeaseInProgress:
    pass


@dataclass(frozen=True)
class LeaseReplay:
    status_code: int
    body: Any


LeaseResult = Union[LeaseAcquired, LeaseInProgress, LeaseReplay]


class LeaseStore:
    """Idempotency leases backed by the service database."""

    def __init__(
        self,
        settings: InkframeSettings,
        db: DatabaseManager,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self.db = db
        self._clock = clock

    async def acquire(self, scope: str, user_id: str, idempotency_key: str) -> LeaseResult:
        """Claim the lease, or report it as in progress, or replay its result."""
        if not idempotency_key:
            raise ValueError("idempotency_key is required to acquire a lease")

        now = self._clock()
        key = lease_key(scope, user_id, idempotency_key)
        holder = str(uuid.uuid4())

        async with self.db.get_session() as session:
            # Reclaim a lease whose lock or replay window has lapsed.
            await session.execute(
                delete(IdempotencyLeaseModel)
                .where(
                    IdempotencyLeaseModel.key == key,
                    IdempotencyLeaseModel.expires_at <= now,
                )
                .execution_options(synchronize_session=False)
            )
            result = await insert_if_absent(session, IdempotencyLeaseModel, {
                "key": key,
                "scope": scope,
                "user_id": user_id,
                "holder": holder,
                "status": LEASE_LOCKED,
                "created_at": now,
                "expires_at": now + self.settings.lease_lock_ttl,
            })
            if result.rowcount == 1:
                return LeaseAcquired(LeaseToken(key=key, holder=holder))

            existing = (await session.execute(
                select(
                    IdempotencyLeaseModel.status,
                    IdempotencyLeaseModel.response_status,
                    IdempotencyLeaseModel.response_body,
                ).where(IdempotencyLeaseModel.key == key)
            )).one_or_none()

        if existing is not None and existing.status == LEASE_COMPLETED:
            return LeaseReplay(status_code=existing.response_status, body=existing.response_body)
        return LeaseInProgress()

    async def complete(self, token: LeaseToken, status_code: int, body: Any) -> None:
        """Mark the lease completed and store the response for replay.

        Call only after the work behind the lease has been durably persisted.
        """
        now = self._clock()
        async with self.db.get_session() as session:
            result = await session.execute(
                update(IdempotencyLeaseModel)
                .where(
                    IdempotencyLeaseModel.key == token.key,
                    IdempotencyLeaseModel.holder == token.holder,
                    IdempotencyLeaseModel.status == LEASE_LOCKED,
                )
                .values(
                    status=LEASE_COMPLETED,
                    response_status=status_code,
                    response_body=body,
                    expires_at=now + self.settings.lease_replay_ttl,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise LeaseLostError()

    async def release(self, token: LeaseToken) -> bool:
        """Drop a locked lease so the key can be retried. Best-effort, never raises."""
        try:
            async with self.db.get_session() as session:
                result = await session.execute(
                    delete(IdempotencyLeaseModel)
                    .where(
                        IdempotencyLeaseModel.key == token.key,
                        IdempotencyLeaseModel.holder == token.holder,
                        IdempotencyLeaseModel.status == LEASE_LOCKED,
                    )
                    .execution_options(synchronize_session=False)
                )
                return result.rowcount == 1
        except Exception:
            logger.exception("Failed to release idempotency lease %s", token.key)
            return False

    async def sweep_expired(self) -> int:
        """Delete every lease whose lock or replay window has lapsed."""
        now = self._clock()
        async with self.db.get_session() as session:
            result = await session.execute(
                delete(IdempotencyLeaseModel)
                .where(IdempotencyLeaseModel.expires_at <= now)
                .execution_options(synchronize_session=False)
            )
            count = result.rowcount or 0
        if count:
            logger.info("Swept %d expired idempotency leases", count)
        return count
