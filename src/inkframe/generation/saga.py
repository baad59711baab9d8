"""Generation saga orchestrator.

One request walks a fixed sequence of states:

    VALIDATING -> LEASE_CHECK -> BURST_CHECK -> QUOTA_RESERVE
        -> GENERATING -> PERSISTING -> LEASE_COMPLETE -> DONE

Any failure after VALIDATING goes through COMPENSATING to FAILED. All the
request-scoped bookkeeping lives on a ``SagaContext``; what still needs to be
undone is a pure function of that context (``compensation_plan``), and each
executed step marks itself settled, so running compensation twice is safe.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Optional

from inkframe.common.config import InkframeSettings
from inkframe.generation.errors import ErrorKind, classify_error
from inkframe.idempotency.service import (
    LeaseAcquired,
    LeaseReplay,
    LeaseStore,
    LeaseToken,
    normalize_idempotency_key,
)
from inkframe.providers.executor import GenerationOutcome, ProviderFallbackExecutor
from inkframe.providers.profiles import ProviderProfile, get_image_provider_profiles
from inkframe.providers.together import ImageRequest
from inkframe.quota.service import LimitDecision, QuotaLedger

logger = logging.getLogger(__name__)

INVALID_IDEMPOTENCY_KEY_MESSAGE = (
    "A valid X-Idempotency-Key header is required for generation requests."
)
IN_PROGRESS_MESSAGE = (
    "A matching generation request is already in progress. "
    "Please wait a moment and retry."
)
BURST_LIMITED_MESSAGE = (
    "Too many generation attempts in a short time. Please wait a minute and retry."
)


def quota_exhausted_message(limit: int) -> str:
    return f"Credits exhausted. You are limited to {limit} generations per week."


class SagaState(str, Enum):
    VALIDATING = "validating"
    LEASE_CHECK = "lease_check"
    BURST_CHECK = "burst_check"
    QUOTA_RESERVE = "quota_reserve"
    GENERATING = "generating"
    PERSISTING = "persisting"
    LEASE_COMPLETE = "lease_complete"
    DONE = "done"
    COMPENSATING = "compensating"
    FAILED = "failed"


class CompensationStep(str, Enum):
    UNDO_ENTITIES = "undo_entities"
    REFUND_QUOTA = "refund_quota"
    RELEASE_LEASE = "release_lease"


@dataclass(frozen=True)
class GenerationRequest:
    scope: str
    burst_scope: str
    user_id: str
    idempotency_key: Optional[str]


@dataclass(frozen=True)
class Rejection:
    """An expected client-facing refusal (not found, forbidden, limited...)."""

    status_code: int
    error: str
    code: str
    extra: dict[str, Any] = field(default_factory=dict)

    def to_body(self) -> dict[str, Any]:
        return {"error": self.error, "code": self.code, **self.extra}


@dataclass
class SagaResult:
    status_code: int
    body: Any
    state: SagaState
    replayed: bool = False
    error_kind: Optional[ErrorKind] = None


@dataclass
class SagaContext:
    request: GenerationRequest
    state: SagaState = SagaState.VALIDATING
    history: list[SagaState] = field(default_factory=lambda: [SagaState.VALIDATING])
    lease_token: Optional[LeaseToken] = None
    lease_completed: bool = False
    lease_released: bool = False
    reservation: Optional[LimitDecision] = None
    quota_committed: bool = False
    quota_refunded: bool = False
    entities_created: bool = False
    entities_undone: bool = False

    def transition(self, state: SagaState) -> None:
        logger.debug("Saga %s: %s -> %s", self.request.scope, self.state.value, state.value)
        self.state = state
        self.history.append(state)


def compensation_plan(ctx: SagaContext) -> list[CompensationStep]:
    """Ordered cleanup steps that still apply to ``ctx``."""
    steps: list[CompensationStep] = []
    # Entities become permanent together with the lease.
    if ctx.entities_created and not ctx.entities_undone and not ctx.lease_completed:
        steps.append(CompensationStep.UNDO_ENTITIES)
    if (
        ctx.reservation is not None
        and ctx.reservation.granted
        and not ctx.quota_committed
        and not ctx.quota_refunded
    ):
        steps.append(CompensationStep.REFUND_QUOTA)
    if ctx.lease_token is not None and not ctx.lease_completed and not ctx.lease_released:
        steps.append(CompensationStep.RELEASE_LEASE)
    return steps


class GenerationFlow(ABC):
    """Endpoint-specific part of a generation request.

    ``validate`` must be read-only. ``prepare`` may create placeholder
    records; ``undo`` removes whatever ``prepare`` and ``persist`` left
    behind and must tolerate being called after a partial ``prepare``.
    """

    scope: str
    burst_scope: str

    @abstractmethod
    async def validate(self) -> Optional[Rejection]:
        ...

    @abstractmethod
    async def prepare(self) -> ImageRequest:
        ...

    @abstractmethod
    async def persist(self, outcome: GenerationOutcome) -> dict[str, Any]:
        ...

    @abstractmethod
    async def undo(self) -> None:
        ...


def _rate_limited(message: str, code: str, decision: LimitDecision) -> Rejection:
    reset_at: Optional[datetime] = decision.reset_at
    return Rejection(
        status_code=429,
        error=message,
        code=code,
        extra={
            "is_rate_limited": True,
            "credits_remaining": decision.remaining,
            "reset_at": reset_at.isoformat() if reset_at else None,
        },
    )


class GenerationSaga:
    """Runs one generation request through lease, limits, provider and persistence."""

    def __init__(
        self,
        settings: InkframeSettings,
        leases: LeaseStore,
        ledger: QuotaLedger,
        executor: ProviderFallbackExecutor,
        profiles_provider: Optional[Callable[[], list[ProviderProfile]]] = None,
    ):
        self.settings = settings
        self.leases = leases
        self.ledger = ledger
        self.executor = executor
        self._profiles_provider = profiles_provider or (
            lambda: get_image_provider_profiles(settings)
        )

    async def run(self, request: GenerationRequest, flow: GenerationFlow) -> SagaResult:
        ctx = SagaContext(request=request)
        try:
            return await self._advance(ctx, flow)
        except Exception as exc:
            ctx.transition(SagaState.COMPENSATING)
            await self._compensate(ctx, flow)
            mapped = classify_error(exc)
            if mapped.kind in (ErrorKind.UNKNOWN, ErrorKind.INFRA_UNAVAILABLE):
                logger.error(
                    "Generation failed for %s (%s)",
                    request.scope, mapped.kind.value, exc_info=exc,
                    extra={"scope": request.scope, "error_kind": mapped.kind.value},
                )
            else:
                logger.warning(
                    "Generation failed for %s (%s): %s",
                    request.scope, mapped.kind.value, exc,
                    extra={"scope": request.scope, "error_kind": mapped.kind.value},
                )
            ctx.transition(SagaState.FAILED)
            return SagaResult(
                status_code=mapped.status_code,
                body=mapped.to_body(),
                state=ctx.state,
                error_kind=mapped.kind,
            )
        finally:
            # Covers cancellation and any exit that skipped the failure path.
            await self._compensate(ctx, flow)

    async def _advance(self, ctx: SagaContext, flow: GenerationFlow) -> SagaResult:
        request = ctx.request

        idempotency_key = normalize_idempotency_key(request.idempotency_key)
        if idempotency_key is None:
            return await self._reject(ctx, flow, Rejection(
                400, INVALID_IDEMPOTENCY_KEY_MESSAGE, "INVALID_IDEMPOTENCY_KEY",
            ))
        rejection = await flow.validate()
        if rejection is not None:
            return await self._reject(ctx, flow, rejection)

        ctx.transition(SagaState.LEASE_CHECK)
        lease = await self.leases.acquire(request.scope, request.user_id, idempotency_key)
        if isinstance(lease, LeaseReplay):
            logger.info("Replaying completed response for %s", request.scope)
            ctx.transition(SagaState.DONE)
            return SagaResult(lease.status_code, lease.body, ctx.state, replayed=True)
        if not isinstance(lease, LeaseAcquired):
            return await self._reject(ctx, flow, Rejection(409, IN_PROGRESS_MESSAGE, "IN_PROGRESS"))
        ctx.lease_token = lease.token

        ctx.transition(SagaState.BURST_CHECK)
        burst = await self.ledger.check_burst(request.user_id, request.burst_scope)
        if not burst.granted:
            return await self._reject(
                ctx, flow, _rate_limited(BURST_LIMITED_MESSAGE, "BURST_LIMITED", burst),
            )

        ctx.transition(SagaState.QUOTA_RESERVE)
        reservation = await self.ledger.reserve(request.user_id)
        ctx.reservation = reservation
        if not reservation.granted:
            return await self._reject(ctx, flow, _rate_limited(
                quota_exhausted_message(reservation.limit), "QUOTA_EXHAUSTED", reservation,
            ))

        ctx.transition(SagaState.GENERATING)
        ctx.entities_created = True
        image_request = await flow.prepare()
        outcome = await self.executor.generate(
            self._profiles_provider(), image_request, on_failure=self._report_provider_failure,
        )
        logger.info(
            "Generated image for %s with %s in %.0f ms",
            request.scope, outcome.provider_used, outcome.duration_ms,
            extra={
                "scope": request.scope,
                "provider": outcome.provider_used,
                "model": outcome.profile.model,
                "duration_ms": round(outcome.duration_ms),
            },
        )

        ctx.transition(SagaState.PERSISTING)
        body = await flow.persist(outcome)

        ctx.transition(SagaState.LEASE_COMPLETE)
        await self.leases.complete(ctx.lease_token, 200, body)
        ctx.lease_completed = True
        ctx.quota_committed = True

        ctx.transition(SagaState.DONE)
        return SagaResult(200, body, ctx.state)

    async def _reject(
        self, ctx: SagaContext, flow: GenerationFlow, rejection: Rejection,
    ) -> SagaResult:
        if ctx.state != SagaState.VALIDATING:
            ctx.transition(SagaState.COMPENSATING)
            await self._compensate(ctx, flow)
        ctx.transition(SagaState.FAILED)
        return SagaResult(rejection.status_code, rejection.to_body(), ctx.state)

    async def _compensate(self, ctx: SagaContext, flow: GenerationFlow) -> None:
        """Execute every pending compensation step; never raises."""
        for step in compensation_plan(ctx):
            if step is CompensationStep.UNDO_ENTITIES:
                ctx.entities_undone = True
                try:
                    await flow.undo()
                except Exception:
                    logger.exception("Failed to undo records for %s", ctx.request.scope)
            elif step is CompensationStep.REFUND_QUOTA:
                ctx.quota_refunded = True
                await self.ledger.refund(
                    ctx.request.user_id, window_reset_ts=ctx.reservation.window_reset_ts,
                )
            elif step is CompensationStep.RELEASE_LEASE:
                ctx.lease_released = True
                await self.leases.release(ctx.lease_token)

    @staticmethod
    def _report_provider_failure(profile: ProviderProfile, error: Exception) -> None:
        logger.warning(
            "Image provider %s (%s) failed: %s", profile.id, profile.model, error,
            extra={"provider": profile.id, "model": profile.model},
        )
