"""Tests for the generation saga: ordering, compensation and replay."""

import asyncio
from typing import Optional

import httpx
import pytest
from sqlalchemy import exc as sa_exc

from conftest import FakeImageClient, make_settings
from inkframe.common.exceptions import LeaseLostError, ProviderError
from inkframe.generation.errors import ErrorKind
from inkframe.generation.saga import (
    CompensationStep,
    GenerationFlow,
    GenerationRequest,
    GenerationSaga,
    Rejection,
    SagaContext,
    SagaState,
    compensation_plan,
)
from inkframe.idempotency.service import (
    LeaseAcquired,
    LeaseStore,
    LeaseToken,
)
from inkframe.providers.executor import ProviderFallbackExecutor
from inkframe.providers.together import ImageRequest
from inkframe.quota.service import LimitDecision, QuotaLedger

SCOPE = "generate-comic:new-story"
KEY = "saga-key-000001"


class RecordingFlow(GenerationFlow):
    scope = SCOPE
    burst_scope = "generate-comic"

    def __init__(
        self,
        rejection: Optional[Rejection] = None,
        prepare_error: Optional[BaseException] = None,
        persist_error: Optional[BaseException] = None,
    ):
        self.rejection = rejection
        self.prepare_error = prepare_error
        self.persist_error = persist_error
        self.calls: list[str] = []

    async def validate(self):
        self.calls.append("validate")
        return self.rejection

    async def prepare(self):
        self.calls.append("prepare")
        if self.prepare_error is not None:
            raise self.prepare_error
        return ImageRequest(prompt="a detective in the rain")

    async def persist(self, outcome):
        self.calls.append("persist")
        if self.persist_error is not None:
            raise self.persist_error
        return {"image_url": outcome.image_url, "page_id": "page-1", "page_number": 1}

    async def undo(self):
        self.calls.append("undo")


class CountingLedger(QuotaLedger):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.refunds = 0

    async def refund(self, user_id, window_reset_ts=None):
        self.refunds += 1
        return await super().refund(user_id, window_reset_ts)


@pytest.fixture
def saga_settings():
    return make_settings(weekly_generation_quota=3, burst_limit=5)


@pytest.fixture
def leases(db, clock, saga_settings):
    return LeaseStore(saga_settings, db, clock=clock)


@pytest.fixture
def ledger(db, clock, saga_settings):
    return CountingLedger(saga_settings, db, clock=clock)


@pytest.fixture
def image_client():
    return FakeImageClient()


@pytest.fixture
def saga(saga_settings, leases, ledger, image_client):
    return GenerationSaga(
        saga_settings,
        leases=leases,
        ledger=ledger,
        executor=ProviderFallbackExecutor(image_client),
    )


def _request(key: Optional[str] = KEY, user_id: str = "alice") -> GenerationRequest:
    return GenerationRequest(
        scope=SCOPE, burst_scope="generate-comic", user_id=user_id, idempotency_key=key,
    )


class TestHappyPath:
    async def test_success_walks_every_state(self, saga, ledger):
        flow = RecordingFlow()
        result = await saga.run(_request(), flow)

        assert result.status_code == 200
        assert result.body["page_id"] == "page-1"
        assert result.state is SagaState.DONE
        assert result.replayed is False
        assert flow.calls == ["validate", "prepare", "persist"]
        assert (await ledger.peek("alice")).remaining == 2
        assert ledger.refunds == 0

    async def test_retry_replays_without_work(self, saga, ledger, image_client):
        first = await saga.run(_request(), RecordingFlow())
        retry_flow = RecordingFlow()
        second = await saga.run(_request(), retry_flow)

        assert second.replayed is True
        assert second.status_code == first.status_code
        assert second.body == first.body
        assert len(image_client.calls) == 1
        assert retry_flow.calls == ["validate"]
        assert (await ledger.peek("alice")).remaining == 2

    async def test_new_key_generates_again(self, saga, ledger, image_client):
        await saga.run(_request("saga-key-000001"), RecordingFlow())
        await saga.run(_request("saga-key-000002"), RecordingFlow())
        assert len(image_client.calls) == 2
        assert (await ledger.peek("alice")).remaining == 1


class TestEarlyRejections:
    @pytest.mark.parametrize("key", [None, "", "short", "bad key with spaces"])
    async def test_invalid_key_touches_nothing(self, saga, leases, key):
        flow = RecordingFlow()
        result = await saga.run(_request(key), flow)

        assert result.status_code == 400
        assert result.body["code"] == "INVALID_IDEMPOTENCY_KEY"
        assert result.state is SagaState.FAILED
        assert flow.calls == []

    async def test_validation_rejection_takes_no_lease(self, saga, leases, ledger):
        flow = RecordingFlow(rejection=Rejection(404, "Story not found", "NOT_FOUND"))
        result = await saga.run(_request(), flow)

        assert result.status_code == 404
        assert result.body == {"error": "Story not found", "code": "NOT_FOUND"}
        assert isinstance(await leases.acquire(SCOPE, "alice", KEY), LeaseAcquired)
        assert (await ledger.peek("alice")).reset_at is None

    async def test_in_progress_is_conflict_and_keeps_lease(self, saga, leases, ledger, image_client):
        held = await leases.acquire(SCOPE, "alice", KEY)
        result = await saga.run(_request(), RecordingFlow())

        assert result.status_code == 409
        assert result.body["code"] == "IN_PROGRESS"
        assert result.state is SagaState.FAILED
        assert image_client.calls == []
        assert (await ledger.peek("alice")).reset_at is None
        # The other request's lease is untouched.
        assert await leases.release(held.token) is True


class TestLimits:
    async def test_burst_rejection_releases_lease_without_refund(self, db, clock, leases, image_client):
        settings = make_settings(weekly_generation_quota=3, burst_limit=1)
        ledger = CountingLedger(settings, db, clock=clock)
        saga = GenerationSaga(
            settings, leases=leases, ledger=ledger,
            executor=ProviderFallbackExecutor(image_client),
        )
        await saga.run(_request("burst-key-0001"), RecordingFlow())
        result = await saga.run(_request("burst-key-0002"), RecordingFlow())

        assert result.status_code == 429
        assert result.body["code"] == "BURST_LIMITED"
        assert result.body["is_rate_limited"] is True
        assert "reset_at" in result.body
        assert len(image_client.calls) == 1
        assert (await ledger.peek("alice")).remaining == 2
        assert ledger.refunds == 0
        assert isinstance(await leases.acquire(SCOPE, "alice", "burst-key-0002"), LeaseAcquired)

    async def test_quota_exhaustion(self, saga, leases, ledger, image_client):
        for i in range(3):
            assert (await saga.run(_request(f"quota-key-{i:04d}"), RecordingFlow())).status_code == 200

        result = await saga.run(_request("quota-key-9999"), RecordingFlow())

        assert result.status_code == 429
        assert result.body["code"] == "QUOTA_EXHAUSTED"
        assert result.body["credits_remaining"] == 0
        assert result.body["reset_at"] is not None
        assert result.body["error"] == "Credits exhausted. You are limited to 3 generations per week."
        assert len(image_client.calls) == 3
        assert ledger.refunds == 0
        assert isinstance(await leases.acquire(SCOPE, "alice", "quota-key-9999"), LeaseAcquired)

    async def test_concurrent_last_unit(self, file_db, clock, image_client):
        settings = make_settings(weekly_generation_quota=1)
        saga = GenerationSaga(
            settings,
            leases=LeaseStore(settings, file_db, clock=clock),
            ledger=QuotaLedger(settings, file_db, clock=clock),
            executor=ProviderFallbackExecutor(image_client),
        )
        results = await asyncio.gather(
            saga.run(_request("race-key-0001"), RecordingFlow()),
            saga.run(_request("race-key-0002"), RecordingFlow()),
        )
        statuses = sorted(r.status_code for r in results)
        assert statuses == [200, 429]
        limited = next(r for r in results if r.status_code == 429)
        assert limited.body["credits_remaining"] == 0


class TestCompensation:
    async def test_provider_failure_refunds_releases_and_undoes(self, saga, leases, ledger, image_client):
        image_client.fail_all(ProviderError("upstream exploded", status_code=500))
        flow = RecordingFlow()
        result = await saga.run(_request(), flow)

        assert result.status_code == 500
        assert result.error_kind is ErrorKind.PROVIDER_ERROR
        assert "exploded" not in result.body["error"]
        assert result.state is SagaState.FAILED
        assert flow.calls == ["validate", "prepare", "undo"]
        assert ledger.refunds == 1
        assert (await ledger.peek("alice")).remaining == 3
        assert isinstance(await leases.acquire(SCOPE, "alice", KEY), LeaseAcquired)

    async def test_persist_failure_is_infra_and_net_zero(self, saga, leases, ledger):
        error = sa_exc.OperationalError("UPDATE pages", {}, Exception("database is locked"))
        flow = RecordingFlow(persist_error=error)
        result = await saga.run(_request(), flow)

        assert result.status_code == 503
        assert result.error_kind is ErrorKind.INFRA_UNAVAILABLE
        assert flow.calls == ["validate", "prepare", "persist", "undo"]
        assert (await ledger.peek("alice")).remaining == 3
        assert isinstance(await leases.acquire(SCOPE, "alice", KEY), LeaseAcquired)

    @pytest.mark.parametrize("cause", [
        httpx.ReadTimeout("read timed out"),
        httpx.ConnectError("[Errno 111] Connection refused"),
    ])
    async def test_provider_transport_failure_is_unknown(self, saga, leases, ledger, image_client, cause):
        error = ProviderError("Provider together-primary timed out")
        error.__cause__ = cause
        image_client.fail_all(error)
        flow = RecordingFlow()
        result = await saga.run(_request(), flow)

        assert result.status_code == 500
        assert result.error_kind is ErrorKind.UNKNOWN
        assert result.body == {"error": "Generation failed. Please retry.", "code": "UNKNOWN"}
        assert flow.calls[-1] == "undo"
        assert (await ledger.peek("alice")).remaining == 3
        assert isinstance(await leases.acquire(SCOPE, "alice", KEY), LeaseAcquired)

    async def test_prepare_failure_still_undoes(self, saga, ledger):
        flow = RecordingFlow(prepare_error=RuntimeError("insert failed"))
        result = await saga.run(_request(), flow)

        assert result.status_code == 500
        assert "undo" in flow.calls
        assert (await ledger.peek("alice")).remaining == 3

    async def test_lease_complete_failure_is_fully_compensated(self, saga, leases, ledger, monkeypatch):
        async def lost(token, status_code, body):
            raise LeaseLostError()

        monkeypatch.setattr(leases, "complete", lost)
        flow = RecordingFlow()
        result = await saga.run(_request(), flow)

        assert result.status_code == 500
        assert flow.calls[-1] == "undo"
        assert ledger.refunds == 1
        assert (await ledger.peek("alice")).remaining == 3
        assert isinstance(await leases.acquire(SCOPE, "alice", KEY), LeaseAcquired)

    async def test_compensation_runs_once(self, saga, ledger, image_client):
        image_client.fail_all(ProviderError("down", status_code=503))
        flow = RecordingFlow()
        await saga.run(_request(), flow)
        assert ledger.refunds == 1
        assert flow.calls.count("undo") == 1

    async def test_cancellation_still_compensates(self, saga, leases, ledger, image_client):
        image_client.fail_all(asyncio.CancelledError())
        flow = RecordingFlow()
        with pytest.raises(asyncio.CancelledError):
            await saga.run(_request(), flow)

        assert flow.calls[-1] == "undo"
        assert (await ledger.peek("alice")).remaining == 3
        assert isinstance(await leases.acquire(SCOPE, "alice", KEY), LeaseAcquired)

    async def test_empty_provider_chain(self, saga_settings, leases, ledger, image_client):
        saga = GenerationSaga(
            saga_settings, leases=leases, ledger=ledger,
            executor=ProviderFallbackExecutor(image_client),
            profiles_provider=lambda: [],
        )
        result = await saga.run(_request(), RecordingFlow())
        assert result.status_code == 500
        assert result.error_kind is ErrorKind.UNKNOWN
        assert (await ledger.peek("alice")).remaining == 3

    async def test_store_unavailable_fails_closed(self, saga, db, image_client):
        await db.close()
        flow = RecordingFlow()
        result = await saga.run(_request(), flow)

        assert result.status_code == 500
        assert result.state is SagaState.FAILED
        assert image_client.calls == []
        assert "undo" not in flow.calls


class TestCompensationPlan:
    def _ctx(self, **flags) -> SagaContext:
        ctx = SagaContext(request=_request())
        for name, value in flags.items():
            setattr(ctx, name, value)
        return ctx

    def _granted(self) -> LimitDecision:
        return LimitDecision(granted=True, remaining=2, limit=3, reset_at=None, window_reset_ts=1.0)

    def test_nothing_acquired(self):
        assert compensation_plan(self._ctx()) == []

    def test_lease_only(self):
        ctx = self._ctx(lease_token=LeaseToken("k", "h"))
        assert compensation_plan(ctx) == [CompensationStep.RELEASE_LEASE]

    def test_denied_reservation_is_not_refunded(self):
        denied = LimitDecision(granted=False, remaining=0, limit=3, reset_at=None)
        ctx = self._ctx(lease_token=LeaseToken("k", "h"), reservation=denied)
        assert compensation_plan(ctx) == [CompensationStep.RELEASE_LEASE]

    def test_full_rollback_order(self):
        ctx = self._ctx(
            lease_token=LeaseToken("k", "h"),
            reservation=self._granted(),
            entities_created=True,
        )
        assert compensation_plan(ctx) == [
            CompensationStep.UNDO_ENTITIES,
            CompensationStep.REFUND_QUOTA,
            CompensationStep.RELEASE_LEASE,
        ]

    def test_settled_steps_are_skipped(self):
        ctx = self._ctx(
            lease_token=LeaseToken("k", "h"),
            reservation=self._granted(),
            entities_created=True,
            entities_undone=True,
            quota_refunded=True,
            lease_released=True,
        )
        assert compensation_plan(ctx) == []

    def test_completed_lease_commits_everything(self):
        ctx = self._ctx(
            lease_token=LeaseToken("k", "h"),
            reservation=self._granted(),
            entities_created=True,
            lease_completed=True,
            quota_committed=True,
        )
        assert compensation_plan(ctx) == []
