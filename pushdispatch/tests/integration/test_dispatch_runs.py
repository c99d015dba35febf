from __future__ import annotations

import asyncio
from datetime import timedelta
import json

import httpx
import pytest

from pushdispatch.core.config import Settings
from pushdispatch.core.errors import DispatchStoreError
from pushdispatch.domain.records import DeliveryAttempt
from pushdispatch.persistence.store import SqlDispatchStore
from pushdispatch.services.dispatch.coordinator import DispatchCoordinator
from pushdispatch.services.dispatch.gateway import PushGatewayClient
from pushdispatch.services.telemetry import counters_snapshot
from pushdispatch.tests.utils.fakes import (
    FailingTokenProvider,
    RecordingGateway,
    StaticTokenProvider,
    error_response,
    success_response,
)
from pushdispatch.tests.utils.seed import (
    BASE_TIME,
    add_ledger_row,
    create_notification,
    create_profile,
    ledger_rows,
)

RUN_TIME = BASE_TIME + timedelta(hours=1)


class _FlakyLedgerStore(SqlDispatchStore):
    def __init__(self, session_factory, *, failures: int) -> None:  # noqa: ANN001
        super().__init__(session_factory)
        self.failures = failures

    async def append_delivery_attempt(self, attempt: DeliveryAttempt) -> None:
        if self.failures > 0:
            self.failures -= 1
            raise DispatchStoreError("append_delivery_attempt failed: connection reset")
        await super().append_delivery_attempt(attempt)


class _DeliveredElsewhereStore(SqlDispatchStore):
    # Another writer records a success between selection and send.
    async def has_successful_delivery(self, notification_id: str) -> bool:
        return True


class _RevokedLeaseStore(SqlDispatchStore):
    async def renew_run_lock(self, key: str, owner: str, ttl_s: int) -> bool:
        return False


def _coordinator(
    store: SqlDispatchStore,
    http_client: httpx.AsyncClient,
    *,
    credentials=None,
    clock=lambda: RUN_TIME,
    **overrides,
) -> DispatchCoordinator:
    settings = Settings(**{"push_project_id": "test-project", "ext_retry_backoff_ms": 1, **overrides})
    return DispatchCoordinator(
        store=store,
        credentials=credentials or StaticTokenProvider(),
        gateway=PushGatewayClient(http_client=http_client, settings=settings),
        settings=settings,
        clock=clock,
    )


@pytest.mark.asyncio
async def test_first_attempt_success_is_recorded(store: SqlDispatchStore, session_factory) -> None:
    # N1: one mobile endpoint, preferences enabled, gateway success.
    user_id = await create_profile(session_factory)
    notification_id = await create_notification(session_factory, user_id=user_id)
    gateway = RecordingGateway()
    async with gateway.client() as http_client:
        summary = await _coordinator(store, http_client).run()

    assert summary.success is True
    assert (summary.selected_count, summary.processed, summary.sent_success) == (1, 1, 1)
    rows = await ledger_rows(session_factory, notification_id)
    assert len(rows) == 1
    assert rows[0].success is True and rows[0].retry_count == 1 and rows[0].error_message is None
    assert rows[0].fcm_token == "mobile-token-0123456789abcdef"
    assert rows[0].fcm_response[0]["run_id"] == summary.run_id
    assert gateway.requests[0].headers["Authorization"] == "Bearer test-access-token"
    assert counters_snapshot()["dispatch_runs_total"] == 1


@pytest.mark.asyncio
async def test_missing_endpoint_is_recorded(store: SqlDispatchStore, session_factory) -> None:
    # N2: recipient without any endpoint.
    user_id = await create_profile(session_factory, fcm_token=None, fcm_token_web=None)
    notification_id = await create_notification(session_factory, user_id=user_id)
    gateway = RecordingGateway()
    async with gateway.client() as http_client:
        summary = await _coordinator(store, http_client).run()

    assert summary.missing_token == 1
    assert summary.processed == 1
    assert gateway.requests == []
    rows = await ledger_rows(session_factory, notification_id)
    assert [(row.success, row.error_message) for row in rows] == [(False, "missing_fcm_token")]


@pytest.mark.asyncio
async def test_exhausted_notification_is_skipped_without_ledger_entry(store: SqlDispatchStore, session_factory) -> None:
    # N3: five attempts already recorded.
    user_id = await create_profile(session_factory)
    notification_id = await create_notification(session_factory, user_id=user_id)
    for retry_count in range(1, 6):
        await add_ledger_row(session_factory, notification_id=notification_id, user_id=user_id, retry_count=retry_count)
    gateway = RecordingGateway()
    async with gateway.client() as http_client:
        summary = await _coordinator(store, http_client).run()

    assert summary.selected_count == 1
    assert summary.skipped_max_retries == 1
    assert summary.processed == 0
    assert len(await ledger_rows(session_factory, notification_id)) == 5
    assert gateway.requests == []


@pytest.mark.asyncio
async def test_disabled_type_is_skipped_with_ledger_entry(store: SqlDispatchStore, session_factory) -> None:
    # N4: the recipient opted out of job_assignment.
    user_id = await create_profile(session_factory, notification_prefs={"job_assignment": False})
    notification_id = await create_notification(session_factory, user_id=user_id, notification_type="job_assignment")
    gateway = RecordingGateway()
    async with gateway.client() as http_client:
        summary = await _coordinator(store, http_client).run()

    assert summary.skipped_preferences == 1
    assert gateway.requests == []
    rows = await ledger_rows(session_factory, notification_id)
    assert [(row.success, row.error_message) for row in rows] == [(False, "skipped_preferences")]


@pytest.mark.asyncio
async def test_cooldown_then_retry_increments_sequence(store: SqlDispatchStore, session_factory) -> None:
    user_id = await create_profile(session_factory)
    notification_id = await create_notification(session_factory, user_id=user_id)
    await add_ledger_row(session_factory, notification_id=notification_id, user_id=user_id, retry_count=1, sent_at=RUN_TIME)

    gateway = RecordingGateway()
    async with gateway.client() as http_client:
        cooling = await _coordinator(store, http_client, clock=lambda: RUN_TIME + timedelta(seconds=119)).run()
        retried = await _coordinator(store, http_client, clock=lambda: RUN_TIME + timedelta(seconds=120)).run()

    assert cooling.skipped_cooldown == 1
    assert retried.sent_success == 1
    rows = await ledger_rows(session_factory, notification_id)
    assert [(row.retry_count, row.success) for row in rows] == [(1, False), (2, True)]


@pytest.mark.asyncio
async def test_gateway_failure_is_recorded_and_retried_later(store: SqlDispatchStore, session_factory) -> None:
    user_id = await create_profile(session_factory)
    notification_id = await create_notification(session_factory, user_id=user_id)
    gateway = RecordingGateway(lambda request: error_response())
    async with gateway.client() as http_client:
        summary = await _coordinator(store, http_client).run()

    assert summary.sent_failed == 1
    rows = await ledger_rows(session_factory, notification_id)
    assert [(row.success, row.error_message) for row in rows] == [(False, "fcm_error")]
    assert rows[0].fcm_response[0]["error"] == "Requested entity was not found."
    pending = await store.fetch_undelivered_notifications(10)
    assert [item.notification.id for item in pending] == [notification_id]


@pytest.mark.asyncio
async def test_partial_endpoint_success_counts_as_delivered(store: SqlDispatchStore, session_factory) -> None:
    user_id = await create_profile(session_factory, fcm_token="mobile-stale", fcm_token_web="web-live")

    def _respond(request: httpx.Request) -> httpx.Response:
        token = json.loads(request.content)["message"]["token"]
        return success_response() if token == "web-live" else error_response()

    notification_id = await create_notification(session_factory, user_id=user_id)
    gateway = RecordingGateway(_respond)
    async with gateway.client() as http_client:
        summary = await _coordinator(store, http_client).run()

    assert summary.sent_success == 1
    rows = await ledger_rows(session_factory, notification_id)
    assert rows[0].success is True
    # Mobile endpoint is the representative one even though only web succeeded.
    assert rows[0].fcm_token == "mobile-stale"
    assert [entry["token"] for entry in rows[0].fcm_response] == ["mobile-stale...", "web-live..."]


@pytest.mark.asyncio
async def test_previously_delivered_notification_is_never_resent(store: SqlDispatchStore, session_factory) -> None:
    user_id = await create_profile(session_factory)
    notification_id = await create_notification(session_factory, user_id=user_id)
    await add_ledger_row(session_factory, notification_id=notification_id, user_id=user_id, retry_count=1, success=True)
    gateway = RecordingGateway()
    async with gateway.client() as http_client:
        batch = await _coordinator(store, http_client).run()
        single = await _coordinator(store, http_client).run(notification_id=notification_id)

    assert batch.message == "no_pending_notifications"
    assert single.message == f"Notification {notification_id} already successfully delivered"
    assert gateway.requests == []
    assert len(await ledger_rows(session_factory, notification_id)) == 1


@pytest.mark.asyncio
async def test_single_mode_not_found_or_hidden(store: SqlDispatchStore, session_factory) -> None:
    user_id = await create_profile(session_factory)
    hidden = await create_notification(session_factory, user_id=user_id, is_hidden=True)
    credentials = StaticTokenProvider()
    gateway = RecordingGateway()
    async with gateway.client() as http_client:
        summary = await _coordinator(store, http_client, credentials=credentials).run(notification_id=hidden)

    assert summary.mode == "single"
    assert summary.selected_count == 0
    assert summary.message == f"Notification {hidden} not found or is hidden"
    assert credentials.calls == 0


@pytest.mark.asyncio
async def test_single_mode_targets_one_notification(store: SqlDispatchStore, session_factory) -> None:
    user_id = await create_profile(session_factory)
    target = await create_notification(session_factory, user_id=user_id, offset_s=5)
    other = await create_notification(session_factory, user_id=user_id, offset_s=1)
    gateway = RecordingGateway()
    async with gateway.client() as http_client:
        summary = await _coordinator(store, http_client).run(notification_id=target)

    assert summary.sent_success == 1
    assert [message["data"]["notification_id"] for message in gateway.sent_messages()] == [target]
    assert await ledger_rows(session_factory, other) == []


@pytest.mark.asyncio
async def test_dry_run_never_persists_success(store: SqlDispatchStore, session_factory) -> None:
    user_id = await create_profile(session_factory)
    deliverable = await create_notification(session_factory, user_id=user_id, offset_s=1)
    tokenless_user = await create_profile(session_factory, fcm_token=None)
    tokenless = await create_notification(session_factory, user_id=tokenless_user, offset_s=2)
    credentials = StaticTokenProvider()
    gateway = RecordingGateway()
    async with gateway.client() as http_client:
        summary = await _coordinator(store, http_client, credentials=credentials).run(dry_run=True)

    assert summary.dry_run is True
    assert summary.sent_success == 1
    assert summary.missing_token == 1
    assert gateway.requests == []
    assert credentials.calls == 1
    assert await ledger_rows(session_factory, deliverable) == []
    assert await ledger_rows(session_factory, tokenless) == []


@pytest.mark.asyncio
async def test_credential_failure_aborts_run_and_releases_lock(store: SqlDispatchStore, session_factory) -> None:
    user_id = await create_profile(session_factory)
    notification_id = await create_notification(session_factory, user_id=user_id)
    gateway = RecordingGateway()
    async with gateway.client() as http_client:
        failed = await _coordinator(store, http_client, credentials=FailingTokenProvider()).run()
        recovered = await _coordinator(store, http_client).run()

    assert failed.success is False
    assert failed.error.startswith("credential_exchange_failed:")
    assert failed.processed == 0
    assert recovered.sent_success == 1
    assert len(await ledger_rows(session_factory, notification_id)) == 1


@pytest.mark.asyncio
async def test_missing_profile_is_recorded_as_failure(store: SqlDispatchStore, session_factory) -> None:
    notification_id = await create_notification(session_factory, user_id="ghost-user")
    gateway = RecordingGateway()
    async with gateway.client() as http_client:
        summary = await _coordinator(store, http_client).run()

    assert summary.sent_failed == 1
    assert summary.processed == 1
    rows = await ledger_rows(session_factory, notification_id)
    assert [(row.success, row.error_message) for row in rows] == [(False, "fcm_error")]


@pytest.mark.asyncio
async def test_unexpected_error_does_not_abort_batch(store: SqlDispatchStore, session_factory) -> None:
    user_id = await create_profile(session_factory)
    broken = await create_notification(session_factory, user_id=user_id, offset_s=1, notification_type="boom")
    healthy = await create_notification(session_factory, user_id=user_id, offset_s=2)

    def _respond(request: httpx.Request) -> httpx.Response:
        if json.loads(request.content)["message"]["data"]["notification_type"] == "boom":
            raise RuntimeError("unexpected failure")
        return success_response()

    gateway = RecordingGateway(_respond)
    async with gateway.client() as http_client:
        summary = await _coordinator(store, http_client).run()

    assert summary.processed == 2
    assert (summary.sent_success, summary.sent_failed) == (1, 1)
    broken_rows = await ledger_rows(session_factory, broken)
    assert [(row.success, row.error_message) for row in broken_rows] == [(False, "fcm_error")]
    assert broken_rows[0].fcm_response["error"] == "unexpected failure"
    assert (await ledger_rows(session_factory, healthy))[0].success is True


@pytest.mark.asyncio
async def test_concurrent_runs_are_mutually_exclusive(store: SqlDispatchStore, session_factory) -> None:
    user_id = await create_profile(session_factory)
    notification_id = await create_notification(session_factory, user_id=user_id)
    sending = asyncio.Event()
    release = asyncio.Event()

    async def _blocking(request: httpx.Request) -> httpx.Response:
        sending.set()
        await release.wait()
        return success_response()

    gateway = RecordingGateway(_blocking)
    async with gateway.client() as http_client:
        first = asyncio.create_task(_coordinator(store, http_client).run())
        await asyncio.wait_for(sending.wait(), timeout=5)
        second = await _coordinator(store, http_client).run()
        release.set()
        first_summary = await first

    assert second.message == "lock_unavailable"
    assert second.selected_count == 0 and second.processed == 0
    assert first_summary.sent_success == 1
    assert len(gateway.requests) == 1
    assert len(await ledger_rows(session_factory, notification_id)) == 1
    assert counters_snapshot()["dispatch_runs_lock_skipped_total"] == 1


@pytest.mark.asyncio
async def test_delivered_outcome_survives_transient_ledger_failure(session_factory) -> None:
    store = _FlakyLedgerStore(session_factory, failures=1)
    user_id = await create_profile(session_factory)
    notification_id = await create_notification(session_factory, user_id=user_id)
    gateway = RecordingGateway()
    async with gateway.client() as http_client:
        first = await _coordinator(store, http_client).run()
        later = await _coordinator(store, http_client, clock=lambda: RUN_TIME + timedelta(minutes=5)).run()

    assert (first.sent_success, first.sent_failed, first.processed) == (1, 0, 1)
    rows = await ledger_rows(session_factory, notification_id)
    assert [(row.retry_count, row.success, row.error_message) for row in rows] == [(1, True, None)]
    assert later.message == "no_pending_notifications"
    assert len(gateway.requests) == 1


@pytest.mark.asyncio
async def test_delivered_outcome_is_never_rewritten_as_failure(session_factory) -> None:
    store = _FlakyLedgerStore(session_factory, failures=100)
    user_id = await create_profile(session_factory)
    notification_id = await create_notification(session_factory, user_id=user_id)
    gateway = RecordingGateway()
    async with gateway.client() as http_client:
        summary = await _coordinator(store, http_client).run()

    assert (summary.sent_success, summary.sent_failed, summary.processed) == (1, 0, 1)
    assert await ledger_rows(session_factory, notification_id) == []
    assert counters_snapshot()["dispatch_ledger_write_failures_total"] == 1


@pytest.mark.asyncio
async def test_missing_token_counted_once_after_transient_ledger_failure(session_factory) -> None:
    store = _FlakyLedgerStore(session_factory, failures=1)
    user_id = await create_profile(session_factory, fcm_token=None)
    notification_id = await create_notification(session_factory, user_id=user_id)
    gateway = RecordingGateway()
    async with gateway.client() as http_client:
        summary = await _coordinator(store, http_client).run()

    assert (summary.missing_token, summary.sent_failed, summary.processed) == (1, 0, 1)
    rows = await ledger_rows(session_factory, notification_id)
    assert [(row.success, row.error_message) for row in rows] == [(False, "missing_fcm_token")]


@pytest.mark.asyncio
async def test_unrecordable_skip_lands_in_a_single_bucket(session_factory) -> None:
    store = _FlakyLedgerStore(session_factory, failures=100)
    user_id = await create_profile(session_factory, notification_prefs={"job_assignment": False})
    await create_notification(session_factory, user_id=user_id)
    gateway = RecordingGateway()
    async with gateway.client() as http_client:
        summary = await _coordinator(store, http_client).run()

    assert (summary.skipped_preferences, summary.sent_failed, summary.processed) == (0, 1, 1)


@pytest.mark.asyncio
async def test_success_recorded_after_selection_prevents_send(session_factory) -> None:
    store = _DeliveredElsewhereStore(session_factory)
    user_id = await create_profile(session_factory)
    notification_id = await create_notification(session_factory, user_id=user_id)
    gateway = RecordingGateway()
    async with gateway.client() as http_client:
        summary = await _coordinator(store, http_client).run()

    assert summary.selected_count == 1
    assert summary.processed == 0
    assert (summary.sent_success, summary.sent_failed, summary.missing_token, summary.skipped_preferences) == (
        0,
        0,
        0,
        0,
    )
    assert gateway.requests == []
    assert await ledger_rows(session_factory, notification_id) == []


@pytest.mark.asyncio
async def test_dry_run_preference_skip_is_counted_but_not_recorded(store: SqlDispatchStore, session_factory) -> None:
    user_id = await create_profile(session_factory, notification_prefs={"job_assignment": False})
    notification_id = await create_notification(session_factory, user_id=user_id, notification_type="job_assignment")
    gateway = RecordingGateway()
    async with gateway.client() as http_client:
        summary = await _coordinator(store, http_client).run(dry_run=True)

    assert summary.skipped_preferences == 1
    assert summary.processed == 1
    assert gateway.requests == []
    assert await ledger_rows(session_factory, notification_id) == []


@pytest.mark.asyncio
async def test_lease_is_renewed_while_a_slow_run_is_sending(store: SqlDispatchStore, session_factory) -> None:
    user_id = await create_profile(session_factory)
    await create_notification(session_factory, user_id=user_id)
    sending = asyncio.Event()

    async def _slow(request: httpx.Request) -> httpx.Response:
        sending.set()
        await asyncio.sleep(1.2)
        return success_response()

    gateway = RecordingGateway(_slow)
    async with gateway.client() as http_client:
        first = asyncio.create_task(_coordinator(store, http_client, dispatch_lock_ttl_s=1).run())
        await asyncio.wait_for(sending.wait(), timeout=5)
        await asyncio.sleep(1.05)
        second = await _coordinator(store, http_client, dispatch_lock_ttl_s=1).run()
        first_summary = await first

    assert second.message == "lock_unavailable"
    assert second.selected_count == 0
    assert first_summary.sent_success == 1
    assert len(gateway.requests) == 1


@pytest.mark.asyncio
async def test_run_stops_when_lease_is_lost(session_factory) -> None:
    store = _RevokedLeaseStore(session_factory)
    user_id = await create_profile(session_factory)
    first_id = await create_notification(session_factory, user_id=user_id, offset_s=1)
    second_id = await create_notification(session_factory, user_id=user_id, offset_s=2)

    async def _slow(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(0.6)
        return success_response()

    gateway = RecordingGateway(_slow)
    async with gateway.client() as http_client:
        summary = await _coordinator(store, http_client, dispatch_lock_ttl_s=1).run()

    assert summary.success is False
    assert summary.error == "lock_lost"
    assert (summary.selected_count, summary.processed, summary.sent_success) == (2, 1, 1)
    assert len(await ledger_rows(session_factory, first_id)) == 1
    assert await ledger_rows(session_factory, second_id) == []
