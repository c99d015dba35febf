from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
from typing import Any, AsyncIterator, Callable
from uuid import uuid4

from pushdispatch.core.config import Settings, get_settings
from pushdispatch.core.errors import (
    CredentialConfigError,
    CredentialExchangeError,
    DispatchStoreError,
    ProfileFetchError,
)
from pushdispatch.domain.records import NotificationRecord, PendingNotification, RunSummary
from pushdispatch.services.dispatch.contracts import AccessTokenProvider, DispatchStore
from pushdispatch.services.dispatch.gateway import PushGatewayClient
from pushdispatch.services.dispatch.ledger import (
    ERROR_DRY_RUN,
    ERROR_MISSING_TOKEN,
    ERROR_SEND_FAILED,
    ERROR_SKIPPED_PREFERENCES,
    LedgerWriter,
)
from pushdispatch.services.dispatch.policy import RetryDecision, cooldown_remaining_s, evaluate_retry_policy
from pushdispatch.services.dispatch.recipients import RecipientStatus, resolve_recipient
from pushdispatch.services.resilience import RetryPolicy, retry_async
from pushdispatch.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

LOCK_LOST_ERROR = "lock_lost"


def _utc_now() -> datetime:
    # Keep retry bookkeeping in UTC for deterministic comparisons against ledger timestamps.
    return datetime.now(timezone.utc)


def _is_store_error(exc: Exception) -> bool:
    return isinstance(exc, DispatchStoreError)


@dataclass
class RunLease:
    key: str
    owner: str
    acquired: bool
    lost: bool = False


async def _keep_lease_alive(store: DispatchStore, lease: RunLease, ttl_s: int) -> None:
    # Renew at a third of the TTL so a long run never looks abandoned to other processes.
    interval_s = max(0.05, ttl_s / 3.0)
    while not lease.lost:
        await asyncio.sleep(interval_s)
        try:
            renewed = await store.renew_run_lock(lease.key, lease.owner, ttl_s)
        except DispatchStoreError:
            # Ownership cannot be confirmed; stop before another run may have taken over.
            logger.exception("dispatch_lock_renew_failed lock_key=%s owner=%s", lease.key, lease.owner)
            renewed = False
        if not renewed:
            lease.lost = True
            increment_counter("dispatch_lock_lost_total")
            logger.error("dispatch_lock_lost lock_key=%s owner=%s", lease.key, lease.owner)


@asynccontextmanager
async def run_lock(store: DispatchStore, *, key: str, owner: str, ttl_s: int) -> AsyncIterator[RunLease]:
    # Non-blocking: yields an unacquired lease immediately when another run holds it.
    lease = RunLease(key=key, owner=owner, acquired=await store.try_acquire_run_lock(key, owner, ttl_s))
    heartbeat = asyncio.create_task(_keep_lease_alive(store, lease, ttl_s)) if lease.acquired else None
    try:
        yield lease
    finally:
        if heartbeat is not None:
            heartbeat.cancel()
            with suppress(asyncio.CancelledError):
                await heartbeat
        if lease.acquired:
            try:
                await store.release_run_lock(key, owner)
            except DispatchStoreError:
                # The lease TTL reclaims it; do not mask the run's own outcome.
                logger.exception("dispatch_lock_release_failed lock_key=%s owner=%s", key, owner)


@dataclass(frozen=True)
class _RunContext:
    run_id: str
    dry_run: bool
    access_token: str | None
    project_id: str | None


class DispatchCoordinator:
    """Runs one dispatcher invocation end to end.

    A run takes the shared lease, selects its work set (one notification or a
    batch of undelivered ones), obtains the gateway credential once, and then
    handles every notification in sequence: retry policy, already-delivered
    re-check, recipient resolution, fan-out, and one ledger entry. Failures of a
    single notification are recorded and never abort the run. The lease is
    renewed in the background; once it is lost the run stops before the next
    notification.
    """

    def __init__(
        self,
        *,
        store: DispatchStore,
        credentials: AccessTokenProvider,
        gateway: PushGatewayClient | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._settings = settings or get_settings()
        self._store = store
        self._credentials = credentials
        self._gateway = gateway or PushGatewayClient(settings=self._settings)
        self._clock = clock
        self._ledger = LedgerWriter(store, clock=clock)
        self._ledger_policy = RetryPolicy(
            timeout_ms=max(1000, int(self._settings.db_statement_timeout_ms)),
            max_attempts=max(2, int(self._settings.ext_retry_max_attempts)),
            backoff_ms=self._settings.ext_retry_backoff_ms,
        )

    async def run(
        self,
        *,
        notification_id: str | None = None,
        limit: int | None = None,
        dry_run: bool = False,
    ) -> RunSummary:
        run_id = uuid4().hex
        mode = "single" if notification_id else "batch"
        summary = RunSummary(run_id=run_id, mode=mode, dry_run=dry_run)
        increment_counter("dispatch_runs_total")
        logger.info("dispatch_run_start run_id=%s mode=%s dry_run=%s", run_id, mode, dry_run)

        async with run_lock(
            self._store,
            key=self._settings.dispatch_lock_key,
            owner=run_id,
            ttl_s=self._settings.dispatch_lock_ttl_s,
        ) as lease:
            if not lease.acquired:
                increment_counter("dispatch_runs_lock_skipped_total")
                logger.info("dispatch_lock_unavailable run_id=%s", run_id)
                summary.message = "lock_unavailable"
                return summary

            if notification_id:
                work_set = await self._select_single(notification_id, summary)
            else:
                batch_limit = max(1, int(limit or self._settings.dispatch_batch_limit))
                work_set = await self._store.fetch_undelivered_notifications(batch_limit)
                if not work_set:
                    summary.message = "no_pending_notifications"
            summary.selected_count = len(work_set)
            if not work_set:
                logger.info("dispatch_run_empty run_id=%s message=%s", run_id, summary.message)
                return summary
            logger.info(
                "dispatch_work_selected run_id=%s notification_ids=%s",
                run_id,
                ",".join(item.notification.id for item in work_set),
            )

            try:
                access_token = await self._credentials.get_token()
                project_id = self._credentials.project_id
                if not project_id:
                    raise CredentialConfigError("Push project id not configured")
            except CredentialExchangeError as exc:
                increment_counter("dispatch_runs_failed_total")
                logger.error("dispatch_credential_failed run_id=%s error=%s", run_id, exc)
                summary.success = False
                summary.error = f"credential_exchange_failed: {exc}"
                return summary

            context = _RunContext(
                run_id=run_id,
                dry_run=dry_run,
                access_token=access_token,
                project_id=project_id,
            )
            for position, pending in enumerate(work_set):
                if lease.lost:
                    increment_counter("dispatch_runs_failed_total")
                    logger.error(
                        "dispatch_run_stopped run_id=%s reason=%s remaining=%s",
                        run_id,
                        LOCK_LOST_ERROR,
                        len(work_set) - position,
                    )
                    summary.success = False
                    summary.error = LOCK_LOST_ERROR
                    break
                try:
                    await self._process(pending, summary, context)
                except Exception as exc:  # noqa: BLE001 - one notification must never abort the run.
                    logger.exception(
                        "dispatch_notification_error run_id=%s notification_id=%s",
                        run_id,
                        pending.notification.id,
                    )
                    await self._record_processing_error(pending, summary, context, exc)

        logger.info("dispatch_run_summary %s", summary.log_line())
        return summary

    async def _select_single(self, notification_id: str, summary: RunSummary) -> list[PendingNotification]:
        notification = await self._store.fetch_notification(notification_id)
        if notification is None:
            summary.message = f"Notification {notification_id} not found or is hidden"
            return []
        if await self._store.has_successful_delivery(notification_id):
            summary.message = f"Notification {notification_id} already successfully delivered"
            return []
        latest = await self._store.latest_attempt(notification_id)
        return [
            PendingNotification(
                notification=notification,
                attempt_count=latest.sequence if latest is not None else 0,
                last_attempt_at=latest.sent_at if latest is not None else None,
            )
        ]

    async def _append_ledger(
        self,
        notification: NotificationRecord,
        *,
        success: bool,
        error_code: str | None,
        response: Any,
        endpoint: str | None = None,
    ) -> None:
        # Each try re-reads the latest sequence, so a retried row keeps the ledger gapless.
        await retry_async(
            lambda: self._ledger.record(
                notification,
                success=success,
                error_code=error_code,
                response=response,
                endpoint=endpoint,
            ),
            policy=self._ledger_policy,
            retryable=_is_store_error,
            integration="dispatch_ledger",
        )

    async def _process(self, pending: PendingNotification, summary: RunSummary, context: _RunContext) -> None:
        notification = pending.notification
        run_id = context.run_id
        now = self._clock()
        cooldown = timedelta(seconds=self._settings.dispatch_cooldown_s)
        decision = evaluate_retry_policy(
            attempt_count=pending.attempt_count,
            last_attempt_at=pending.last_attempt_at,
            now=now,
            max_attempts=self._settings.dispatch_max_attempts,
            cooldown=cooldown,
        )
        if decision is RetryDecision.MAX_RETRIES_EXCEEDED:
            summary.skipped_max_retries += 1
            logger.info(
                "dispatch_skipped_max_retries run_id=%s notification_id=%s attempts=%s",
                run_id,
                notification.id,
                pending.attempt_count,
            )
            return
        if decision is RetryDecision.COOLDOWN_ACTIVE:
            summary.skipped_cooldown += 1
            logger.info(
                "dispatch_skipped_cooldown run_id=%s notification_id=%s remaining_s=%s",
                run_id,
                notification.id,
                cooldown_remaining_s(last_attempt_at=pending.last_attempt_at, now=now, cooldown=cooldown),
            )
            return

        # Selection and send are not atomic with respect to other runs; re-check right before sending.
        try:
            delivered = await self._store.has_successful_delivery(notification.id)
        except DispatchStoreError as exc:
            logger.error(
                "dispatch_recheck_failed run_id=%s notification_id=%s error=%s",
                run_id,
                notification.id,
                exc,
            )
            return
        if delivered:
            logger.info("dispatch_already_delivered run_id=%s notification_id=%s", run_id, notification.id)
            return

        # Counters move only after the ledger write so a failed write lands in a single bucket.
        try:
            recipient = await resolve_recipient(self._store, notification)
        except ProfileFetchError as exc:
            logger.error(
                "dispatch_profile_failed run_id=%s notification_id=%s user_id=%s error=%s",
                run_id,
                notification.id,
                notification.user_id,
                exc,
            )
            await self._append_ledger(
                notification,
                success=False,
                error_code=ERROR_SEND_FAILED,
                response={"run_id": run_id, "error": str(exc)},
            )
            summary.sent_failed += 1
            summary.processed += 1
            return

        if recipient.status is RecipientStatus.MISSING_TOKEN:
            logger.info("dispatch_missing_token run_id=%s notification_id=%s", run_id, notification.id)
            if not context.dry_run:
                await self._append_ledger(
                    notification,
                    success=False,
                    error_code=ERROR_MISSING_TOKEN,
                    response={"run_id": run_id},
                )
            summary.missing_token += 1
            summary.processed += 1
            return

        if recipient.status is RecipientStatus.PREFERENCE_DISABLED:
            logger.info(
                "dispatch_skipped_preferences run_id=%s notification_id=%s notification_type=%s",
                run_id,
                notification.id,
                notification.notification_type,
            )
            if not context.dry_run:
                await self._append_ledger(
                    notification,
                    success=False,
                    error_code=ERROR_SKIPPED_PREFERENCES,
                    response={"run_id": run_id, "notification_type": notification.notification_type},
                )
            summary.skipped_preferences += 1
            summary.processed += 1
            return

        logger.info(
            "dispatch_sending run_id=%s notification_id=%s recipient=%s endpoints=%s",
            run_id,
            notification.id,
            recipient.profile.display_name,
            len(recipient.endpoints),
        )
        outcome = await self._gateway.deliver(
            notification=notification,
            endpoints=recipient.endpoints,
            access_token=context.access_token,
            project_id=context.project_id,
            dry_run=context.dry_run,
            run_id=run_id,
        )
        # Once the gateway has answered, the outcome is final: a ledger failure is logged, never re-classified.
        if not context.dry_run or not outcome.success:
            try:
                await self._append_ledger(
                    notification,
                    success=outcome.success and not context.dry_run,
                    error_code=ERROR_DRY_RUN if context.dry_run else ERROR_SEND_FAILED,
                    response=outcome.ledger_response(run_id),
                    endpoint=outcome.representative_endpoint,
                )
            except (DispatchStoreError, TimeoutError):
                increment_counter("dispatch_ledger_write_failures_total")
                logger.exception(
                    "dispatch_outcome_record_failed run_id=%s notification_id=%s success=%s",
                    run_id,
                    notification.id,
                    outcome.success,
                )
        if outcome.success:
            summary.sent_success += 1
            logger.info("dispatch_sent_success run_id=%s notification_id=%s", run_id, notification.id)
        else:
            summary.sent_failed += 1
            logger.info("dispatch_sent_failed run_id=%s notification_id=%s", run_id, notification.id)
        summary.processed += 1

    async def _record_processing_error(
        self,
        pending: PendingNotification,
        summary: RunSummary,
        context: _RunContext,
        exc: Exception,
    ) -> None:
        try:
            await self._append_ledger(
                pending.notification,
                success=False,
                error_code=ERROR_SEND_FAILED,
                response={"run_id": context.run_id, "error": str(exc) or type(exc).__name__},
            )
        except Exception:  # noqa: BLE001 - keep the run going; the next run re-selects this notification.
            logger.exception(
                "dispatch_error_record_failed run_id=%s notification_id=%s",
                context.run_id,
                pending.notification.id,
            )
        summary.sent_failed += 1
        summary.processed += 1


def build_default_coordinator(settings: Settings | None = None) -> DispatchCoordinator:
    # Wire the production collaborators; build once per process so the credential cache is shared.
    from pushdispatch.persistence.store import SqlDispatchStore
    from pushdispatch.services.dispatch.credentials import CredentialCache

    settings = settings or get_settings()
    return DispatchCoordinator(
        store=SqlDispatchStore(),
        credentials=CredentialCache(settings=settings),
        gateway=PushGatewayClient(settings=settings),
        settings=settings,
    )
