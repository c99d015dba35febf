from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
import time
from typing import Any, Iterable

import httpx

from pushdispatch.core.config import Settings, get_settings
from pushdispatch.core.errors import (
    CredentialConfigError,
    GatewayMalformedResponseError,
    GatewayResponseError,
    GatewayUnreachableError,
)
from pushdispatch.domain.records import NotificationRecord
from pushdispatch.services.dispatch.messages import build_gateway_message, mask_token
from pushdispatch.services.telemetry import increment_counter, record_external_call


logger = logging.getLogger(__name__)

DRY_RUN_MESSAGE_ID = "dry_run_simulated_id"


@dataclass(frozen=True)
class EndpointResult:
    endpoint: str
    success: bool
    response: dict[str, Any]
    error_code: str | None = None
    message_id: str | None = None


@dataclass(frozen=True)
class DeliveryOutcome:
    success: bool
    results: list[EndpointResult] = field(default_factory=list)

    @property
    def representative_endpoint(self) -> str | None:
        return self.results[0].endpoint if self.results else None

    def ledger_response(self, run_id: str) -> list[dict[str, Any]]:
        return [{**result.response, "run_id": run_id} for result in self.results]


def aggregate_endpoint_results(results: Iterable[EndpointResult]) -> DeliveryOutcome:
    # Any endpoint reaching the gateway successfully delivers the notification.
    collected = list(results)
    return DeliveryOutcome(success=any(result.success for result in collected), results=collected)


def classify_gateway_response(*, endpoint: str, status_code: int, body: str) -> EndpointResult:
    """Classify one raw gateway answer.

    HTML error pages and unparseable bodies are hard failures, a JSON ``error``
    object is a failure carrying its message, and a JSON ``name`` is the success
    marker whose trailing path segment is the message id.
    """
    masked = mask_token(endpoint)
    if body.lstrip().startswith("<"):
        error = GatewayResponseError("FCM API returned HTML error page")
        return EndpointResult(
            endpoint=endpoint,
            success=False,
            error_code=error.code,
            response={
                "error": str(error),
                "error_code": error.code,
                "status": status_code,
                "rawResponse": f"{body[:200]}...",
                "token": masked,
            },
        )
    try:
        payload = json.loads(body)
    except ValueError:
        error = GatewayMalformedResponseError("Invalid JSON response from FCM")
        return EndpointResult(
            endpoint=endpoint,
            success=False,
            error_code=error.code,
            response={
                "error": str(error),
                "error_code": error.code,
                "status": status_code,
                "rawResponse": body[:500],
                "token": masked,
            },
        )
    if not isinstance(payload, dict):
        error = GatewayMalformedResponseError("Unexpected FCM response shape")
        return EndpointResult(
            endpoint=endpoint,
            success=False,
            error_code=error.code,
            response={"error": str(error), "error_code": error.code, "status": status_code, "token": masked},
        )
    if payload.get("error"):
        raw_error = payload["error"]
        message = raw_error.get("message") if isinstance(raw_error, dict) else None
        response = dict(payload)
        response.update(
            {
                "error": str(message or raw_error),
                "error_code": GatewayResponseError.code,
                "status": status_code,
                "token": masked,
            }
        )
        if isinstance(raw_error, dict) and raw_error.get("status"):
            response["error_status"] = raw_error["status"]
        return EndpointResult(endpoint=endpoint, success=False, error_code=GatewayResponseError.code, response=response)
    name = payload.get("name")
    if isinstance(name, str) and name:
        message_id = name.rsplit("/", 1)[-1]
        response = dict(payload)
        response.update({"success": 1, "message_id": message_id, "token": masked})
        return EndpointResult(endpoint=endpoint, success=True, response=response, message_id=message_id)
    error = GatewayMalformedResponseError("FCM response carried neither error nor name")
    response = dict(payload)
    response.update({"error": str(error), "error_code": error.code, "status": status_code, "token": masked})
    return EndpointResult(endpoint=endpoint, success=False, error_code=error.code, response=response)


class PushGatewayClient:
    """Sends one message per endpoint to the push gateway with a bearer credential."""

    def __init__(
        self,
        *,
        http_client: httpx.AsyncClient | None = None,
        settings: Settings | None = None,
        project_id: str | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._http_client = http_client
        self._project_id = project_id

    def _send_url(self, project_id: str | None) -> str:
        resolved = self._project_id or self._settings.push_project_id or project_id
        if not resolved:
            raise CredentialConfigError("Push project id not configured")
        return self._settings.push_gateway_url.format(project_id=resolved)

    async def _post(self, url: str, *, token: str, message: dict[str, Any]) -> httpx.Response:
        headers = {"Content-Type": "application/json", "Authorization": f"Bearer {token}"}
        timeout_s = max(0.2, self._settings.push_gateway_timeout_ms / 1000.0)
        if self._http_client is not None:
            return await self._http_client.post(url, json={"message": message}, headers=headers, timeout=timeout_s)
        async with httpx.AsyncClient(timeout=timeout_s) as client:
            return await client.post(url, json={"message": message}, headers=headers)

    async def send(
        self,
        *,
        notification: NotificationRecord,
        endpoint: str,
        access_token: str,
        project_id: str | None = None,
        run_id: str | None = None,
    ) -> EndpointResult:
        url = self._send_url(project_id)
        message = build_gateway_message(notification, endpoint, settings=self._settings)
        masked = mask_token(endpoint)
        started = time.monotonic()
        try:
            response = await self._post(url, token=access_token, message=message)
        except httpx.HTTPError as exc:
            error = GatewayUnreachableError(f"Push gateway unreachable: {exc!r}")
            record_external_call(
                integration="push_gateway",
                latency_ms=(time.monotonic() - started) * 1000.0,
                success=False,
            )
            increment_counter("push_gateway_unreachable_total")
            logger.warning("push_send_unreachable run_id=%s token=%s error=%s", run_id, masked, exc)
            return EndpointResult(
                endpoint=endpoint,
                success=False,
                error_code=error.code,
                response={"error": str(error), "error_code": error.code, "token": masked},
            )
        result = classify_gateway_response(endpoint=endpoint, status_code=response.status_code, body=response.text)
        record_external_call(
            integration="push_gateway",
            latency_ms=(time.monotonic() - started) * 1000.0,
            success=result.success,
        )
        if result.success:
            logger.info("push_send_success run_id=%s token=%s message_id=%s", run_id, masked, result.message_id)
        else:
            increment_counter("push_gateway_failures_total")
            logger.warning(
                "push_send_failed run_id=%s token=%s status=%s error_code=%s error=%s",
                run_id,
                masked,
                response.status_code,
                result.error_code,
                result.response.get("error"),
            )
        return result

    async def simulate(self, *, endpoint: str, run_id: str | None = None) -> EndpointResult:
        # Dry-run stand-in for send(): no network call, synthesized success marker.
        masked = mask_token(endpoint)
        logger.info("push_send_dry_run run_id=%s token=%s", run_id, masked)
        return EndpointResult(
            endpoint=endpoint,
            success=True,
            message_id=DRY_RUN_MESSAGE_ID,
            response={"success": 1, "message_id": DRY_RUN_MESSAGE_ID, "token": masked, "dry_run": True},
        )

    async def deliver(
        self,
        *,
        notification: NotificationRecord,
        endpoints: list[str],
        access_token: str | None,
        project_id: str | None = None,
        dry_run: bool = False,
        run_id: str | None = None,
    ) -> DeliveryOutcome:
        results: list[EndpointResult] = []
        for endpoint in endpoints:
            if dry_run:
                results.append(await self.simulate(endpoint=endpoint, run_id=run_id))
                continue
            results.append(
                await self.send(
                    notification=notification,
                    endpoint=endpoint,
                    access_token=access_token or "",
                    project_id=project_id,
                    run_id=run_id,
                )
            )
        return aggregate_endpoint_results(results)
