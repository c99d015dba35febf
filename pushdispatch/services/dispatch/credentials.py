from __future__ import annotations

import asyncio
from dataclasses import dataclass
import json
import logging
from pathlib import Path
import time
from typing import Any, Callable

import httpx
import jwt

from pushdispatch.core.config import Settings, get_settings
from pushdispatch.core.errors import CredentialConfigError, CredentialExchangeError
from pushdispatch.services.resilience import default_retry_policy, retry_async
from pushdispatch.services.telemetry import increment_counter, record_external_call


logger = logging.getLogger(__name__)

JWT_BEARER_GRANT = "urn:ietf:params:oauth:grant-type:jwt-bearer"


@dataclass(frozen=True)
class ServiceAccount:
    client_email: str
    private_key: str
    private_key_id: str | None = None
    project_id: str | None = None


def parse_service_account(raw: str) -> ServiceAccount:
    try:
        payload = json.loads(raw)
    except ValueError as exc:
        raise CredentialConfigError("Service account key is not valid JSON") from exc
    if not isinstance(payload, dict):
        raise CredentialConfigError("Service account key must be a JSON object")
    client_email = str(payload.get("client_email") or "").strip()
    private_key = str(payload.get("private_key") or "")
    if not client_email or not private_key:
        raise CredentialConfigError("Service account key requires client_email and private_key")
    # Keys pasted into env vars often carry literal "\n" sequences instead of newlines.
    private_key = private_key.replace("\\n", "\n")
    return ServiceAccount(
        client_email=client_email,
        private_key=private_key,
        private_key_id=payload.get("private_key_id") or None,
        project_id=payload.get("project_id") or None,
    )


def load_service_account(settings: Settings | None = None) -> ServiceAccount:
    settings = settings or get_settings()
    if settings.push_service_account_json:
        return parse_service_account(settings.push_service_account_json)
    if settings.push_service_account_file:
        path = Path(settings.push_service_account_file)
        try:
            raw = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise CredentialConfigError(f"Service account key file unreadable: {path}") from exc
        return parse_service_account(raw)
    raise CredentialConfigError("Service account key not configured")


class CredentialCache:
    """Process-wide cache for the push gateway's bearer token.

    Build one instance per process and share it across runs. ``get_token`` serves
    the cached token until it is within the refresh margin of its expiry, then
    performs the signed-assertion exchange again. Refreshes are serialized so
    concurrent callers trigger at most one exchange.
    """

    def __init__(
        self,
        *,
        service_account: ServiceAccount | None = None,
        http_client: httpx.AsyncClient | None = None,
        settings: Settings | None = None,
        time_source: Callable[[], float] = time.time,
    ) -> None:
        self._settings = settings or get_settings()
        self._service_account = service_account
        self._http_client = http_client
        self._time_source = time_source
        self._lock = asyncio.Lock()
        self._token: str | None = None
        self._expires_at: float = 0.0

    @property
    def expires_at(self) -> float:
        return self._expires_at

    @property
    def service_account(self) -> ServiceAccount:
        # Load lazily so workers can start before credentials are provisioned.
        if self._service_account is None:
            self._service_account = load_service_account(self._settings)
        return self._service_account

    @property
    def project_id(self) -> str | None:
        return self._settings.push_project_id or self.service_account.project_id

    def _is_fresh(self) -> bool:
        margin = max(0, int(self._settings.push_token_refresh_margin_s))
        return self._token is not None and self._time_source() < self._expires_at - margin

    async def get_token(self) -> str:
        if self._is_fresh():
            return self._token  # type: ignore[return-value]
        async with self._lock:
            # Another caller may have refreshed while this one waited.
            if self._is_fresh():
                return self._token  # type: ignore[return-value]
            return await self._refresh_locked()

    async def refresh(self) -> str:
        async with self._lock:
            return await self._refresh_locked()

    def build_assertion(self, issued_at: int) -> str:
        account = self.service_account
        claims = {
            "iss": account.client_email,
            "scope": self._settings.push_scope,
            "aud": self._settings.push_token_url,
            "iat": issued_at,
            "exp": issued_at + int(self._settings.push_token_lifetime_s),
        }
        headers = {"kid": account.private_key_id} if account.private_key_id else None
        try:
            return jwt.encode(claims, account.private_key, algorithm="RS256", headers=headers)
        except (ValueError, TypeError, jwt.PyJWTError) as exc:
            raise CredentialConfigError("Service account private key could not sign the assertion") from exc

    async def _exchange(self, assertion: str) -> httpx.Response:
        url = self._settings.push_token_url
        data = {"grant_type": JWT_BEARER_GRANT, "assertion": assertion}
        timeout_s = max(0.2, self._settings.push_token_timeout_ms / 1000.0)
        if self._http_client is not None:
            response = await self._http_client.post(url, data=data, timeout=timeout_s)
        else:
            async with httpx.AsyncClient(timeout=timeout_s) as client:
                response = await client.post(url, data=data)
        response.raise_for_status()
        return response

    async def _refresh_locked(self) -> str:
        issued_at = int(self._time_source())
        assertion = self.build_assertion(issued_at)
        policy = default_retry_policy(timeout_ms=self._settings.push_token_timeout_ms, settings=self._settings)
        started = time.monotonic()
        try:
            response = await retry_async(
                lambda: self._exchange(assertion),
                policy=policy,
                integration="push_token",
            )
            payload: Any = response.json()
        except httpx.HTTPStatusError as exc:
            self._record_failure(started)
            raise CredentialExchangeError(
                f"Failed to get access token: HTTP {exc.response.status_code} {exc.response.reason_phrase}"
            ) from exc
        except (httpx.HTTPError, TimeoutError, ValueError) as exc:
            self._record_failure(started)
            raise CredentialExchangeError(f"Failed to get access token: {exc!r}") from exc
        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(access_token, str) or not access_token:
            self._record_failure(started)
            raise CredentialExchangeError("Failed to get access token: response carried no access_token")
        try:
            lifetime_s = int(payload.get("expires_in") or self._settings.push_token_lifetime_s)
        except (TypeError, ValueError):
            lifetime_s = int(self._settings.push_token_lifetime_s)
        record_external_call(
            integration="push_token",
            latency_ms=(time.monotonic() - started) * 1000.0,
            success=True,
        )
        self._token = access_token
        self._expires_at = float(issued_at + lifetime_s)
        logger.info("push_token_refreshed expires_in=%s", lifetime_s)
        return access_token

    def _record_failure(self, started: float) -> None:
        increment_counter("push_token_failures_total")
        record_external_call(
            integration="push_token",
            latency_ms=(time.monotonic() - started) * 1000.0,
            success=False,
        )
