"""
Provider Integration Gateway.

All outbound HTTP calls to the KYC, auth, billing and AI-verification
providers go through this class.  Direct ``requests`` calls in services or
blueprints are not allowed.

  - API key header auth (``X-API-Key``)
  - Retry: up to ``max_retries`` extra attempts with backoff (1 s → 4 s);
    4xx answers other than 429 are final and are not retried
  - Timeout: 30 s by default (``PROVIDER_TIMEOUT_SECONDS``)
  - Circuit breaker: ≥5 failures in 60 s → 30 s pause per gateway
  - Idempotency: callers pass the application/document reference, sent as
    ``Idempotency-Key`` so a retried call is safe to repeat on the provider

Gateways never raise for transport or HTTP failures; they return a
``GatewayResult`` and the provider clients decide what a failure means.

Testability: pass a mock ``session`` to ProviderGateway() in tests instead
of letting it create a real requests.Session internally.
"""

from __future__ import annotations

import hashlib
import json
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any

import requests

logger = logging.getLogger(__name__)

# ── Circuit breaker constants ──────────────────────────────────────────────
_CB_FAILURE_THRESHOLD = 5          # failures within window before opening
_CB_WINDOW_SECONDS = 60            # failure counting window (seconds)
_CB_OPEN_DURATION_SECONDS = 30     # how long circuit stays open

# ── Retry defaults ─────────────────────────────────────────────────────────
_RETRY_MAX = 2
_RETRY_BACKOFF_SECONDS = (1, 4)    # sleep[0] after 1st fail, sleep[1] after 2nd

_DEFAULT_TIMEOUT = 30


class GatewayResult:
    """Structured return value from ProviderGateway calls.

    Attributes:
        ok:             True if the call succeeded (HTTP 2xx + no exception).
        status_code:    HTTP status code (None if network-level failure).
        data:           Parsed JSON response body (dict or list), else None.
        error:          Human-readable error message or None.
        duration_ms:    Round-trip latency in milliseconds.
        payload_hash:   SHA-256 of the serialised request payload (hex).
    """

    def __init__(
        self,
        ok: bool,
        status_code: int | None,
        data: dict | list | None,
        error: str | None,
        duration_ms: int,
        payload_hash: str | None = None,
    ) -> None:
        self.ok = ok
        self.status_code = status_code
        self.data = data
        self.error = error
        self.duration_ms = duration_ms
        self.payload_hash = payload_hash

    def to_log_dict(self) -> dict:
        return {
            "http_status_code": self.status_code,
            "error_message": self.error,
            "duration_ms": self.duration_ms,
            "payload_hash": self.payload_hash,
            "outcome": "success" if self.ok else "error",
        }


class ProviderGateway:
    """HTTP gateway for one external provider.

    Usage:
        gateway = ProviderGateway("kyc", "https://kyc.example.com", api_key="...")
        result = gateway.request("POST", "/verifications", json_body={...},
                                 idempotency_key="CUST-ONB-...")
    """

    def __init__(
        self,
        name: str,
        base_url: str,
        *,
        api_key: str | None = None,
        session: requests.Session | None = None,
        timeout: int = _DEFAULT_TIMEOUT,
        max_retries: int = _RETRY_MAX,
        retry_backoff: tuple = _RETRY_BACKOFF_SECONDS,
    ) -> None:
        self.name = name
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_backoff = tuple(retry_backoff) or (0,)
        # Inject custom session for testing; create real one lazily otherwise.
        self._session: requests.Session | None = session
        self._cb_failures: list[datetime] = []
        self._cb_open_until: datetime | None = None

    # ── HTTP session ─────────────────────────────────────────────────────────

    @property
    def session(self) -> requests.Session:
        """Return (or lazily create) the requests.Session."""
        if self._session is None:
            self._session = requests.Session()
        return self._session

    # ── Circuit breaker ───────────────────────────────────────────────────────

    def _circuit_closed(self) -> bool:
        """Return True if the circuit allows calls; False if open (paused)."""
        now = datetime.now(timezone.utc)

        if self._cb_open_until and now < self._cb_open_until:
            logger.warning("Circuit open for provider=%s until %s", self.name, self._cb_open_until,
                           extra={"provider": self.name})
            return False

        window_start = now - timedelta(seconds=_CB_WINDOW_SECONDS)
        self._cb_failures = [f for f in self._cb_failures if f >= window_start]

        if len(self._cb_failures) >= _CB_FAILURE_THRESHOLD:
            self._cb_open_until = now + timedelta(seconds=_CB_OPEN_DURATION_SECONDS)
            logger.error(
                "Circuit opened for provider=%s: %d failures in %ds window",
                self.name, len(self._cb_failures), _CB_WINDOW_SECONDS,
                extra={"provider": self.name},
            )
            return False

        return True

    def _record_failure(self) -> None:
        self._cb_failures.append(datetime.now(timezone.utc))

    def _record_success(self) -> None:
        """On success, reset failure history and close the circuit."""
        self._cb_failures.clear()
        self._cb_open_until = None

    # ── Core request dispatcher ───────────────────────────────────────────────

    @staticmethod
    def _compute_payload_hash(payload: dict | list | None) -> str | None:
        if payload is None:
            return None
        raw = json.dumps(payload, sort_keys=True, default=str).encode("utf-8")
        return hashlib.sha256(raw).hexdigest()

    def _headers(self, idempotency_key: str | None) -> dict:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if self.api_key:
            headers["X-API-Key"] = self.api_key
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    def request(
        self,
        method: str,
        path: str,
        *,
        json_body: dict | list | None = None,
        params: dict | None = None,
        idempotency_key: str | None = None,
        timeout: int | None = None,
    ) -> GatewayResult:
        """Execute a request against the provider with retries.

        Returns:
            GatewayResult — always returns (never raises). Callers check .ok.
        """
        if not self._circuit_closed():
            return GatewayResult(
                ok=False,
                status_code=None,
                data=None,
                error=f"Circuit breaker is open: {self.name} calls temporarily suspended",
                duration_ms=0,
            )

        url = f"{self.base_url}/{path.lstrip('/')}"
        timeout = timeout or self.timeout
        payload_hash = self._compute_payload_hash(json_body)
        headers = self._headers(idempotency_key)
        last_error = "Unknown error"
        last_status: int | None = None
        started = time.perf_counter()

        for attempt in range(self.max_retries + 1):
            retryable = True
            try:
                kwargs: dict[str, Any] = {"headers": headers, "timeout": timeout}
                if json_body is not None:
                    kwargs["json"] = json_body
                if params:
                    kwargs["params"] = params
                resp = self.session.request(method, url, **kwargs)
                last_status = resp.status_code

                if resp.ok:
                    self._record_success()
                    try:
                        data = resp.json() if resp.content else {}
                    except ValueError:
                        data = {}
                    return GatewayResult(
                        ok=True,
                        status_code=resp.status_code,
                        data=data,
                        error=None,
                        duration_ms=int((time.perf_counter() - started) * 1000),
                        payload_hash=payload_hash,
                    )

                last_error = f"HTTP {resp.status_code}: {resp.text[:500]}"
                retryable = resp.status_code >= 500 or resp.status_code == 429
                if retryable:
                    self._record_failure()
                logger.warning(
                    "%s request failed attempt=%d/%d status=%d url=%s",
                    self.name, attempt + 1, self.max_retries + 1, resp.status_code, url,
                    extra={"provider": self.name},
                )

            except requests.Timeout:
                last_error = f"Request timed out after {timeout}s"
                self._record_failure()
                logger.warning(
                    "%s request timed out attempt=%d/%d url=%s",
                    self.name, attempt + 1, self.max_retries + 1, url,
                    extra={"provider": self.name},
                )

            except requests.RequestException as exc:
                last_error = str(exc)[:500]
                self._record_failure()
                logger.warning(
                    "%s network error attempt=%d/%d url=%s error=%s",
                    self.name, attempt + 1, self.max_retries + 1, url, last_error,
                    extra={"provider": self.name},
                )

            if not retryable:
                break
            if attempt < self.max_retries:
                sleep_s = self.retry_backoff[min(attempt, len(self.retry_backoff) - 1)]
                logger.info("Retrying %s request in %ss (attempt %d)", self.name, sleep_s, attempt + 2)
                time.sleep(sleep_s)

        return GatewayResult(
            ok=False,
            status_code=last_status,
            data=None,
            error=last_error,
            duration_ms=int((time.perf_counter() - started) * 1000),
            payload_hash=payload_hash,
        )
