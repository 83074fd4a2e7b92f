"""
HTTPS adapter for a remote inference endpoint.

Error handling:
    - Insecure URL (non-https scheme, credentials in the query string):
      raised before any I/O, never retried
    - HTTP 4xx or an "error" field in the body: raised at once, no retry
    - HTTP 5xx, connect errors, timeouts: retried with the configured backoff
      until max_attempts calls have been made, then the last error is raised
      with "(after N attempts)" appended and retryable cleared
"""

from __future__ import annotations

import logging
import ssl
import time
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Optional
from urllib.parse import parse_qsl, urlsplit

import anyio
import httpx

from vision_dispatch.core.engine_schema import parse_engine_payload
from vision_dispatch.core.errors import AnalysisError, ErrorDetails, ErrorKind
from vision_dispatch.core.types import (
    DEFAULT_CLOUD_RETRY_CONFIG,
    AnalysisResult,
    RetryConfig,
    new_analysis_id,
    utc_timestamp,
)
from vision_dispatch.observability.metrics import CLOUD_ATTEMPTS_TOTAL

logger = logging.getLogger(__name__)

# Query keys that must never carry credentials (exact, case-sensitive match).
SENSITIVE_QUERY_PARAMS = (
    "token",
    "api_key",
    "apikey",
    "key",
    "secret",
    "auth",
    "password",
    "access_token",
)

HEALTH_TIMEOUT_SECONDS = 5.0


@dataclass(frozen=True)
class CloudEndpointConfig:
    endpoint_url: str = ""
    timeout_seconds: float = 30.0
    retry: RetryConfig = field(default_factory=lambda: DEFAULT_CLOUD_RETRY_CONFIG)


def build_tls_context() -> ssl.SSLContext:
    """Default verifying context with the protocol floor pinned to TLS 1.2."""
    ctx = ssl.create_default_context()
    ctx.minimum_version = ssl.TLSVersion.TLSv1_2
    return ctx


def validate_endpoint_url(url: str) -> None:
    """
    Reject endpoint URLs that would leak data or credentials.

    Only the scheme is checked; a plain-http URL that would redirect to
    https is still rejected.
    """
    details = ErrorDetails(endpoint_url=url)
    parsed = urlsplit(url or "")

    if not parsed.scheme or not parsed.netloc:
        raise AnalysisError(
            ErrorKind.ENDPOINT_UNREACHABLE,
            f"Invalid endpoint URL: {url}",
            details,
            retryable=False,
        )

    if parsed.scheme != "https":
        raise AnalysisError(
            ErrorKind.ENDPOINT_UNREACHABLE,
            f"Endpoint URL must use HTTPS for secure transport: {url}",
            details,
            retryable=False,
        )

    keys = {k for k, _ in parse_qsl(parsed.query, keep_blank_values=True)}
    for param in SENSITIVE_QUERY_PARAMS:
        if param in keys:
            raise AnalysisError(
                ErrorKind.ENDPOINT_UNREACHABLE,
                f"Authentication tokens must not be included in query parameters. Found: {param}",
                details,
                retryable=False,
            )


class CloudEndpointAdapter:
    def __init__(
        self,
        config: Optional[CloudEndpointConfig] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._config = config or CloudEndpointConfig()
        self._transport = transport
        self._tls = build_tls_context()

    @property
    def config(self) -> CloudEndpointConfig:
        return self._config

    def update_config(self, **changes: Any) -> CloudEndpointConfig:
        # Swap in a new value; calls already running keep their snapshot.
        self._config = replace(self._config, **changes)
        return self._config

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            verify=self._tls,
            transport=self._transport,
            follow_redirects=False,
        )

    def parse_result(
        self,
        body: str,
        model_id: str,
        duration_ms: int,
        endpoint_url: Optional[str] = None,
    ) -> AnalysisResult:
        details = ErrorDetails(endpoint_url=endpoint_url or self._config.endpoint_url, model_id=model_id)
        try:
            payload = parse_engine_payload(body)
        except ValueError as e:
            raise AnalysisError(
                ErrorKind.ENDPOINT_ERROR_4XX,
                f"Failed to parse endpoint response as JSON: {body[:100]}",
                details,
            ) from e

        err_msg = payload.error_message()
        if err_msg is not None:
            raise AnalysisError(
                ErrorKind.ENDPOINT_ERROR_4XX,
                f"Endpoint returned error: {err_msg}",
                replace(details, http_status=400),
            )

        return AnalysisResult(
            id=new_analysis_id(),
            image_path="",
            timestamp=utc_timestamp(),
            model_id=payload.modelId or model_id,
            mode="cloud",
            duration_ms=duration_ms,
            labels=tuple(payload.detections()),
            ocr_text=payload.ocrText,
            raw_response=payload.model_dump(exclude_none=True),
        )

    async def analyze(self, image_data: str, model_id: str) -> AnalysisResult:
        config = self._config
        url = config.endpoint_url
        validate_endpoint_url(url)

        retry = config.retry
        body: Dict[str, str] = {"image": image_data, "modelId": model_id}
        start = time.perf_counter()
        last_error: Optional[AnalysisError] = None

        async with self._client(config.timeout_seconds) as client:
            for attempt in range(retry.max_attempts):
                try:
                    response = await client.post(
                        url,
                        json=body,
                        headers={"Content-Type": "application/json"},
                    )
                except httpx.TimeoutException as e:
                    CLOUD_ATTEMPTS_TOTAL.labels(outcome="network_error").inc()
                    err = AnalysisError(
                        ErrorKind.ENDPOINT_UNREACHABLE,
                        f"Request timed out after {config.timeout_seconds}s",
                        ErrorDetails(endpoint_url=url, model_id=model_id),
                    )
                    err.__cause__ = e
                except httpx.TransportError as e:
                    CLOUD_ATTEMPTS_TOTAL.labels(outcome="network_error").inc()
                    err = AnalysisError(
                        ErrorKind.ENDPOINT_UNREACHABLE,
                        f"Failed to connect to endpoint: {e}",
                        ErrorDetails(endpoint_url=url, model_id=model_id),
                    )
                    err.__cause__ = e
                except Exception as e:
                    raise AnalysisError(
                        ErrorKind.ENDPOINT_UNREACHABLE,
                        f"Unexpected error: {type(e).__name__}: {e}",
                        ErrorDetails(endpoint_url=url, model_id=model_id),
                        retryable=False,
                    ) from e
                else:
                    status = response.status_code
                    details = ErrorDetails(endpoint_url=url, http_status=status, model_id=model_id)

                    if 200 <= status < 300:
                        CLOUD_ATTEMPTS_TOTAL.labels(outcome="ok").inc()
                        duration_ms = int((time.perf_counter() - start) * 1000)
                        logger.info(
                            "cloud_ok status=%d attempts=%d duration_ms=%d model=%s",
                            status,
                            attempt + 1,
                            duration_ms,
                            model_id,
                        )
                        return self.parse_result(response.text, model_id, duration_ms, url)

                    if 400 <= status < 500:
                        CLOUD_ATTEMPTS_TOTAL.labels(outcome="client_error").inc()
                        raise AnalysisError(
                            ErrorKind.ENDPOINT_ERROR_4XX,
                            f"Endpoint returned client error: HTTP {status}",
                            details,
                        )

                    if status >= 500:
                        CLOUD_ATTEMPTS_TOTAL.labels(outcome="server_error").inc()
                        err = AnalysisError(
                            ErrorKind.ENDPOINT_ERROR_5XX,
                            f"Endpoint returned server error: HTTP {status}",
                            details,
                        )
                    else:
                        # 1xx/3xx: redirects are not followed and are never retried
                        CLOUD_ATTEMPTS_TOTAL.labels(outcome="client_error").inc()
                        raise AnalysisError(
                            ErrorKind.ENDPOINT_ERROR_4XX,
                            f"Endpoint returned unexpected status: HTTP {status}",
                            details,
                            retryable=False,
                        )

                if err.kind.value not in retry.retryable_kinds:
                    raise err

                last_error = err
                if attempt < retry.max_attempts - 1:
                    delay = retry.delay_seconds(attempt)
                    logger.warning(
                        "cloud_attempt_failed kind=%s attempt=%d/%d retry_in_ms=%d msg=%s",
                        err.kind.value,
                        attempt + 1,
                        retry.max_attempts,
                        int(delay * 1000),
                        err.message,
                    )
                    await anyio.sleep(delay)

        assert last_error is not None
        logger.error(
            "cloud_exhausted kind=%s attempts=%d msg=%s",
            last_error.kind.value,
            retry.max_attempts,
            last_error.message,
        )
        raise last_error.with_message(
            f"{last_error.message} (after {retry.max_attempts} attempts)",
            retryable=False,
        )

    async def is_available(self) -> bool:
        url = self._config.endpoint_url
        if not url:
            return False

        try:
            validate_endpoint_url(url)
        except AnalysisError:
            return False

        try:
            async with self._client(HEALTH_TIMEOUT_SECONDS) as client:
                response = await client.head(url)
        except Exception as e:  # probe must never raise
            logger.info("cloud_probe_failed url=%s err=%s", url, type(e).__name__)
            return False

        return response.status_code < 500
