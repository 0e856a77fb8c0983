"""JSON-over-HTTP requests with retry, shared by the HTTP providers.

Retries 429 and 5xx responses and transport errors with exponential backoff
plus jitter, honouring ``Retry-After``. Failures surface as
``TransientProviderError`` so the search orchestrator can fall through.
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

import httpx
import structlog

from codescout.core.cancellation import CancellationToken, run_cancellable
from codescout.core.errors import TransientProviderError

log = structlog.get_logger()

_BODY_PREVIEW_CHARS = 300


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_retries: int = 3
    backoff_base_sec: float = 0.5
    backoff_max_sec: float = 8.0

    def delay(self, attempt: int, retry_after: float | None = None) -> float:
        if retry_after is not None and retry_after > 0:
            return min(retry_after, self.backoff_max_sec)
        exp = self.backoff_base_sec * (2**attempt)
        jitter = random.uniform(0, min(0.5, self.backoff_base_sec))
        return min(self.backoff_max_sec, exp + jitter)


def parse_retry_after(headers: Mapping[str, str]) -> float | None:
    value = (headers.get("Retry-After") or "").strip()
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def should_retry_status(status_code: int) -> bool:
    return status_code == 429 or 500 <= status_code <= 599


async def request_json(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    provider: str,
    json: Mapping[str, Any] | None = None,
    policy: RetryPolicy | None = None,
    token: CancellationToken | None = None,
) -> Any:
    """Send a request and decode its JSON body.

    Raises:
        TransientProviderError: Timeout, transport failure, exhausted retries,
            rejected credentials (``PROVIDER_AUTH_REQUIRED``) or an undecodable body.
        CancellationError: *token* fired while waiting.
    """
    policy = policy or RetryPolicy()
    last_status = 0

    for attempt in range(policy.max_retries + 1):
        if token is not None:
            token.raise_if_cancelled()
        try:
            response = await run_cancellable(
                client.request(method, url, json=dict(json) if json is not None else None),
                token,
            )
        except httpx.TimeoutException as e:
            if attempt < policy.max_retries:
                await _sleep(policy.delay(attempt), token)
                continue
            timeout = client.timeout.read or 0.0
            raise TransientProviderError.timeout(provider, timeout) from e
        except httpx.RequestError as e:
            if attempt < policy.max_retries:
                await _sleep(policy.delay(attempt), token)
                continue
            raise TransientProviderError.network(provider, f"{type(e).__name__}: {e}") from e

        status = response.status_code
        if status >= 400:
            last_status = status
            if status in (401, 403):
                raise TransientProviderError.auth_required(provider, status)
            if should_retry_status(status) and attempt < policy.max_retries:
                log.warning(
                    "http.retry",
                    provider=provider,
                    url=url,
                    status=status,
                    attempt=attempt + 1,
                    max_attempts=policy.max_retries + 1,
                )
                await _sleep(policy.delay(attempt, parse_retry_after(response.headers)), token)
                continue
            if should_retry_status(status):
                raise TransientProviderError.rate_limited(provider, status)
            preview = (response.text or "").strip()[:_BODY_PREVIEW_CHARS]
            raise TransientProviderError.bad_response(
                provider, f"HTTP {status}: {preview or '<empty>'}"
            )

        try:
            return response.json()
        except ValueError as e:
            raise TransientProviderError.bad_response(provider, f"invalid JSON: {e}") from e

    raise TransientProviderError.rate_limited(provider, last_status)


async def _sleep(delay: float, token: CancellationToken | None) -> None:
    await run_cancellable(asyncio.sleep(delay), token)
