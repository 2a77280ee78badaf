from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass

import httpx
import structlog

from domain_probes.common_probe import (
    CONNECTION_FAILED,
    HTTP_ERROR,
    TIMEOUT,
    UNKNOWN,
    CheckType,
    HttpDetails,
    ProbeResult,
    describe_exception,
    elapsed_ms,
    http_target_url,
)


logger = structlog.get_logger(__name__)

DEFAULT_USER_AGENT = "DomainProbeMonitor/1.0"

_HEADER_DENYLIST = {"set-cookie", "cookie", "authorization"}


@dataclass(frozen=True)
class _HttpResponseInfo:
    status_code: int
    reason_phrase: str
    ttfb_ms: int
    headers: dict[str, str]


def _capture_headers(headers: httpx.Headers) -> dict[str, str]:
    captured: dict[str, str] = {}
    for key, value in headers.multi_items():
        name = key.lower()
        if name in _HEADER_DENYLIST:
            continue
        if name in captured:
            captured[name] = f"{captured[name]}, {value}"[:1000]
        else:
            captured[name] = str(value)[:1000]
    return captured


async def _fetch(client: httpx.AsyncClient, url: str, *, user_agent: str, timeout_seconds: float) -> _HttpResponseInfo:
    started = time.perf_counter()
    async with client.stream(
        "GET",
        url,
        headers={"User-Agent": user_agent},
        follow_redirects=True,
        timeout=timeout_seconds,
    ) as resp:
        # Headers received: that is the first byte as far as the client can observe.
        ttfb_ms = int(round(elapsed_ms(started)))
        await resp.aread()
        return _HttpResponseInfo(
            status_code=int(resp.status_code),
            reason_phrase=str(resp.reason_phrase or ""),
            ttfb_ms=ttfb_ms,
            headers=_capture_headers(resp.headers),
        )


async def run_http_probe(
    target: str,
    *,
    client: httpx.AsyncClient,
    timeout_seconds: float = 10.0,
    user_agent: str = DEFAULT_USER_AGENT,
) -> ProbeResult:
    url = http_target_url(target)
    started = time.perf_counter()

    def _failure(code: str, message: str) -> ProbeResult:
        return ProbeResult(
            check_type=CheckType.HTTP,
            success=False,
            duration_ms=elapsed_ms(started),
            details=HttpDetails(url=url),
            error_code=code,
            error_message=message,
        )

    try:
        info = await asyncio.wait_for(
            _fetch(client, url, user_agent=user_agent, timeout_seconds=float(timeout_seconds)),
            timeout=float(timeout_seconds),
        )
    except (asyncio.TimeoutError, httpx.TimeoutException):
        logger.warning("HTTP request timeout", url=url)
        return _failure(TIMEOUT, "Request timed out")
    except httpx.ConnectError as exc:
        logger.warning("HTTP connection failed", url=url, error=describe_exception(exc))
        return _failure(CONNECTION_FAILED, describe_exception(exc))
    except httpx.HTTPError as exc:
        logger.warning("HTTP request failed", url=url, error=describe_exception(exc))
        return _failure(HTTP_ERROR, describe_exception(exc))
    except Exception as exc:
        logger.error("Error checking HTTP", url=url, error=describe_exception(exc))
        return _failure(UNKNOWN, describe_exception(exc))

    details = HttpDetails(url=url, status_code=info.status_code, ttfb_ms=info.ttfb_ms, headers=info.headers)
    success = 200 <= info.status_code <= 399
    return ProbeResult(
        check_type=CheckType.HTTP,
        success=success,
        duration_ms=elapsed_ms(started),
        details=details,
        error_code=None if success else f"HTTP_{info.status_code}",
        error_message=None if success else f"HTTP {info.status_code} {info.reason_phrase}".strip(),
    )
