"""Shared HTTP helpers used by the metadata client and artifact fetcher.

Encapsulates request/timeout/retry handling so callers avoid duplicating
try/except blocks. Transport failures surface as NetworkError once the
bounded retry budget is spent; HTTP status codes are returned to the caller
because their meaning (404 vs. 5xx) is component specific.
"""
from __future__ import annotations

import json
import logging
import time
from typing import Any, Dict, Optional, Tuple

import requests

from constants import Constants
from common.errors import DownloadError, NetworkError
from common.logging_utils import extra_context, is_debug_enabled, safe_url, Timer

logger = logging.getLogger(__name__)


def _default_headers(headers: Optional[Dict[str, str]]) -> Dict[str, str]:
    merged = {"User-Agent": Constants.USER_AGENT}
    if headers:
        merged.update(headers)
    return merged


def backoff_delay(attempt: int) -> float:
    """Exponential backoff delay (seconds) before retry number ``attempt`` (1-based)."""
    return Constants.HTTP_RETRY_BASE_DELAY_SEC * (2 ** (attempt - 1))


def robust_get(
    url: str,
    *,
    headers: Optional[Dict[str, str]] = None,
    **kwargs: Any
) -> Tuple[int, Dict[str, str], str]:
    """Perform GET request with timeout and retries, with DEBUG traces.

    Server errors (5xx) and transport failures are retried with exponential
    backoff. Raises NetworkError after ``Constants.HTTP_RETRY_MAX`` attempts.
    """
    safe_target = safe_url(url)
    last_exception: Optional[str] = None

    for attempt in range(1, Constants.HTTP_RETRY_MAX + 1):
        if attempt > 1:
            time.sleep(backoff_delay(attempt - 1))
        with Timer() as t:
            try:
                if is_debug_enabled(logger):
                    logger.debug(
                        "HTTP request",
                        extra=extra_context(
                            event="http_request",
                            component="http_client",
                            action="GET",
                            target=safe_target,
                            attempt=attempt
                        )
                    )
                response = requests.get(
                    url,
                    timeout=Constants.REQUEST_TIMEOUT,
                    headers=_default_headers(headers),
                    **kwargs
                )
            except requests.Timeout:
                last_exception = "timeout"
                logger.debug(
                    "HTTP timeout",
                    extra=extra_context(
                        event="http_exception",
                        component="http_client",
                        action="GET",
                        outcome="timeout",
                        attempt=attempt,
                        target=safe_target
                    )
                )
                continue
            except requests.RequestException as exc:
                last_exception = str(exc)
                logger.debug(
                    "HTTP request exception",
                    extra=extra_context(
                        event="http_exception",
                        component="http_client",
                        action="GET",
                        outcome="request_exception",
                        attempt=attempt,
                        target=safe_target
                    )
                )
                continue

        if response.status_code >= 500:
            last_exception = f"HTTP {response.status_code}"
            logger.debug(
                "HTTP server error; retrying",
                extra=extra_context(
                    event="http_response",
                    component="http_client",
                    action="GET",
                    outcome="server_error",
                    status_code=response.status_code,
                    attempt=attempt,
                    target=safe_target
                )
            )
            continue

        if is_debug_enabled(logger):
            logger.debug(
                "HTTP response ok",
                extra=extra_context(
                    event="http_response",
                    component="http_client",
                    action="GET",
                    outcome="success",
                    status_code=response.status_code,
                    duration_ms=t.duration_ms(),
                    target=safe_target
                )
            )
        return response.status_code, dict(response.headers), response.text

    raise NetworkError(
        f"Request failed after {Constants.HTTP_RETRY_MAX} attempts",
        context={"url": safe_target, "last_error": last_exception},
    )


def get_json(
    url: str,
    *,
    headers: Optional[Dict[str, str]] = None,
    **kwargs: Any
) -> Tuple[int, Dict[str, str], Optional[Any]]:
    """Perform GET request and parse JSON response with DEBUG traces.

    Args:
        url: Target URL
        headers: Optional request headers
        **kwargs: Additional requests.get parameters

    Returns:
        Tuple of (status_code, headers_dict, parsed_json_or_none)
    """
    request_headers = {"Accept": "application/json"}
    if headers:
        request_headers.update(headers)
    status_code, response_headers, text = robust_get(url, headers=request_headers, **kwargs)

    if status_code == 200 and text:
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError:
            logger.debug(
                "JSON decode error",
                extra=extra_context(
                    event="parse",
                    component="http_client",
                    action="get_json",
                    outcome="json_decode_error",
                    status_code=status_code,
                    target=safe_url(url)
                )
            )
            return status_code, response_headers, None
        return status_code, response_headers, parsed

    return status_code, response_headers, None


def open_stream(url: str, *, headers: Optional[Dict[str, str]] = None) -> requests.Response:
    """Open a streaming GET response; a single attempt, retries belong to the caller.

    Raises:
        DownloadError: The server answered with a client error (4xx other than
            408 and 429); repeating the request cannot help.
        NetworkError: On transport failure or any other non-200 status.
    """
    safe_target = safe_url(url)
    try:
        response = requests.get(
            url,
            timeout=Constants.REQUEST_TIMEOUT,
            headers=_default_headers(headers),
            stream=True,
        )
    except requests.Timeout as exc:
        raise NetworkError(
            f"Request timed out after {Constants.REQUEST_TIMEOUT} seconds",
            context={"url": safe_target},
        ) from exc
    except requests.RequestException as exc:  # includes ConnectionError
        raise NetworkError("Connection error", context={"url": safe_target, "error": str(exc)}) from exc

    if response.status_code != 200:
        response.close()
        if 400 <= response.status_code < 500 and response.status_code not in (408, 429):
            raise DownloadError(
                f"HTTP {response.status_code} for {safe_target}",
                context={"url": safe_target, "status_code": response.status_code},
            )
        raise NetworkError(
            f"Unexpected HTTP status {response.status_code}",
            context={"url": safe_target, "status_code": response.status_code},
        )
    return response
