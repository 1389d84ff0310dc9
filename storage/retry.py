"""
Retry/backoff and rate-limit-aware HTTP GET helper.
This module centralizes request retry logic so the remote fetcher can stay focused on pagination.

Failure handling:
- 5xx, timeouts and transport errors are retried with exponential backoff (base * 2^attempt, capped) plus jitter
- 429 honors Retry-After (seconds or HTTP-date) with a minimum floor
- 401 raises AuthInvalidError immediately
- any other non-2xx raises RemoteAPIError without retrying
"""

import os
import time
import random
import logging
import email.utils
from datetime import datetime, timezone
from typing import Optional, Dict, Any
import requests

from errors import (
    AuthInvalidError,
    RateLimitedError,
    RemoteAPIError,
    RemoteTimeoutError,
    TransientNetworkError,
)

logger = logging.getLogger(__name__)

# retry/backoff defaults from environment
DEFAULT_MAX_RETRIES = int(os.getenv("CATCHUP_MAX_RETRIES", "3"))
DEFAULT_BACKOFF_BASE = float(os.getenv("CATCHUP_BACKOFF_BASE", "1.0"))
DEFAULT_BACKOFF_JITTER = float(os.getenv("CATCHUP_BACKOFF_JITTER", "0.25"))
DEFAULT_MAX_BACKOFF = float(os.getenv("CATCHUP_MAX_BACKOFF", "4.0"))
DEFAULT_MIN_RETRY_AFTER = float(os.getenv("CATCHUP_MIN_RETRY_AFTER", "1.0"))
DEFAULT_REQUEST_TIMEOUT = float(os.getenv("CATCHUP_REQUEST_TIMEOUT", "5.0"))

# a server asking us to wait longer than this is treated as if it asked for this
MAX_RETRY_AFTER = 300.0

# runtime-overrides
_runtime_max_retries: Optional[int] = None
_runtime_backoff_base: Optional[float] = None
_runtime_backoff_jitter: Optional[float] = None
_runtime_max_backoff: Optional[float] = None
_runtime_min_retry_after: Optional[float] = None
_runtime_timeout: Optional[float] = None


def configure_retry(
    max_retries: Optional[int] = None,
    backoff_base: Optional[float] = None,
    backoff_jitter: Optional[float] = None,
    max_backoff: Optional[float] = None,
    min_retry_after: Optional[float] = None,
    timeout: Optional[float] = None,
):
    """Configure retry/backoff defaults at runtime (e.g. from CLI)."""
    global _runtime_max_retries, _runtime_backoff_base, _runtime_backoff_jitter, _runtime_max_backoff
    global _runtime_min_retry_after, _runtime_timeout
    if max_retries is not None:
        _runtime_max_retries = int(max_retries)
    if backoff_base is not None:
        _runtime_backoff_base = float(backoff_base)
    if backoff_jitter is not None:
        _runtime_backoff_jitter = float(backoff_jitter)
    if max_backoff is not None:
        _runtime_max_backoff = float(max_backoff)
    if min_retry_after is not None:
        _runtime_min_retry_after = float(min_retry_after)
    if timeout is not None:
        _runtime_timeout = float(timeout)


def reset_retry_config():
    """Drop all runtime overrides and fall back to the environment defaults."""
    global _runtime_max_retries, _runtime_backoff_base, _runtime_backoff_jitter, _runtime_max_backoff
    global _runtime_min_retry_after, _runtime_timeout
    _runtime_max_retries = None
    _runtime_backoff_base = None
    _runtime_backoff_jitter = None
    _runtime_max_backoff = None
    _runtime_min_retry_after = None
    _runtime_timeout = None


def _first(*values):
    for v in values:
        if v is not None:
            return v
    return None


def _parse_retry_after(raw_ra: Optional[str]) -> Optional[float]:
    if not raw_ra:
        return None
    try:
        return max(0.0, float(raw_ra))
    except ValueError:
        pass
    try:
        dt = email.utils.parsedate_to_datetime(raw_ra)
    except (TypeError, ValueError):
        return None
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    ra = (dt - datetime.now(timezone.utc)).total_seconds()
    return max(0.0, ra)


def _next_page_url(headers) -> Optional[str]:
    """Return the rel="next" target of a Link header, if any."""
    raw = (headers or {}).get('Link') or (headers or {}).get('link')
    if not raw:
        return None
    for link in requests.utils.parse_header_links(raw):
        if link.get('rel') == 'next' and link.get('url'):
            return link['url']
    return None


def _parse_success_body(resp_local):
    try:
        return resp_local.json()
    except ValueError:
        return getattr(resp_local, 'text', None)


def _error_message(status: int, body: Any) -> str:
    # GitLab reports errors as {"message": ...} or {"error": ...}
    if isinstance(body, dict):
        for key in ('message', 'error'):
            if body.get(key):
                return str(body[key])
    return f"remote API error: HTTP {status}"


def _attempt_request_once(url: str, headers: Dict[str, str], params: Dict[str, Any], timeout: float):
    try:
        resp = requests.get(url, headers=headers or {}, params=params or {}, timeout=timeout)
    except requests.exceptions.Timeout as ex:
        return 'timeout', {'exception': str(ex)}
    except requests.exceptions.RequestException as ex:
        return 'error', {'exception': str(ex)}

    status = getattr(resp, 'status_code', 0)
    headers_in = getattr(resp, 'headers', {}) or {}

    if 200 <= status < 300:
        return 'success', {'body': _parse_success_body(resp), 'status': status, 'next_url': _next_page_url(headers_in)}

    try:
        body = resp.json()
    except ValueError:
        body = getattr(resp, 'text', None)

    if status == 401:
        return 'auth', {'status': status, 'body': body}
    if status == 429:
        return 'rate_limited', {'status': status, 'body': body, 'ra': _parse_retry_after(headers_in.get('Retry-After'))}
    if status >= 500:
        return 'retry', {'status': status, 'body': body}
    return 'fail', {'status': status, 'body': body}


def _compute_wait_seconds(outcome: str, ra_local: Optional[float], attempt: int, base: float, jitter: float, max_backoff: float, min_retry_after: float) -> float:
    jitter_part = random.uniform(0, jitter) if jitter > 0 else 0.0
    if outcome == 'rate_limited':
        wait = ra_local if ra_local is not None else min(base * (2 ** attempt), max_backoff)
        return min(max(wait, min_retry_after), MAX_RETRY_AFTER) + jitter_part
    return min(base * (2 ** attempt), max_backoff) + jitter_part


def _exhausted_error(outcome: str, data: Dict[str, Any], url: str) -> RemoteAPIError:
    status = data.get('status', 0)
    if outcome == 'timeout':
        return RemoteTimeoutError(f"request timed out: {data.get('exception')}", 408, url)
    if outcome == 'error':
        return TransientNetworkError(f"transport failure: {data.get('exception')}", 0, url)
    if outcome == 'rate_limited':
        return RateLimitedError("rate limit exceeded", status, url, retry_after=data.get('ra'))
    return TransientNetworkError(_error_message(status, data.get('body')), status, url)


def _handle_attempt_outcome(outcome: str, data: Dict[str, Any], url: str):
    """Return ('return', result) for success, ('retry', None) for retryable outcomes; raise for terminal failures."""
    if outcome == 'success':
        result = {
            'response': data.get('body'),
            'status': data.get('status', 200),
            'next_url': data.get('next_url'),
            'timestamp': time.time(),
        }
        return 'return', result
    if outcome == 'auth':
        raise AuthInvalidError("access token rejected", data.get('status', 401), url)
    if outcome == 'fail':
        status = data.get('status', 0)
        raise RemoteAPIError(_error_message(status, data.get('body')), status, url)
    return 'retry', None


def _request_with_retries_core(
    url: str,
    headers: Dict[str, str],
    params: Dict[str, Any],
    timeout: float,
    base: float,
    jitter_val: float,
    max_backoff_resolved: float,
    min_retry_after: float,
    effective_max_retries: int,
) -> Dict[str, Any]:
    attempt = 0
    while True:
        outcome, data = _attempt_request_once(url, headers, params, timeout)
        action, payload = _handle_attempt_outcome(outcome, data, url)
        if action == 'return':
            return payload

        if attempt >= effective_max_retries:
            raise _exhausted_error(outcome, data, url)

        wait_seconds = _compute_wait_seconds(outcome, data.get('ra'), attempt, base, jitter_val, max_backoff_resolved, min_retry_after)
        logger.warning("retrying %s after %s (status=%s) in %.2fs [attempt %d/%d]", url, outcome, data.get('status', 0), wait_seconds, attempt + 1, effective_max_retries)
        time.sleep(wait_seconds)
        attempt += 1


def perform_request_with_retries(
    url: str,
    headers: Optional[Dict[str, str]] = None,
    params: Optional[Dict[str, Any]] = None,
    timeout: Optional[float] = None,
    max_retries: Optional[int] = None,
    backoff_base: Optional[float] = None,
    backoff_jitter: Optional[float] = None,
    max_backoff: Optional[float] = None,
) -> Dict[str, Any]:
    """GET url and return {'response', 'status', 'next_url', 'timestamp'}.

    Explicit arguments win over runtime overrides (configure_retry), which win over environment defaults.
    Raises a RemoteAPIError subclass once the request fails terminally or retries are exhausted.
    """
    base = float(_first(backoff_base, _runtime_backoff_base, DEFAULT_BACKOFF_BASE))
    jitter_val = float(_first(backoff_jitter, _runtime_backoff_jitter, DEFAULT_BACKOFF_JITTER))
    max_backoff_resolved = float(_first(max_backoff, _runtime_max_backoff, DEFAULT_MAX_BACKOFF))
    min_retry_after = float(_first(_runtime_min_retry_after, DEFAULT_MIN_RETRY_AFTER))
    timeout_resolved = float(_first(timeout, _runtime_timeout, DEFAULT_REQUEST_TIMEOUT))
    effective_max_retries = int(_first(max_retries, _runtime_max_retries, DEFAULT_MAX_RETRIES))
    return _request_with_retries_core(
        url, headers or {}, params or {}, timeout_resolved, base, jitter_val, max_backoff_resolved, min_retry_after, effective_max_retries
    )


__all__ = ["configure_retry", "reset_retry_config", "perform_request_with_retries"]
