"""
HTTP plumbing shared by the GitHub adapter: pooled sessions, rate-limit waits and backoff.
"""
from __future__ import annotations

import logging
import os
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .errors import ConfigError, ScanCancelledError

_TRANSIENT_STATUSES = (429, 500, 502, 503, 504)
# Added to X-RateLimit-Reset so the retry lands after the window rolls over
_RESET_SLACK_SEC = 2.0


@dataclass(frozen=True)
class RetryPolicy:
    """Pacing and backoff for API calls.

    Attributes:
        min_delay: Seconds to wait before every request (0 disables pacing)
        max_attempts: Attempts per request for network errors and 429/5xx
        backoff_base: Wait before attempt n+1 is ``backoff_base ** (n - 1)`` seconds
    """
    min_delay: float = 0.0
    max_attempts: int = 6
    backoff_base: float = 1.7

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> 'RetryPolicy':
        """Read GITHUB_REQ_DELAY, GITHUB_REQ_MAX_ATTEMPTS and GITHUB_REQ_BACKOFF_BASE."""
        env = os.environ if env is None else env
        try:
            policy = cls(
                min_delay=float(env.get("GITHUB_REQ_DELAY") or 0),
                max_attempts=int(env.get("GITHUB_REQ_MAX_ATTEMPTS") or 6),
                backoff_base=float(env.get("GITHUB_REQ_BACKOFF_BASE") or 1.7),
            )
        except ValueError as e:
            raise ConfigError(f"invalid request retry setting: {e}") from e
        if policy.max_attempts < 1 or policy.min_delay < 0 or policy.backoff_base < 1:
            raise ConfigError(f"request retry settings out of range: {policy}")
        return policy

    def backoff(self, attempt: int) -> float:
        return self.backoff_base ** (attempt - 1)


def make_rate_limited_session(token: Optional[str], user_agent: str = "ghes-schedule-scanner",
                              pool_size: int = 10) -> requests.Session:
    """Create an authenticated Session for GitHub Enterprise.

    urllib3 retries connection failures and transient statuses at the transport
    level; ``request_with_rate_limit`` adds rate-limit aware waits on top. The
    connection pool holds ``pool_size`` connections, one per scan worker.
    """
    session = requests.Session()
    transport_retry = Retry(
        total=3,
        backoff_factor=0.5,
        status_forcelist=list(_TRANSIENT_STATUSES),
        allowed_methods=["GET"],
        respect_retry_after_header=False,
        raise_on_status=False,
    )
    adapter = HTTPAdapter(max_retries=transport_retry, pool_connections=pool_size, pool_maxsize=pool_size)
    session.mount("https://", adapter)
    session.mount("http://", adapter)
    headers: Dict[str, str] = {
        "Accept": "application/vnd.github.v3+json",
        "User-Agent": user_agent or "ghes-schedule-scanner",
    }
    if token:
        headers["Authorization"] = f"token {token}"
    session.headers.update(headers)
    return session


def rate_limit_wait(resp: requests.Response, now: Optional[float] = None) -> Optional[float]:
    """Seconds to wait before retrying a rate-limited response, None if it is not rate limited.

    Secondary limits answer 403/429 with ``Retry-After``. An exhausted primary
    limit answers 403 with ``X-RateLimit-Remaining: 0`` and a reset epoch.
    """
    if resp.status_code not in (403, 429):
        return None
    retry_after = resp.headers.get("Retry-After")
    if retry_after:
        try:
            return max(0.0, float(retry_after))
        except ValueError:
            pass
    if resp.status_code == 403 and resp.headers.get("X-RateLimit-Remaining") == "0":
        try:
            reset = int(resp.headers.get("X-RateLimit-Reset", "0"))
        except ValueError:
            return None
        now = time.time() if now is None else now
        return max(0.0, reset - now + _RESET_SLACK_SEC)
    return None


def _sleep(seconds: float, stop_event: Optional[threading.Event]) -> None:
    if stop_event is None:
        time.sleep(seconds)
    elif stop_event.wait(seconds):
        raise ScanCancelledError("request cancelled while waiting to retry")


def request_with_rate_limit(
    session: requests.Session,
    method: str,
    url: str,
    *,
    policy: Optional[RetryPolicy] = None,
    logger: Optional[logging.Logger] = None,
    stop_event: Optional[threading.Event] = None,
    **kwargs: Any,
) -> requests.Response:
    """Send one API request, waiting out rate limits and backing off on transient failures.

    The first wait for an exhausted primary limit to reset does not use up an
    attempt; every later one, and every other retry, does. Once attempts run
    out a network error is re-raised and a rate-limited or transient response
    is returned for the caller to inspect. All waits end early with
    ScanCancelledError when ``stop_event`` is set.
    """
    policy = policy or RetryPolicy()
    log = logger or logging.getLogger("schedule_scanner.rate_limit")
    if policy.min_delay > 0:
        _sleep(policy.min_delay, stop_event)

    attempt = 0
    reset_waited = False
    while True:
        if stop_event is not None and stop_event.is_set():
            raise ScanCancelledError(f"request cancelled: {method} {url}")
        attempt += 1
        try:
            resp = session.request(method, url, **kwargs)
        except requests.RequestException as e:
            if attempt >= policy.max_attempts:
                raise
            wait_s = policy.backoff(attempt)
            log.warning("%s %s failed (attempt %d/%d): %s; retrying in %.1fs",
                        method, url, attempt, policy.max_attempts, e, wait_s)
            _sleep(wait_s, stop_event)
            continue

        wait_s = rate_limit_wait(resp)
        if wait_s is not None:
            free_wait = "Retry-After" not in resp.headers and not reset_waited
            if not free_wait and attempt >= policy.max_attempts:
                return resp
            log.warning("Rate limited on %s %s (HTTP %d); waiting %.1fs",
                        method, url, resp.status_code, wait_s)
            _sleep(wait_s, stop_event)
            if free_wait:
                reset_waited = True
                attempt -= 1
            continue

        if resp.status_code in _TRANSIENT_STATUSES:
            if attempt >= policy.max_attempts:
                return resp
            wait_s = policy.backoff(attempt)
            log.warning("HTTP %d on %s %s (attempt %d/%d); retrying in %.1fs",
                        resp.status_code, method, url, attempt, policy.max_attempts, wait_s)
            _sleep(wait_s, stop_event)
            continue

        return resp
