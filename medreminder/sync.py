"""
Resilient Sync Layer

Every remote read/write goes through ResilientSync.perform_with_retry():

    - probe connectivity before each attempt (bounded timeout)
    - offline -> ConnectivityError for that attempt, counted in the budget
    - fixed delay between failed attempts (not exponential)
    - exhausted -> the last concrete error is re-raised unchanged

This is the only place in the package that retries. It never swallows an
error; it only bounds and delays attempts.
"""

import time
from typing import Callable, Optional, TypeVar

import requests

from medreminder.errors import ConnectivityError, MaxRetriesExceededError
from medreminder.logger import get_logger


T = TypeVar("T")

DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY = 2.0
DEFAULT_PROBE_TIMEOUT = 5


class ConnectivityProbe:
    """Checks that the remote host answers at all.

    Any HTTP response (even 401/404) means the network path is up; only a
    transport failure counts as offline. Transitions are published to the
    optional ConnectivityState so the UI can show an offline indicator.
    """

    def __init__(self, config, url: Optional[str] = None, session=None, state=None):
        self.config = config
        self.logger = get_logger(__name__, config)
        self.url = url if url is not None else config.get("remote.url", "")
        self.timeout = config.get("sync.probe_timeout_seconds", DEFAULT_PROBE_TIMEOUT)
        self.session = session or requests.Session()
        self.state = state
        self._last = None

    def is_connected(self) -> bool:
        if not self.url:
            self.logger.debug("No remote URL configured; skipping connectivity probe")
            return self._publish(True)
        try:
            self.session.head(self.url, timeout=self.timeout, allow_redirects=True)
            return self._publish(True)
        except requests.RequestException as e:
            self.logger.debug(f"Connectivity probe failed: {e}")
            return self._publish(False)

    def _publish(self, online: bool) -> bool:
        if online != self._last:
            self._last = online
            self.logger.info(f"Network status: {'Connected' if online else 'Disconnected'}")
            if self.state is not None:
                self.state.update(online=online)
        return online


class StaticProbe:
    """Probe with a fixed answer; flip .online to simulate a partition."""

    def __init__(self, online: bool = True, state=None):
        self.online = online
        self.state = state
        self.calls = 0

    def is_connected(self) -> bool:
        self.calls += 1
        if self.state is not None and self.state.online != self.online:
            self.state.update(online=self.online)
        return self.online


class ResilientSync:
    """Bounded retry with fixed backoff around remote operations."""

    def __init__(self, probe, config=None, sleep: Callable[[float], None] = time.sleep):
        self.probe = probe
        self.config = config
        self.logger = get_logger(__name__, config)
        self._sleep = sleep
        get = config.get if config is not None else (lambda key, default=None: default)
        self.max_retries = get("sync.max_retries", DEFAULT_MAX_RETRIES)
        self.base_delay = get("sync.base_delay_seconds", DEFAULT_BASE_DELAY)

    def perform_with_retry(self, operation: Callable[[], T],
                           max_retries: Optional[int] = None,
                           base_delay: Optional[float] = None,
                           description: str = "") -> T:
        """Run operation() up to max_retries times.

        Errors flagged retryable=False (ConflictError, MalformedDataError)
        are surfaced immediately: another attempt cannot change the answer.
        """
        if max_retries is None:
            max_retries = self.max_retries
        if base_delay is None:
            base_delay = self.base_delay
        label = f" ({description})" if description else ""

        last_error = None
        for attempt in range(1, max_retries + 1):
            try:
                self.logger.debug(f"Attempt {attempt}/{max_retries}{label}")
                if not self.probe.is_connected():
                    raise ConnectivityError()
                result = operation()
                if attempt > 1:
                    self.logger.info(f"Succeeded on attempt {attempt}{label}")
                return result
            except Exception as e:
                if not getattr(e, "retryable", True):
                    raise
                last_error = e
                self.logger.warning(f"Attempt {attempt}/{max_retries} failed{label}: {e}")
                if attempt < max_retries:
                    self.logger.debug(f"Waiting {base_delay}s before retrying")
                    self._sleep(base_delay)

        if last_error is not None:
            raise last_error
        raise MaxRetriesExceededError()
