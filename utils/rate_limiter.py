"""
Rate limiting utilities for outbound API calls

TokenBucket enforces a per-upstream request budget. RateLimitedClient wraps a
requests.Session with that budget, a cap on concurrent calls and retry with
exponential backoff for 429/5xx/network failures.
"""

import json
import time
import threading
from dataclasses import dataclass
from typing import Callable, Dict, Optional
import logging

import requests
from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_random_exponential

from menu_intel.errors import ApiError, InvalidRequest, RateLimited, TransientUpstream

logger = logging.getLogger(__name__)

MAX_RESPONSE_BYTES = 5 * 1024 * 1024


class TokenBucket:
    """Thread-safe token bucket with continuous refill"""

    def __init__(self, rate: float, burst: int = 1, name: str = 'default',
                 clock: Callable[[], float] = time.monotonic):
        """
        Initialize token bucket

        Args:
            rate: Tokens added per second
            burst: Bucket capacity. With the default of 1, no one-second window
                ever sees more than `rate` calls.
            name: Upstream name, used in log messages
            clock: Monotonic time source
        """
        if rate <= 0:
            raise ValueError("rate must be positive")
        if burst < 1:
            raise ValueError("burst must be at least 1")

        self.rate = float(rate)
        self.capacity = int(burst)
        self.name = name
        self._clock = clock
        self._tokens = float(self.capacity)
        self._updated = clock()
        self._condition = threading.Condition()

    def _refill(self):
        now = self._clock()
        elapsed = now - self._updated
        if elapsed > 0:
            self._tokens = min(self.capacity, self._tokens + elapsed * self.rate)
            self._updated = now

    @property
    def available(self) -> float:
        with self._condition:
            self._refill()
            return self._tokens

    def try_acquire(self) -> bool:
        """Take a token if one is available right now"""
        with self._condition:
            self._refill()
            if self._tokens >= 1:
                self._tokens -= 1
                return True
            return False

    def acquire(self, timeout: Optional[float] = None):
        """
        Block until a token is available

        Args:
            timeout: Maximum seconds to wait; None waits indefinitely

        Raises:
            RateLimited: (not retryable) if no token can be obtained in time
        """
        deadline = None if timeout is None else self._clock() + timeout

        with self._condition:
            while True:
                self._refill()
                if self._tokens >= 1:
                    self._tokens -= 1
                    return

                wait_time = (1 - self._tokens) / self.rate
                if deadline is not None:
                    remaining = deadline - self._clock()
                    if remaining < wait_time:
                        raise RateLimited(
                            f"No {self.name} request budget within {timeout:.2f}s",
                            retryable=False
                        )

                logger.debug(f"{self.name} bucket empty, waiting {wait_time:.3f}s")
                self._condition.wait(wait_time)


@dataclass
class ApiRequest:
    """Outbound HTTP request description"""
    method: str
    url: str
    params: Optional[Dict] = None
    json: Optional[Dict] = None
    headers: Optional[Dict] = None
    timeout: Optional[float] = None


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, ApiError) and error.retryable


class RateLimitedClient:
    """HTTP client that spends one bucket token per attempt"""

    def __init__(self, bucket: TokenBucket, max_in_flight: int = 5, max_retries: int = 3,
                 backoff_base: float = 0.5, backoff_max: float = 8.0, timeout: float = 30,
                 acquire_timeout: Optional[float] = None,
                 session: Optional[requests.Session] = None,
                 default_headers: Optional[Dict] = None):
        self.bucket = bucket
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.timeout = timeout
        self.acquire_timeout = acquire_timeout
        # Session may be shared between upstreams; headers stay per client
        self.session = session or requests.Session()
        self.default_headers = dict(default_headers or {})
        self._in_flight = threading.BoundedSemaphore(max_in_flight)

    def call(self, request: ApiRequest) -> requests.Response:
        """
        Perform a request under the rate limit

        Returns:
            The successful (2xx/3xx) response

        Raises:
            InvalidRequest: 4xx other than 429, never retried
            RateLimited: 429 after retries are exhausted, or no budget in time
            TransientUpstream: 5xx, timeout or connection error after retries
        """
        retrying = Retrying(
            retry=retry_if_exception(_is_retryable),
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_random_exponential(multiplier=self.backoff_base, max=self.backoff_max),
            before_sleep=self._log_retry,
            reraise=True,
        )
        return retrying(self._attempt, request)

    def get_json(self, url: str, params: Optional[Dict] = None) -> Dict:
        """GET a JSON document"""
        response = self.call(ApiRequest('GET', url, params=params))
        return self._validate_api_response(response)

    def post_json(self, url: str, payload: Dict, params: Optional[Dict] = None,
                  headers: Optional[Dict] = None) -> Dict:
        """POST a JSON body and return the decoded JSON reply"""
        response = self.call(ApiRequest('POST', url, params=params, json=payload, headers=headers))
        return self._validate_api_response(response)

    def _attempt(self, request: ApiRequest) -> requests.Response:
        with self._in_flight:
            self.bucket.acquire(self.acquire_timeout)
            try:
                response = self.session.request(
                    request.method,
                    request.url,
                    params=request.params,
                    json=request.json,
                    headers={**self.default_headers, **(request.headers or {})},
                    timeout=request.timeout or self.timeout,
                )
            except requests.exceptions.Timeout as e:
                raise TransientUpstream(f"Timeout calling {request.url}: {e}")
            except requests.exceptions.ConnectionError as e:
                raise TransientUpstream(f"Connection error calling {request.url}: {e}")
            except requests.exceptions.RequestException as e:
                raise InvalidRequest(f"Could not send request to {request.url}: {e}")

        self._check_status(response, request)
        return response

    @staticmethod
    def _check_status(response: requests.Response, request: ApiRequest):
        status = response.status_code
        if status < 400:
            return

        detail = (response.text or '')[:200]
        if status == 429:
            raise RateLimited(f"{request.url} returned 429: {detail}", status_code=status)
        if status >= 500:
            raise TransientUpstream(f"{request.url} returned {status}: {detail}", status_code=status)
        raise InvalidRequest(f"{request.url} returned {status}: {detail}", status_code=status)

    @staticmethod
    def _validate_api_response(response: requests.Response) -> Dict:
        """Check content type and size, then decode JSON"""
        content_type = response.headers.get('content-type', '')
        if 'json' not in content_type:
            raise InvalidRequest(f"Expected JSON response, got {content_type or 'no content type'}",
                                 status_code=response.status_code)

        if len(response.content) > MAX_RESPONSE_BYTES:
            raise InvalidRequest("Response too large", status_code=response.status_code)

        try:
            return response.json()
        except (json.JSONDecodeError, ValueError) as e:
            raise InvalidRequest(f"Invalid JSON response: {e}", status_code=response.status_code)

    @staticmethod
    def _log_retry(retry_state):
        error = retry_state.outcome.exception()
        logger.warning(
            f"Attempt {retry_state.attempt_number} failed ({error.__class__.__name__}: {error}), "
            f"retrying in {retry_state.next_action.sleep:.2f}s"
        )
