"""
HTTP fetching with capped exponential backoff

Every failure is retried the same way, including 4xx responses. After the
last attempt the final exception propagates unchanged.
"""

import json
import time
import random
import logging
import requests
from bs4 import BeautifulSoup
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, TypeVar

from errors import UpstreamError

logger = logging.getLogger(__name__)

T = TypeVar('T')

DEFAULT_TIMEOUT = 30

USER_AGENTS = [
    'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36',
    'Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:121.0) Gecko/20100101 Firefox/121.0',
    'Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.2 Safari/605.1.15',
    'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Edge/120.0.0.0',
]


def get_random_headers() -> Dict[str, str]:
    return {
        'User-Agent': random.choice(USER_AGENTS),
        'Accept': 'text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8',
        'Accept-Language': 'en-US,en;q=0.5',
        'DNT': '1',
        'Connection': 'keep-alive',
    }


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 3
    base_delay: float = 1.0  # seconds
    multiplier: int = 2

    def delay(self, attempt: int) -> float:
        """Wait after failed attempt number ``attempt`` (1-based)"""
        return self.base_delay * self.multiplier ** (attempt - 1)

    @classmethod
    def from_settings(cls, settings) -> 'RetryPolicy':
        return cls(attempts=max(1, settings.retry_attempts), base_delay=settings.retry_base_delay)


DEFAULT_POLICY = RetryPolicy()


def retry_call(func: Callable[[], T], policy: Optional[RetryPolicy] = None,
               sleep: Callable[[float], None] = time.sleep, description: str = 'call') -> T:
    """Call ``func`` until it succeeds or the policy runs out of attempts"""
    policy = policy or DEFAULT_POLICY
    for attempt in range(1, policy.attempts + 1):
        try:
            return func()
        except Exception as e:
            if attempt >= policy.attempts:
                logger.warning(f"{description} failed after {attempt} attempts: {e}")
                raise
            delay = policy.delay(attempt)
            logger.warning(f"{description} failed (attempt {attempt}/{policy.attempts}): {e}; retrying in {delay:.1f}s")
            sleep(delay)


def fetch_with_retry(url: str, method: str = 'GET', session: Optional[requests.Session] = None,
                     policy: Optional[RetryPolicy] = None, sleep: Callable[[float], None] = time.sleep,
                     **request_kwargs) -> bytes:
    """Perform an HTTP request with retries and return the raw response body"""
    if session is None:
        with requests.Session() as own_session:
            return fetch_with_retry(url, method=method, session=own_session, policy=policy,
                                    sleep=sleep, **request_kwargs)

    headers = get_random_headers()
    headers.update(request_kwargs.pop('headers', None) or {})
    request_kwargs.setdefault('timeout', DEFAULT_TIMEOUT)

    def do_request() -> bytes:
        resp = session.request(method, url, headers=headers, **request_kwargs)
        resp.raise_for_status()
        return resp.content

    return retry_call(do_request, policy=policy, sleep=sleep, description=f"{method} {url}")


def fetch_html(url: str, **kwargs) -> BeautifulSoup:
    return BeautifulSoup(fetch_with_retry(url, **kwargs), 'html.parser')


def fetch_json(url: str, **kwargs) -> Any:
    body = fetch_with_retry(url, **kwargs)
    try:
        return json.loads(body)
    except ValueError as e:
        raise UpstreamError(f"Invalid JSON from {url}: {e}") from e
