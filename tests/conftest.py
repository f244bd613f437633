import os
import tempfile

import pytest
import responses

# app.py builds a module level app on import; keep its mirror dir out of the repo
os.environ.setdefault("DOWNLOADS_DIR", tempfile.mkdtemp(prefix="mangaverse-test-"))

from config import Settings  # noqa: E402
from fetcher import RetryPolicy  # noqa: E402


@pytest.fixture
def responses_mock():
    with responses.RequestsMock(assert_all_requests_are_fired=False) as rsps:
        yield rsps


@pytest.fixture
def no_wait_policy() -> RetryPolicy:
    return RetryPolicy(attempts=3, base_delay=0)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        downloads_dir=str(tmp_path / "downloads"),
        retry_base_delay=0,
        rate_limit="1000/minute",
        public_base_url="http://testserver",
    )
