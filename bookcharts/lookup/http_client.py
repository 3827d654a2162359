"""HTTP session factory for metadata provider calls.

Creates a requests.Session pre-configured with:
- Honest User-Agent header (not browser impersonation)
- A connection pool sized to the lookup batch, so one batch of
  parallel lookups never waits on a pooled connection
- No transport-level retries: retry policy lives in the metadata
  cache, which knows whether a failure is transient or permanent
"""

from __future__ import annotations

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from bookcharts.config import LookupConfig


def create_session(config: LookupConfig) -> requests.Session:
    """Create an HTTP session for provider lookups.

    Uses urllib3's Retry with total=0 so connection errors and 429/5xx
    responses surface immediately to the caller, which classifies them.

    Args:
        config: Lookup configuration with user_agent and batch_size.

    Returns:
        A requests.Session ready to use for all provider calls.
    """
    session = requests.Session()
    session.headers["User-Agent"] = config.user_agent
    session.headers["Accept"] = "application/json"

    retry_strategy = Retry(total=0, raise_on_status=False)
    adapter = HTTPAdapter(
        pool_connections=1,
        pool_maxsize=max(config.batch_size, 1),
        max_retries=retry_strategy,
    )
    session.mount("https://", adapter)
    session.mount("http://", adapter)

    return session
