"""Google Books lookup client.

Performs exactly one GET per identifier against the volumes search
endpoint (``?q=isbn:<isbn>``) and classifies the outcome:

    200 with items      -> metadata from the first volume
    200 without items   -> permanent failure (not found)
    unparseable body    -> permanent failure (malformed)
    429 / 5xx           -> transient failure (rate limit, server error)
    other 4xx           -> permanent failure
    connection/timeout  -> transient failure

The client never raises for these cases and never retries. It returns
a LookupResult and lets the metadata cache decide what to do next.
"""

from __future__ import annotations

import logging

import requests

from bookcharts.config import LookupConfig
from bookcharts.exceptions import PermanentLookupFailure, TransientLookupFailure
from bookcharts.lookup.http_client import create_session
from bookcharts.models import BookMetadata, LookupResult

logger = logging.getLogger(__name__)

TRANSIENT_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


class GoogleBooksClient:
    """Thin adapter over the Google Books volumes endpoint."""

    def __init__(
        self,
        config: LookupConfig,
        session: requests.Session | None = None,
    ) -> None:
        self._config = config
        self._session = session or create_session(config)

    def lookup(self, isbn: str) -> LookupResult:
        """Look up one ISBN.

        Args:
            isbn: ISBN-10 or ISBN-13 identifier.

        Returns:
            LookupResult with metadata on success, otherwise with a
            TransientLookupFailure or PermanentLookupFailure.
        """
        params = {"q": f"isbn:{isbn}"}
        if self._config.api_key:
            params["key"] = self._config.api_key

        try:
            response = self._session.get(
                self._config.base_url,
                params=params,
                timeout=self._config.request_timeout,
            )
        except (requests.ConnectionError, requests.Timeout) as exc:
            logger.warning("Lookup for %s failed: %s", isbn, exc)
            return LookupResult(
                identifier=isbn,
                failure=TransientLookupFailure(
                    f"Network error: {exc}", identifier=isbn
                ),
            )

        if response.status_code in TRANSIENT_STATUS_CODES:
            logger.warning(
                "Lookup for %s returned %d", isbn, response.status_code
            )
            return LookupResult(
                identifier=isbn,
                failure=TransientLookupFailure(
                    f"Provider returned {response.status_code}",
                    identifier=isbn,
                    status_code=response.status_code,
                ),
            )

        if response.status_code != 200:
            return LookupResult(
                identifier=isbn,
                failure=PermanentLookupFailure(
                    f"Provider returned {response.status_code}",
                    identifier=isbn,
                    status_code=response.status_code,
                ),
            )

        try:
            body = response.json()
        except ValueError:
            body = None
        if not isinstance(body, dict):
            return LookupResult(
                identifier=isbn,
                failure=PermanentLookupFailure(
                    "Malformed provider response",
                    identifier=isbn,
                    status_code=response.status_code,
                ),
            )

        items = body.get("items") or []
        if not items:
            logger.info("No volume found for %s", isbn)
            return LookupResult(
                identifier=isbn,
                failure=PermanentLookupFailure(
                    "No volume found", identifier=isbn, status_code=200
                ),
            )

        first = items[0] if isinstance(items[0], dict) else {}
        volume_info = first.get("volumeInfo")
        if not isinstance(volume_info, dict):
            return LookupResult(
                identifier=isbn,
                failure=PermanentLookupFailure(
                    "Volume has no volumeInfo", identifier=isbn, status_code=200
                ),
            )

        return LookupResult(
            identifier=isbn,
            metadata=BookMetadata.from_volume_info(isbn, volume_info),
        )

    def close(self) -> None:
        self._session.close()
