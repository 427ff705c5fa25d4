"""
Thin client for a PostgREST-style table endpoint (the managed backend's
REST surface).

    GET {base_url}/{table}?select=...&symbol=eq.EURUSD&order=timestamp.asc
        &limit=1000&offset=0

Large result sets are read page by page with ``limit`` / ``offset`` until a
short page comes back. Transport and decoding errors surface as
``UpstreamFetchFailure``; retrying is left to the caller.
"""

from typing import Optional

import requests

from fxbacktest.core.errors import UpstreamFetchFailure

DEFAULT_PAGE_SIZE = 1000
_REQUEST_TIMEOUT = 15


class PostgrestClient:
    """
    Parameters
    ----------
    base_url : str
        REST root, e.g. ``https://<project>.supabase.co/rest/v1``.
    api_key : str, optional
        Sent as both ``apikey`` and bearer token.
    page_size : int
        Rows requested per page (default 1000).
    session : requests.Session, optional
        Injected session (useful for testing).
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        page_size: int = DEFAULT_PAGE_SIZE,
        session: Optional[requests.Session] = None,
    ) -> None:
        if not base_url:
            raise ValueError("base_url is required")
        if page_size < 1:
            raise ValueError("page_size must be positive")
        self._base_url = base_url.rstrip("/")
        self._page_size = page_size
        self._session = session or requests.Session()
        self._headers = {"Accept": "application/json"}
        if api_key:
            self._headers["apikey"] = api_key
            self._headers["Authorization"] = f"Bearer {api_key}"

    def fetch_rows(
        self,
        table: str,
        params: list[tuple[str, str]],
        symbol: Optional[str] = None,
    ) -> list[dict]:
        """Return every row matching *params*, following pagination."""
        url = f"{self._base_url}/{table}"
        rows: list[dict] = []
        offset = 0

        while True:
            page_params = params + [("limit", str(self._page_size)), ("offset", str(offset))]
            try:
                response = self._session.get(
                    url,
                    params=page_params,
                    headers=self._headers,
                    timeout=_REQUEST_TIMEOUT,
                )
                response.raise_for_status()
                page = response.json()
            except (requests.RequestException, ValueError) as exc:
                raise UpstreamFetchFailure(f"{table} query failed: {exc}", symbol) from exc

            if not isinstance(page, list):
                raise UpstreamFetchFailure(f"{table} returned an unexpected payload", symbol)

            rows.extend(page)
            if len(page) < self._page_size:
                break
            offset += self._page_size

        return rows
