"""
gateway/proxy.py -- Reverse proxy client for the downstream service.

A thin wrapper around one requests.Session (connection pooling) that replays
the client's method, path, query string and body against DOWNSTREAM_URL.
Header policy lives in gateway/transforms.py; this module only moves bytes.

Redirects are never followed: a 3xx from downstream is relayed to the client
as-is so the client, not the edge, decides where to go next.
"""

from __future__ import annotations

import requests


class ReverseProxy:
    """Forward requests to a single downstream base URL.

    Usage:
        proxy = ReverseProxy("http://api:8080", timeout=30)
        upstream = proxy.forward("GET", "employees", "page=2", headers, b"")
    """

    def __init__(self, base_url: str, timeout: float = 30.0, session: requests.Session | None = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = session or requests.Session()

    def url_for(self, path: str, query: str = "") -> str:
        url = f"{self.base_url}/{path.lstrip('/')}"
        return f"{url}?{query}" if query else url

    def forward(self, method: str, path: str, query: str, headers: dict[str, str], body: bytes) -> requests.Response:
        """Send one request downstream. Raises requests.RequestException on transport failure."""
        return self._session.request(
            method,
            self.url_for(path, query),
            headers=headers,
            data=body or None,
            timeout=self.timeout,
            allow_redirects=False,
        )

    def close(self) -> None:
        self._session.close()
