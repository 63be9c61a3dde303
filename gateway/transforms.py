"""
gateway/transforms.py -- Identity Propagator: header rewriting at the edge.

The three identity headers are only trustworthy downstream because the edge
is the sole component allowed to set them. Every inbound copy is removed
before anything else looks at the request, and the verified values are
written fresh on the way out.

Two shapes of headers pass through here:
  - raw ASGI scope headers (list of (bytes, bytes)) inside the middleware
  - str mappings when building the proxied request
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping

from auth.models import ValidationResult

USER_ID_HEADER = "X-User-Id"
USERNAME_HEADER = "X-Username"
USER_EMAIL_HEADER = "X-User-Email"

IDENTITY_HEADERS = frozenset(h.lower() for h in (USER_ID_HEADER, USERNAME_HEADER, USER_EMAIL_HEADER))
_IDENTITY_HEADERS_RAW = frozenset(h.encode("latin-1") for h in IDENTITY_HEADERS)

# RFC 9110 section 7.6.1 connection-specific headers, plus Host (set by the
# HTTP client for the upstream) and Content-Length (recomputed from the body).
HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailer",
        "transfer-encoding",
        "upgrade",
        "host",
        "content-length",
    }
)


def strip_identity_headers(raw_headers: Iterable[tuple[bytes, bytes]]) -> list[tuple[bytes, bytes]]:
    """Drop every inbound identity header from ASGI scope headers (case-insensitive)."""
    return [(name, value) for name, value in raw_headers if name.lower() not in _IDENTITY_HEADERS_RAW]


def identity_headers(identity: ValidationResult | None) -> dict[str, str]:
    """Headers to attach for a verified identity. Empty claims are skipped."""
    if identity is None or not identity.is_valid:
        return {}
    values = {
        USER_ID_HEADER: identity.user_id,
        USERNAME_HEADER: identity.username,
        USER_EMAIL_HEADER: identity.email,
    }
    return {name: value for name, value in values.items() if value}


def raw_identity_headers(identity: ValidationResult | None) -> list[tuple[bytes, bytes]]:
    return [
        (name.lower().encode("latin-1"), value.encode("utf-8"))
        for name, value in identity_headers(identity).items()
    ]


def build_upstream_headers(inbound: Mapping[str, str], identity: ValidationResult | None) -> dict[str, str]:
    """Request transform applied right before proxying.

    Copies end-to-end headers, removes any identity header still present and
    sets the verified identity (if any). The result is what the downstream
    service sees.
    """
    headers = {
        name: value
        for name, value in inbound.items()
        if name.lower() not in HOP_BY_HOP_HEADERS and name.lower() not in IDENTITY_HEADERS
    }
    headers.update(identity_headers(identity))
    return headers


def build_downstream_response_headers(upstream: Mapping[str, str]) -> dict[str, str]:
    """Headers to relay back to the client from the proxied response.

    The HTTP client has already decoded the body, so Content-Encoding and
    Content-Length no longer describe it.
    """
    return {
        name: value
        for name, value in upstream.items()
        if name.lower() not in HOP_BY_HOP_HEADERS and name.lower() != "content-encoding"
    }
