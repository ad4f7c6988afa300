from __future__ import annotations

import re
from typing import Dict, Optional
from urllib.parse import unquote

from starlette.requests import Request
from starlette.responses import Response

# Request inspection covers the path and query string only, never the body
THREAT_PATTERNS: Dict[str, re.Pattern[str]] = {
    "sql_injection": re.compile(
        r"(\bunion\b.*\bselect\b|'\s*(or|and)\s*'|--\s|/\*|\*/|;\s*drop|;\s*delete|;\s*insert|xp_|exec\s*\()",
        re.IGNORECASE,
    ),
    "xss": re.compile(
        r"(<script|javascript:|on\w+\s*=|<\s*img[^>]*onerror|<iframe|<object|<embed)",
        re.IGNORECASE,
    ),
    "path_traversal": re.compile(
        r"(\.\.(/|\\)|%2e%2e%2f|%2e%2e/|\.\.%2f)",
        re.IGNORECASE,
    ),
}

SECURITY_HEADERS: Dict[str, str] = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
    "Strict-Transport-Security": "max-age=63072000; includeSubDomains; preload",
    "Content-Security-Policy": "default-src 'none'; frame-ancestors 'none'",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Permissions-Policy": "geolocation=(), microphone=(), camera=(), payment=()",
    "Cache-Control": "no-store",
}


def detect_threat(path: str, query: str = "") -> Optional[str]:
    """Return the first matching threat category for a request target, if any.

    Both the raw and the percent-decoded forms are inspected so encoded
    payloads cannot slip past the patterns.
    """
    raw = f"{path}?{query}" if query else path
    candidates = (raw, unquote(raw), unquote(unquote(raw)))
    for category, pattern in THREAT_PATTERNS.items():
        if any(pattern.search(candidate) for candidate in candidates):
            return category
    return None


def request_target(request: Request) -> tuple[str, str]:
    """Path and query string as received, before routing normalizes them."""
    raw_path = request.scope.get("raw_path")
    path = raw_path.decode("latin-1") if raw_path else request.url.path
    query = request.scope.get("query_string", b"").decode("latin-1")
    return path, query


def client_ip(request: Request, trusted_header: Optional[str] = None) -> str:
    """Connecting address: the trusted edge header when configured, else the peer.

    Client-controlled forwarding headers (X-Forwarded-For and friends) are
    never consulted.
    """
    if trusted_header:
        value = request.headers.get(trusted_header)
        if value and value.strip():
            return value.strip()
        return "unknown"
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def apply_security_headers(response: Response) -> Response:
    for name, value in SECURITY_HEADERS.items():
        response.headers[name] = value
    if "server" in response.headers:
        del response.headers["server"]
    return response
