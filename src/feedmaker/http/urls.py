from __future__ import annotations

import ipaddress
from typing import Optional
from urllib.parse import urljoin, urlsplit

ALLOWED_SCHEMES = ("http", "https")


def is_http_url(url: str) -> bool:
    try:
        parts = urlsplit(url)
    except ValueError:
        return False
    return parts.scheme.lower() in ALLOWED_SCHEMES and bool(parts.hostname)


def host_of(url: str) -> str:
    try:
        return (urlsplit(url).hostname or "").lower()
    except ValueError:
        return ""


def _is_private_host(host: str) -> bool:
    if host == "localhost" or host.endswith(".localhost"):
        return True
    try:
        address = ipaddress.ip_address(host.strip("[]"))
    except ValueError:
        return False
    return (
        address.is_private
        or address.is_loopback
        or address.is_link_local
        or address.is_reserved
        or address.is_multicast
        or address.is_unspecified
    )


def check_fetch_target(url: str, *, allow_private_hosts: bool) -> Optional[str]:
    """
    Return an error code when the URL must not be fetched, otherwise None.

    Only literal addresses are inspected; names are not resolved here.
    """

    try:
        parts = urlsplit(url)
        host = parts.hostname
    except ValueError:
        return "invalid_url"
    if not parts.scheme or not host:
        return "invalid_url"
    if parts.scheme.lower() not in ALLOWED_SCHEMES:
        return "unsupported_scheme"
    if parts.username or parts.password:
        return "disallowed_auth"
    if not allow_private_hosts and _is_private_host(host.lower()):
        return "private_target"
    return None


def resolve_url(href: str, base: str) -> str:
    """Resolve href against base. Returns "" for empty or unusable references."""
    href = (href or "").strip()
    if not href:
        return ""
    if href.startswith("//"):
        scheme = urlsplit(base).scheme or "https"
        return f"{scheme}:{href}"
    try:
        return urljoin(base, href)
    except ValueError:
        return ""
