"""
SSRF checks for webhook target URLs.

A webhook URL is rejected when it could make the service talk to itself, to
the private network it runs in, or to a cloud metadata endpoint.
"""

from __future__ import annotations

import ipaddress
import re
from typing import Optional
from urllib.parse import urlsplit

BLOCKED_TLDS = (
    ".internal",
    ".corp",
    ".home",
    ".lan",
    ".localdomain",
    ".intranet",
)

BLOCKED_HOSTNAMES = (
    "metadata.google.internal",
    "metadata.goog",
    "169.254.169.254",
    "fd00:ec2::254",
    "instance-data",
    "kubernetes.default",
    "kubernetes.default.svc",
)

BLOCKED_PORTS = frozenset({22, 23, 25, 53, 110, 143, 445, 3306, 5432, 6379, 27017})

CGNAT_NETWORK = ipaddress.ip_network("100.64.0.0/10")

# Labels such as "0x7f" or "0177" that resolvers may treat as IPv4 parts.
_NUMERIC_LABEL = re.compile(r"^(0x[0-9a-f]*|\d+)$")


class UnsafeWebhookUrlError(ValueError):
    """Raised when a webhook URL fails validation."""


def _check_ip(ip: ipaddress.IPv4Address | ipaddress.IPv6Address) -> Optional[str]:
    if isinstance(ip, ipaddress.IPv6Address):
        if ip.ipv4_mapped is not None:
            return "Webhook URL cannot point to an IPv4-mapped IPv6 address"
        if ip.is_loopback or ip.is_link_local or ip.is_private or ip.is_unspecified:
            return "Webhook URL cannot point to private IPv6 address"
        if ip.is_reserved or ip.is_multicast or ip.is_site_local:
            return "Webhook URL cannot point to reserved IPv6 address"
        return None

    if ip.is_loopback:
        return "Webhook URL cannot point to loopback address"
    if ip.is_link_local:
        return "Webhook URL cannot point to link-local/metadata IP range"
    if ip.is_unspecified or ip in ipaddress.ip_network("0.0.0.0/8"):
        return "Webhook URL cannot point to current network address"
    if ip in CGNAT_NETWORK:
        return "Webhook URL cannot point to CGNAT IP range"
    if ip.is_private:
        return f"Webhook URL cannot point to private IP range ({ip})"
    if ip.is_multicast or ip.is_reserved:
        return "Webhook URL cannot point to reserved IP range"
    return None


def check_webhook_url(
    url: str, *, require_https: bool = True
) -> tuple[bool, Optional[str]]:
    """Return ``(valid, error)`` for a candidate webhook URL."""
    try:
        parsed = urlsplit((url or "").strip())
        port = parsed.port
    except ValueError:
        return False, "Invalid URL format"

    scheme = parsed.scheme.lower()
    if require_https:
        if scheme != "https":
            return False, "Webhook URL must use HTTPS"
    elif scheme not in ("http", "https"):
        return False, "Only HTTP/HTTPS protocols are allowed"

    hostname = (parsed.hostname or "").lower().rstrip(".")
    if not hostname:
        return False, "Invalid URL format"

    if parsed.username or parsed.password:
        return False, "Webhook URL cannot contain credentials"

    if (
        hostname == "localhost"
        or hostname.endswith(".local")
        or hostname.endswith(".localhost")
    ):
        return False, "Webhook URL cannot point to localhost"

    for tld in BLOCKED_TLDS:
        if hostname.endswith(tld):
            return False, f"Webhook URL cannot use internal TLD ({tld})"

    for blocked in BLOCKED_HOSTNAMES:
        if hostname == blocked or blocked in hostname:
            return False, "Webhook URL cannot point to cloud metadata endpoint"

    if port is None:
        port = 443 if scheme == "https" else 80
    if port in BLOCKED_PORTS:
        return False, f"Webhook URL cannot use port {port}"

    try:
        ip = ipaddress.ip_address(hostname)
    except ValueError:
        ip = None

    if ip is not None:
        error = _check_ip(ip)
        if error:
            return False, error
        return True, None

    labels = hostname.split(".")
    if all(_NUMERIC_LABEL.match(label) for label in labels if label):
        return False, "Webhook URL cannot use a numeric host encoding"

    if "." not in hostname:
        return False, "Webhook URL must use a fully qualified domain name"

    return True, None


def validate_webhook_url(url: str, *, require_https: bool = True) -> str:
    """Return the URL unchanged or raise :class:`UnsafeWebhookUrlError`."""
    valid, error = check_webhook_url(url, require_https=require_https)
    if not valid:
        raise UnsafeWebhookUrlError(error or "Invalid webhook URL")
    return url
