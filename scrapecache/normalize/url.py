"""URL validation, canonicalisation and hashing for cache keys.

Validation is hostname/pattern based only. No DNS resolution is performed,
so a public hostname that resolves to a private address (DNS rebinding) is
not caught here. Deployments that need stronger guarantees should add a
domain allowlist in front of the scrape service.
"""
from __future__ import annotations

import hashlib
import re
from typing import List, Tuple
from urllib.parse import SplitResult, parse_qsl, urlencode, urlsplit

from scrapecache.errors import UrlValidationError

MAX_URL_LENGTH = 2000

ALLOWED_SCHEMES = {"http", "https"}
DEFAULT_PORTS = {"http": 80, "https": 443}

TRACKING_PARAMS = frozenset(
    {
        # Google Analytics / Ads
        "utm_source",
        "utm_medium",
        "utm_campaign",
        "utm_term",
        "utm_content",
        "utm_id",
        "utm_source_platform",
        "utm_creative_format",
        "utm_marketing_tactic",
        "gclid",
        "gclsrc",
        "dclid",
        # Facebook
        "fbclid",
        "fb_action_ids",
        "fb_action_types",
        "fb_source",
        "fb_ref",
        # Microsoft / Bing
        "msclkid",
        # Twitter
        "twclid",
        # HubSpot
        "hsa_acc",
        "hsa_cam",
        "hsa_grp",
        "hsa_ad",
        "hsa_src",
        "hsa_tgt",
        "hsa_kw",
        "hsa_mt",
        "hsa_net",
        "hsa_ver",
        # Mailchimp and generic referrers
        "ref",
        "source",
        "mc_cid",
        "mc_eid",
        "_ga",
        "_gl",
    }
)
TRACKING_PREFIXES = ("utm_",)

_PRIVATE_HOST_PATTERNS = [
    re.compile(r"^localhost$", re.IGNORECASE),
    re.compile(r"^127\.\d{1,3}\.\d{1,3}\.\d{1,3}$"),
    re.compile(r"^::1$"),
    re.compile(r"^::$"),
    re.compile(r"^0\.0\.0\.0$"),
    # RFC 1918
    re.compile(r"^10\.\d{1,3}\.\d{1,3}\.\d{1,3}$"),
    re.compile(r"^172\.(1[6-9]|2\d|3[0-1])\.\d{1,3}\.\d{1,3}$"),
    re.compile(r"^192\.168\.\d{1,3}\.\d{1,3}$"),
    # link-local
    re.compile(r"^169\.254\.\d{1,3}\.\d{1,3}$"),
    # IPv6 link-local and unique local
    re.compile(r"^fe80:", re.IGNORECASE),
    re.compile(r"^fc00:", re.IGNORECASE),
    re.compile(r"^fd[0-9a-f]{2}:", re.IGNORECASE),
]

BLOCKED_HOSTNAME_SUFFIXES = (".local", ".internal", ".localhost")


def _split(url: str) -> SplitResult:
    try:
        parsed = urlsplit(url.strip())
        # Accessing the port validates it.
        parsed.port
    except ValueError as exc:
        raise UrlValidationError("invalid_url", "Invalid URL: Invalid URL format") from exc
    return parsed


def validate_url(url: str, *, max_length: int = MAX_URL_LENGTH) -> None:
    """Raise `UrlValidationError` unless the URL is safe to hand to the provider."""
    if len(url) > max_length:
        raise UrlValidationError(
            "too_long",
            f"URL exceeds maximum length of {max_length} characters (got {len(url)})",
        )

    parsed = _split(url)
    if not parsed.scheme:
        raise UrlValidationError("invalid_url", "Invalid URL: Invalid URL format")
    if parsed.scheme not in ALLOWED_SCHEMES:
        raise UrlValidationError(
            "invalid_scheme",
            f"Invalid URL scheme: {parsed.scheme}:. Only http and https are allowed",
        )

    hostname = (parsed.hostname or "").lower()
    if not hostname:
        raise UrlValidationError("invalid_url", "Invalid URL: Invalid URL format")

    for pattern in _PRIVATE_HOST_PATTERNS:
        if pattern.search(hostname):
            raise UrlValidationError(
                "private_ip",
                f"Private/local IP addresses are not allowed: {hostname}",
                hostname=hostname,
            )

    if hostname.endswith(BLOCKED_HOSTNAME_SUFFIXES):
        raise UrlValidationError(
            "blocked_hostname",
            f"Blocked hostname: {hostname}. Private network hostnames are not allowed",
            hostname=hostname,
        )


def is_valid_url(url: str, *, max_length: int = MAX_URL_LENGTH) -> bool:
    try:
        validate_url(url, max_length=max_length)
    except UrlValidationError:
        return False
    return True


def is_tracking_param(name: str) -> bool:
    lowered = name.lower()
    return lowered in TRACKING_PARAMS or lowered.startswith(TRACKING_PREFIXES)


def _canonical_query(query: str) -> str:
    # Repeated names collapse to their first value.
    first: dict[str, str] = {}
    for name, value in parse_qsl(query, keep_blank_values=True):
        if is_tracking_param(name) or name in first:
            continue
        first[name] = value
    pairs: List[Tuple[str, str]] = sorted(first.items(), key=lambda item: item[0])
    return urlencode(pairs)


def normalize_url(url: str) -> str:
    """Return the canonical form of a URL used for cache keys.

    Lowercases the host, drops default ports, fragments and tracking
    parameters, sorts the remaining query parameters and strips trailing
    slashes from non-root paths. The root path keeps its slash unless a
    query string follows it. Applying it twice yields the same string.
    """
    parsed = _split(url)
    scheme = parsed.scheme.lower()
    host = (parsed.hostname or "").lower()
    if ":" in host:
        host = f"[{host}]"

    normalized = f"{scheme}://{host}"
    port = parsed.port
    if port is not None and port != DEFAULT_PORTS.get(scheme):
        normalized += f":{port}"

    path = parsed.path.rstrip("/") or "/"
    query = _canonical_query(parsed.query)

    if not (path == "/" and query):
        normalized += path
    if query:
        normalized += f"?{query}"
    return normalized


def hash_url(normalized_url: str) -> str:
    """SHA-256 hex digest of a normalized URL, used as the lookup key."""
    return hashlib.sha256(normalized_url.encode("utf-8")).hexdigest()


def canonical_key(url: str, *, max_length: int = MAX_URL_LENGTH) -> Tuple[str, str]:
    """Validate and normalize a URL, returning `(normalized_url, url_hash)`."""
    validate_url(url, max_length=max_length)
    normalized = normalize_url(url)
    return normalized, hash_url(normalized)
