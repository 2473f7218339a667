import hashlib
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

TRACKING_KEYS = {"ref", "fbclid", "gclid", "mc_cid", "mc_eid"}


def _is_tracking_param(key: str) -> bool:
    return key.startswith("utm_") or key in TRACKING_KEYS


def normalize_url(raw_url: str) -> str:
    """Normalization used to merge the same article returned by several providers."""
    parsed = urlparse(raw_url.strip())
    if not parsed.scheme or not parsed.netloc:
        raise ValueError(f"not an absolute url: {raw_url!r}")

    scheme = parsed.scheme.lower()
    netloc = parsed.netloc.lower()
    if ":" in netloc:
        host, port = netloc.rsplit(":", maxsplit=1)
        if (scheme == "http" and port == "80") or (scheme == "https" and port == "443"):
            netloc = host
    if netloc.startswith("www."):
        netloc = netloc[4:]

    path = parsed.path or "/"
    if path != "/" and path.endswith("/"):
        path = path[:-1]

    query_pairs = sorted(
        (key, value)
        for key, value in parse_qsl(parsed.query, keep_blank_values=True)
        if not _is_tracking_param(key.lower())
    )
    return urlunparse((scheme, netloc, path, "", urlencode(query_pairs, doseq=True), ""))


def result_key(raw_url: str) -> str:
    try:
        normalized = normalize_url(raw_url)
    except ValueError:
        normalized = raw_url.strip()
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def domain_of(raw_url: str) -> str:
    host = (urlparse(raw_url.strip()).hostname or "").lower()
    return host[4:] if host.startswith("www.") else host


def domain_matches(domain: str, allowed: list[str]) -> bool:
    lowered = domain.lower()
    return any(lowered == entry or lowered.endswith(f".{entry}") for entry in allowed)
