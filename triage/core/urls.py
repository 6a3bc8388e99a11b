from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

TRACKING_KEYS = {"ref", "fbclid", "gclid", "mc_cid", "mc_eid"}


def _is_tracking_param(key: str) -> bool:
    return key.startswith("utm_") or key in TRACKING_KEYS


def normalize_url(raw_url: str) -> str:
    """Conservative URL normalization applied to source URLs before persistence."""
    parsed = urlparse(raw_url.strip())

    scheme = parsed.scheme.lower()
    netloc = parsed.netloc.lower()

    if ":" in netloc:
        host, port = netloc.rsplit(":", maxsplit=1)
        if (scheme == "http" and port == "80") or (scheme == "https" and port == "443"):
            netloc = host

    path = parsed.path or "/"
    if path != "/" and path.endswith("/"):
        path = path[:-1]

    filtered_query_pairs = [
        (key, value)
        for key, value in parse_qsl(parsed.query, keep_blank_values=True)
        if not _is_tracking_param(key)
    ]
    filtered_query_pairs.sort(key=lambda pair: pair[0])
    query = urlencode(filtered_query_pairs, doseq=True)

    return urlunparse((scheme, netloc, path, "", query, ""))


def source_host(raw_url: str | None) -> str | None:
    if not raw_url:
        return None
    parsed = urlparse(raw_url.strip())
    if parsed.scheme.lower() not in {"http", "https"}:
        return None
    host = parsed.hostname
    if not host:
        return None
    normalized = host.strip().lower()
    if normalized.startswith("www."):
        normalized = normalized[4:]
    return normalized or None
