"""
HTTP Accept-Encoding negotiation and compressibility rules for gzip.
"""
from functools import lru_cache

from starlette.datastructures import Headers, MutableHeaders

ACCEPT_ENCODING = "Accept-Encoding"
CONTENT_ENCODING = "Content-Encoding"
CONTENT_LENGTH = "Content-Length"
CONTENT_RANGE = "Content-Range"
CONTENT_TYPE = "Content-Type"

# Binary formats that still compress well.
COMPRESSIBLE_TYPES: frozenset[str] = frozenset({
    "image/svg+xml",
    "font/woff",
    "font/woff2",
})


def parse_part(part: str) -> tuple[str, str | None]:
    """
    Splits a single part of the 'Accept-Encoding' header (e.g., "gzip;q=0.8")
    into its coding name and the raw parameter string, if any.
    """
    coding_name, sep, param = part.partition(";")
    return coding_name.strip(), (param.strip() if sep else None)


def parse_qvalue(param: str) -> float | None:
    """
    Returns the q-factor carried by a "q=<number>" parameter,
    or None when the parameter is anything else or the number is malformed.
    """
    if not param.startswith("q="):
        return None
    value = param[2:]
    if value != value.strip():
        return None
    try:
        return float(value)
    except ValueError:
        return None


@lru_cache(maxsize=128)
def allows_gzip(accept_encoding: str) -> bool:
    """
    Reports whether an 'Accept-Encoding' header value lets us answer with gzip.

    Only an explicit "gzip" entry counts; the "*" wildcard is not honored.
    The first "gzip" entry decides: a bare "gzip" or "gzip;q=<n>" with n > 0
    accepts, anything else (q=0, malformed or unknown parameter) rejects.

    Results are LRU-cached for performance.
    """
    if "gzip" not in accept_encoding:
        return False

    for part in accept_encoding.split(","):
        coding_name, param = parse_part(part)
        if coding_name != "gzip":
            continue
        if param is None:
            return True
        q_val = parse_qvalue(param)
        return q_val is not None and q_val > 0

    return False


def accepts_gzip(headers: Headers) -> bool:
    """Negotiates gzip for a request given its headers."""
    return allows_gzip(headers.get(ACCEPT_ENCODING, ""))


def add_vary_header(headers: MutableHeaders, field: str = ACCEPT_ENCODING) -> None:
    """Appends ``field`` to the Vary header unless it is already listed."""
    existing = headers.get("Vary")
    if existing is None:
        headers["Vary"] = field
        return
    listed = {token.strip().lower() for token in existing.split(",")}
    if field.lower() not in listed and "*" not in listed:
        headers["Vary"] = f"{existing}, {field}"


def supported_content_type(content_type: str) -> bool:
    """
    Tells whether responses of the given Content-Type are worth compressing.
    Parameters such as charset are ignored.
    """
    media_type = content_type.split(";", 1)[0].strip().lower()
    if not media_type:
        return False
    if media_type in COMPRESSIBLE_TYPES:
        return True
    if media_type.startswith("text/"):
        return True
    if media_type.startswith("application/"):
        return any(token in media_type for token in ("json", "javascript", "xml"))
    return False
