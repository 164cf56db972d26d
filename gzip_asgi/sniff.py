"""
Content-Type detection from the leading bytes of a response body,
following the WHATWG MIME sniffing rules browsers and servers use.
"""

SNIFF_LEN = 512

TEXT_PLAIN = "text/plain; charset=utf-8"
OCTET_STREAM = "application/octet-stream"

# Whitespace bytes as defined by the MIME Sniffing standard.
_WHITESPACE = b"\t\n\x0c\r "

# Control bytes that mark data as binary.
_BINARY_BYTES = frozenset(
    list(range(0x00, 0x09)) + [0x0B] + list(range(0x0E, 0x1B)) + list(range(0x1C, 0x20))
)

_HTML_TAGS = (
    b"<!DOCTYPE HTML", b"<HTML", b"<HEAD", b"<SCRIPT", b"<IFRAME", b"<H1",
    b"<DIV", b"<FONT", b"<TABLE", b"<A", b"<STYLE", b"<TITLE", b"<B",
    b"<BODY", b"<BR", b"<P", b"<!--",
)

# (mask, pattern, content type); a pattern matches when
# data[i] & mask[i] == pattern[i] for every byte.
_MASKED = (
    (b"\xff\xff\xff\xff\xff", b"%PDF-", "application/pdf"),
    (b"\xff" * 11, b"%!PS-Adobe-", "application/postscript"),
    (b"\xff\xff\x00\x00", b"\xfe\xff\x00\x00", "text/plain; charset=utf-16be"),
    (b"\xff\xff\x00\x00", b"\xff\xfe\x00\x00", "text/plain; charset=utf-16le"),
    (b"\xff\xff\xff\x00", b"\xef\xbb\xbf\x00", TEXT_PLAIN),
    (b"\xff" * 4 + b"\x00" * 4 + b"\xff" * 4, b"RIFF\x00\x00\x00\x00WEBP", "image/webp"),
    (b"\xff" * 4 + b"\x00" * 4 + b"\xff" * 4, b"RIFF\x00\x00\x00\x00WAVE", "audio/wave"),
    (b"\xff" * 4 + b"\x00" * 4 + b"\xff" * 4, b"RIFF\x00\x00\x00\x00AVI ", "video/avi"),
    (b"\xff" * 4 + b"\x00" * 4 + b"\xff" * 4, b"FORM\x00\x00\x00\x00AIFF", "audio/aiff"),
    (b"\xff" * 14 + b"\x00" * 20 + b"\xff\xff",
     b"\x00" * 34 + b"LP", "application/vnd.ms-fontobject"),
)

_EXACT = (
    (b"GIF87a", "image/gif"),
    (b"GIF89a", "image/gif"),
    (b"\x89PNG\x0d\x0a\x1a\x0a", "image/png"),
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"BM", "image/bmp"),
    (b"\x00\x00\x01\x00", "image/x-icon"),
    (b"\x00\x00\x02\x00", "image/x-icon"),
    (b"ID3", "audio/mpeg"),
    (b"OggS\x00", "application/ogg"),
    (b"MThd\x00\x00\x00\x06", "audio/midi"),
    (b"\x1a\x45\xdf\xa3", "video/webm"),
    (b"\x00\x01\x00\x00", "font/ttf"),
    (b"OTTO", "font/otf"),
    (b"ttcf", "font/collection"),
    (b"wOFF", "font/woff"),
    (b"wOF2", "font/woff2"),
    (b"\x1f\x8b\x08", "application/x-gzip"),
    (b"PK\x03\x04", "application/zip"),
    (b"Rar!\x1a\x07\x00", "application/x-rar-compressed"),
    (b"Rar!\x1a\x07\x01\x00", "application/x-rar-compressed"),
    (b"\x00\x61\x73\x6d", "application/wasm"),
)


def _lstrip_ws(data: bytes) -> bytes:
    return data.lstrip(_WHITESPACE)


def _match_html(data: bytes) -> bool:
    data = _lstrip_ws(data)
    for tag in _HTML_TAGS:
        if len(data) < len(tag) + 1:
            continue
        if data[:len(tag)].upper() != tag:
            continue
        # The tag must be followed by a tag-terminating byte.
        if data[len(tag)] in b" >":
            return True
    return False


def _match_masked(data: bytes, mask: bytes, pattern: bytes) -> bool:
    if len(data) < len(pattern):
        return False
    return all(d & m == p for d, m, p in zip(data, mask, pattern))


def _match_mp4(data: bytes) -> bool:
    if len(data) < 12:
        return False
    box_size = int.from_bytes(data[:4], "big")
    if len(data) < box_size or box_size % 4 != 0 or box_size < 12:
        return False
    if data[4:8] != b"ftyp":
        return False
    for start in range(8, box_size, 4):
        if start == 12:
            # Skip the minor version number.
            continue
        if data[start:start + 3] == b"mp4":
            return True
    return False


def _is_binary(data: bytes) -> bool:
    return any(byte in _BINARY_BYTES for byte in data)


def detect_content_type(data: bytes) -> str:
    """
    Returns a Content-Type for ``data`` by looking at no more than its first
    512 bytes. Falls back to ``application/octet-stream`` for unrecognized
    binary data and to ``text/plain; charset=utf-8`` otherwise.
    """
    data = bytes(data[:SNIFF_LEN])

    if _match_html(data):
        return "text/html; charset=utf-8"
    if _lstrip_ws(data).startswith(b"<?xml"):
        return "text/xml; charset=utf-8"

    for mask, pattern, content_type in _MASKED:
        if _match_masked(data, mask, pattern):
            return content_type
    for signature, content_type in _EXACT:
        if data.startswith(signature):
            return content_type
    if _match_mp4(data):
        return "video/mp4"

    if _is_binary(data):
        return OCTET_STREAM
    return TEXT_PLAIN
