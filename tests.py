"""Main tests for gzip middleware.

Some of these tests follow starlette.tests.middleware.test_gzip, others drive
the response writer directly through an in-memory recorder.
"""

import functools
import gzip
import io
import threading
import zlib
from concurrent.futures import ThreadPoolExecutor

import pytest

from starlette.applications import Starlette
from starlette.datastructures import Headers, MutableHeaders
from starlette.responses import (
    JSONResponse,
    PlainTextResponse,
    Response,
    StreamingResponse,
)
from starlette.routing import Route
from starlette.testclient import TestClient

from gzip_asgi import (
    COMPRESS_THRESHOLD,
    WRITER_SCOPE_KEY,
    ASGIResponseWriter,
    CompressorPool,
    Flusher,
    GzipMiddleware,
    GzipResponseWriter,
    GzipStream,
    InvalidCompressionLevel,
    ResponseWriter,
    Unwrapper,
    accepts_gzip,
    allows_gzip,
    detect_content_type,
)
from gzip_asgi.headers import add_vary_header, supported_content_type
from gzip_asgi.writer import Closed, Compressing, Skipping, Undecided

HELLO = "Hello, world!\n"
CONTENT = HELLO * (COMPRESS_THRESHOLD // len(HELLO) + 1)
SMALL_CONTENT = HELLO * (COMPRESS_THRESHOLD // len(HELLO) - 1)


@pytest.fixture
def test_client_factory(anyio_backend_name, anyio_backend_options):
    return functools.partial(
        TestClient,
        backend=anyio_backend_name,
        backend_options=anyio_backend_options,
    )


def raw_app(status=200, headers=None, chunks=(CONTENT,)):
    """An ASGI app sending ``chunks`` with exactly the given headers."""
    raw_headers = [
        (name.lower().encode("latin-1"), value.encode("latin-1"))
        for name, value in (headers or {}).items()
    ]

    async def app(scope, receive, send):
        await send({"type": "http.response.start", "status": status, "headers": raw_headers})
        for chunk in chunks:
            await send({"type": "http.response.body", "body": chunk.encode(), "more_body": True})
        await send({"type": "http.response.body", "body": b"", "more_body": False})

    return app


class ResponseRecorder:
    """Records what reaches the real writer."""

    def __init__(self):
        self.headers = MutableHeaders()
        self.status_code = None
        self.committed_headers = None
        self.body = bytearray()

    async def write_header(self, status_code):
        if self.status_code is None:
            self.status_code = status_code
            self.committed_headers = Headers(raw=list(self.headers.raw))

    async def write(self, data):
        if self.status_code is None:
            await self.write_header(200)
        self.body += data
        return len(data)


class FlushingRecorder(ResponseRecorder):
    def __init__(self):
        super().__init__()
        self.flushes = 0

    async def flush(self):
        self.flushes += 1


class FailingRecorder(ResponseRecorder):
    def __init__(self):
        super().__init__()
        self.fail = False

    async def write(self, data):
        if self.fail:
            raise ConnectionResetError("client went away")
        return await super().write(data)


# --- Negotiation ---


@pytest.mark.parametrize(
    "accept_encoding, expected",
    [
        # Examples from RFC 2616
        ("compress, gzip", True),
        ("", False),
        ("*", False),
        ("compress;q=0.5, gzip;q=1.0", True),
        ("gzip;q=1.0, identity; q=0.5, *;q=0", True),

        # More random stuff
        ("gzip;BAD, *q;q=0", False),
        ("gzip; q=X, *q;q=0", False),
        ("gzip;q=0.0, *;q=0", False),
        ("fgzip", False),
        ("AAA;q=1", False),
        ("BBB ; q = 2", False),
        ("GZIP", False),
        ("deflate, gzip ;q=0.5", True),
        ("gzip;q= 1", False),

        # The first gzip entry decides
        ("gzip;q=0, gzip", False),
        ("gzip, gzip;q=0", True),
    ],
)
def test_allows_gzip(accept_encoding, expected):
    assert allows_gzip(accept_encoding) is expected


def test_accepts_gzip_reads_request_headers():
    assert accepts_gzip(Headers({"accept-encoding": "br, gzip"}))
    assert not accepts_gzip(Headers({"accept-encoding": "br"}))
    assert not accepts_gzip(Headers({}))


@pytest.mark.parametrize(
    "content_type, expected",
    [
        ("text/plain", True),
        ("text/html; charset=utf-8", True),
        ("application/json", True),
        ("application/problem+json", True),
        ("application/javascript", True),
        ("application/xhtml+xml", True),
        ("image/svg+xml", True),
        ("font/woff2", True),
        ("Text/CSS", True),
        ("application/octet-stream", False),
        ("image/png", False),
        ("font/ttf", False),
        ("", False),
    ],
)
def test_supported_content_type(content_type, expected):
    assert supported_content_type(content_type) is expected


def test_add_vary_header_appends_once():
    headers = MutableHeaders()
    add_vary_header(headers)
    add_vary_header(headers)
    assert headers["vary"] == "Accept-Encoding"

    headers = MutableHeaders({"vary": "Cookie"})
    add_vary_header(headers)
    assert headers["vary"] == "Cookie, Accept-Encoding"


# --- Content sniffing ---


@pytest.mark.parametrize(
    "data, expected",
    [
        (b"", "text/plain; charset=utf-8"),
        (HELLO.encode(), "text/plain; charset=utf-8"),
        (b"<!DOCTYPE html><html><body>hi</body></html>", "text/html; charset=utf-8"),
        (b"\n  <html>", "text/html; charset=utf-8"),
        (b"<?xml version=\"1.0\"?><a/>", "text/xml; charset=utf-8"),
        (b"\xef\xbb\xbfhello", "text/plain; charset=utf-8"),
        (b"%PDF-1.7\n", "application/pdf"),
        (b"\x89PNG\r\n\x1a\n" + b"\x00" * 8, "image/png"),
        (b"GIF89a\x01\x00", "image/gif"),
        (b"\xff\xd8\xff\xe0", "image/jpeg"),
        (b"RIFF\x10\x00\x00\x00WEBPVP8 ", "image/webp"),
        (b"wOF2\x00\x01\x00\x00", "font/woff2"),
        (b"\x1f\x8b\x08\x00", "application/x-gzip"),
        (b"PK\x03\x04", "application/zip"),
        (b"\x00\x00\x00\x18ftypmp42\x00\x00\x00\x00mp42isom", "video/mp4"),
        (b"\x00\x01\x02binary", "application/octet-stream"),
    ],
)
def test_detect_content_type(data, expected):
    assert detect_content_type(data) == expected


def test_detect_content_type_looks_at_leading_bytes_only():
    assert detect_content_type(b"a" * 512 + b"\x00") == "text/plain; charset=utf-8"


# --- Compressor pool ---


@pytest.mark.parametrize("level", [-2, 10, 1.5, "6", True])
def test_pool_rejects_invalid_level(level):
    with pytest.raises(InvalidCompressionLevel):
        CompressorPool(level)


@pytest.mark.parametrize("level", [zlib.Z_DEFAULT_COMPRESSION, 0, 1, 9])
def test_pool_accepts_valid_level(level):
    assert CompressorPool(level).level == level


def test_pool_reuses_released_streams():
    pool = CompressorPool()
    stream = pool.acquire()
    assert len(pool) == 0
    pool.release(stream)
    assert len(pool) == 1
    assert pool.acquire() is stream
    assert pool.acquire() is not stream


def test_pool_drops_streams_beyond_max_idle():
    pool = CompressorPool(max_idle=1)
    first, second = pool.acquire(), pool.acquire()
    pool.release(first)
    pool.release(second)
    assert len(pool) == 1
    pool.clear()
    assert len(pool) == 0


def test_pool_rejects_stream_of_other_level():
    with pytest.raises(ValueError):
        CompressorPool(level=9).release(GzipStream(level=1))


def test_pool_is_thread_safe():
    workers = 8
    pool = CompressorPool()
    barrier = threading.Barrier(workers)

    def borrow(_):
        stream = pool.acquire()
        # Every worker holds a stream at the same time here.
        barrier.wait()
        pool.release(stream)
        return stream

    with ThreadPoolExecutor(max_workers=workers) as executor:
        streams = list(executor.map(borrow, range(workers)))

    assert len({id(stream) for stream in streams}) == workers
    assert len(pool) == workers


@pytest.mark.anyio
async def test_gzip_stream_is_reusable():
    stream = GzipStream()
    for payload in (b"first " * 300, b"second " * 300):
        sink = ResponseRecorder()
        stream.reset(sink)
        await stream.write(payload)
        await stream.close()
        assert not stream.attached
        assert gzip.decompress(bytes(sink.body)) == payload


@pytest.mark.anyio
async def test_gzip_stream_requires_a_sink():
    with pytest.raises(RuntimeError):
        await GzipStream().write(b"data")


# --- Compressing response writer ---


@pytest.mark.anyio
async def test_writer_explicit_status_code():
    recorder = ResponseRecorder()
    async with GzipResponseWriter(recorder, CompressorPool()) as writer:
        await writer.write_header(200)
        await writer.write(CONTENT.encode())

    assert recorder.status_code == 200
    assert recorder.committed_headers["content-encoding"] == "gzip"
    # No sniffing once the status is committed explicitly.
    assert "content-type" not in recorder.committed_headers
    assert gzip.decompress(bytes(recorder.body)) == CONTENT.encode()


@pytest.mark.anyio
async def test_writer_sniffs_content_type_before_deciding():
    recorder = ResponseRecorder()
    html = b"<!DOCTYPE html><html>" + CONTENT.encode()
    async with GzipResponseWriter(recorder, CompressorPool()) as writer:
        await writer.write(html)
        assert isinstance(writer.decision, Compressing)

    assert recorder.committed_headers["content-type"] == "text/html; charset=utf-8"
    assert gzip.decompress(bytes(recorder.body)) == html


@pytest.mark.anyio
async def test_writer_skips_sniffed_binary():
    recorder = ResponseRecorder()
    png = b"\x89PNG\r\n\x1a\n" + b"\x00" * 2000
    async with GzipResponseWriter(recorder, CompressorPool()) as writer:
        await writer.write(png)
        assert writer.decision == Skipping("content type")

    assert recorder.committed_headers["content-type"] == "image/png"
    assert "content-encoding" not in recorder.committed_headers
    assert bytes(recorder.body) == png


@pytest.mark.parametrize(
    "headers, reason",
    [
        ({"content-range": "bytes 0-99/4000", "content-encoding": "br"}, "content range"),
        ({"content-encoding": "br", "content-length": "10"}, "already encoded"),
        ({"content-length": str(len(SMALL_CONTENT)), "content-type": "image/png"},
         "below minimum size"),
        ({"content-length": "4000", "content-type": "application/octet-stream"}, "content type"),
    ],
)
@pytest.mark.anyio
async def test_writer_skip_rules_precedence(headers, reason):
    recorder = ResponseRecorder()
    recorder.headers.update(headers)
    writer = GzipResponseWriter(recorder, CompressorPool())
    await writer.write_header(200)
    assert writer.decision == Skipping(reason)


@pytest.mark.anyio
async def test_writer_ignores_unparsable_content_length():
    recorder = ResponseRecorder()
    recorder.headers["content-length"] = "many"
    recorder.headers["content-type"] = "text/plain"
    async with GzipResponseWriter(recorder, CompressorPool()) as writer:
        await writer.write_header(200)
        assert writer.compressing
    assert "content-length" not in recorder.committed_headers


@pytest.mark.anyio
async def test_writer_decides_only_once():
    recorder = ResponseRecorder()
    recorder.headers["content-type"] = "text/plain"
    async with GzipResponseWriter(recorder, CompressorPool()) as writer:
        await writer.write_header(200)
        decision = writer.decision
        recorder.headers["content-range"] = "bytes 0-9/10"
        await writer.write_header(200)
        await writer.write(CONTENT.encode())
        assert writer.decision is decision


@pytest.mark.parametrize("status_code", [204, 206, 304])
@pytest.mark.anyio
async def test_writer_does_not_decide_on_bodyless_status(status_code):
    recorder = ResponseRecorder()
    recorder.headers["content-type"] = "text/plain"
    pool = CompressorPool()
    async with GzipResponseWriter(recorder, pool) as writer:
        await writer.write_header(status_code)
        await writer.write(CONTENT.encode())
        assert writer.decision == Undecided()

    assert recorder.status_code == status_code
    assert "content-encoding" not in recorder.committed_headers
    assert bytes(recorder.body) == CONTENT.encode()
    assert len(pool) == 0


@pytest.mark.anyio
async def test_writer_flush_passes_through():
    recorder = FlushingRecorder()
    recorder.headers["content-type"] = "text/event-stream"
    writer = GzipResponseWriter(recorder, CompressorPool())
    await writer.write(b"data: hello\n\n")
    await writer.flush()

    assert recorder.flushes == 1
    decompressor = zlib.decompressobj(16 + zlib.MAX_WBITS)
    assert decompressor.decompress(bytes(recorder.body)) == b"data: hello\n\n"

    await writer.close()
    assert recorder.flushes == 2


@pytest.mark.anyio
async def test_writer_flush_without_flusher():
    recorder = ResponseRecorder()
    writer = GzipResponseWriter(recorder, CompressorPool())
    assert not isinstance(recorder, Flusher)
    await writer.write(CONTENT.encode())
    await writer.flush()
    await writer.close()
    assert gzip.decompress(bytes(recorder.body)) == CONTENT.encode()


@pytest.mark.anyio
async def test_writer_close_releases_stream_once():
    pool = CompressorPool()
    writer = GzipResponseWriter(ResponseRecorder(), pool)
    await writer.write(CONTENT.encode())
    await writer.close()
    await writer.close()

    assert writer.decision == Closed()
    assert len(pool) == 1


@pytest.mark.parametrize("status_code", [204, 206, 304])
@pytest.mark.anyio
async def test_writer_does_not_decide_after_bodyless_status_is_sent(status_code):
    recorder = ResponseRecorder()
    recorder.headers["content-type"] = "text/plain"
    pool = CompressorPool()
    async with GzipResponseWriter(recorder, pool) as writer:
        await writer.write_header(status_code)
        await writer.write_header(200)
        await writer.write(CONTENT.encode())
        assert writer.decision == Undecided()

    assert recorder.status_code == status_code
    assert "content-encoding" not in recorder.headers
    assert bytes(recorder.body) == CONTENT.encode()
    assert len(pool) == 0


@pytest.mark.anyio
async def test_writer_sniffs_empty_content_type():
    recorder = ResponseRecorder()
    recorder.headers["content-type"] = ""
    async with GzipResponseWriter(recorder, CompressorPool()) as writer:
        await writer.write(CONTENT.encode())
        assert writer.compressing

    assert recorder.committed_headers["content-type"] == "text/plain; charset=utf-8"
    assert gzip.decompress(bytes(recorder.body)) == CONTENT.encode()


@pytest.mark.parametrize("content_length", ["1_0", " +5 ", "٣"])
@pytest.mark.anyio
async def test_writer_ignores_non_digit_content_length(content_length):
    recorder = ResponseRecorder()
    recorder.headers["content-length"] = content_length
    recorder.headers["content-type"] = "text/plain"
    async with GzipResponseWriter(recorder, CompressorPool()) as writer:
        await writer.write_header(200)
        assert writer.compressing


@pytest.mark.anyio
async def test_writer_rejects_write_after_close():
    recorder = ResponseRecorder()
    writer = GzipResponseWriter(recorder, CompressorPool())
    await writer.write(CONTENT.encode())
    await writer.close()
    body = bytes(recorder.body)

    with pytest.raises(RuntimeError):
        await writer.write(b"trailing")
    assert bytes(recorder.body) == body
    assert gzip.decompress(body) == CONTENT.encode()


def test_gzip_stream_starts_detached():
    stream = GzipStream()
    assert stream._compressor is None
    assert not stream.attached


@pytest.mark.anyio
async def test_writer_close_without_stream_is_noop():
    pool = CompressorPool()
    writer = GzipResponseWriter(ResponseRecorder(), pool)
    await writer.close()
    assert writer.decision == Undecided()
    assert len(pool) == 0


@pytest.mark.anyio
async def test_writer_closes_on_error():
    recorder = ResponseRecorder()
    pool = CompressorPool()
    with pytest.raises(KeyError):
        async with GzipResponseWriter(recorder, pool) as writer:
            await writer.write(CONTENT.encode())
            raise KeyError("handler failed")

    assert len(pool) == 1
    assert gzip.decompress(bytes(recorder.body)) == CONTENT.encode()


@pytest.mark.anyio
async def test_writer_does_not_pool_stream_that_failed_to_finish():
    recorder = FailingRecorder()
    pool = CompressorPool()
    writer = GzipResponseWriter(recorder, pool)
    await writer.write(CONTENT.encode())
    recorder.fail = True

    with pytest.raises(ConnectionResetError):
        await writer.close()
    assert len(pool) == 0


@pytest.mark.anyio
async def test_writer_propagates_write_errors():
    recorder = FailingRecorder()
    recorder.headers["content-type"] = "image/png"
    writer = GzipResponseWriter(recorder, CompressorPool())
    await writer.write_header(200)
    recorder.fail = True
    with pytest.raises(ConnectionResetError):
        await writer.write(b"\x89PNG")


def test_writer_capabilities_and_unwrap():
    recorder = ResponseRecorder()
    writer = GzipResponseWriter(recorder, CompressorPool())
    assert isinstance(writer, ResponseWriter)
    assert isinstance(writer, Flusher)
    assert isinstance(writer, Unwrapper)
    assert writer.unwrap() is recorder


@pytest.mark.anyio
async def test_asgi_writer_sends_start_once():
    messages = []

    async def send(message):
        messages.append(message)

    writer = ASGIResponseWriter(send)
    writer.headers["content-type"] = "text/plain"
    await writer.write(b"abc")
    await writer.write_header(404)
    await writer.end()
    await writer.end()

    assert [m["type"] for m in messages] == [
        "http.response.start",
        "http.response.body",
        "http.response.body",
    ]
    assert messages[0]["status"] == 200
    assert messages[1] == {"type": "http.response.body", "body": b"abc", "more_body": True}
    assert messages[2]["more_body"] is False


# --- Middleware ---


def test_gzip_responses(test_client_factory):
    def homepage(request):
        return PlainTextResponse("x" * 4000, status_code=200)

    app = Starlette(routes=[Route("/", homepage)])
    app.add_middleware(GzipMiddleware)

    client = test_client_factory(app)
    response = client.get("/", headers={"accept-encoding": "gzip"})
    assert response.status_code == 200
    assert response.headers["Content-Encoding"] == "gzip"
    assert response.headers["Vary"] == "Accept-Encoding"
    assert response.text == "x" * 4000
    assert "Content-Length" not in response.headers


def test_gzip_raw_body_is_a_gzip_stream(test_client_factory):
    client = test_client_factory(GzipMiddleware(raw_app(headers={"content-type": "text/plain"})))
    with client.stream("GET", "/", headers={"accept-encoding": "gzip"}) as response:
        raw = b"".join(response.iter_raw())
    assert gzip.GzipFile(fileobj=io.BytesIO(raw)).read() == CONTENT.encode()


def test_gzip_not_in_accept_encoding(test_client_factory):
    def homepage(request):
        return PlainTextResponse("x" * 4000, status_code=200)

    app = Starlette(routes=[Route("/", homepage)])
    app.add_middleware(GzipMiddleware)

    client = test_client_factory(app)
    response = client.get("/", headers={"accept-encoding": "identity"})
    assert response.status_code == 200
    assert response.text == "x" * 4000
    assert "Content-Encoding" not in response.headers
    assert "Vary" not in response.headers
    assert int(response.headers["Content-Length"]) == 4000


@pytest.mark.parametrize("accept_encoding", ["*", "gzip;q=0", "gzip;q=X, *;q=1", "deflate, br"])
def test_gzip_not_negotiated(test_client_factory, accept_encoding):
    client = test_client_factory(GzipMiddleware(raw_app(headers={"content-type": "text/plain"})))
    response = client.get("/", headers={"accept-encoding": accept_encoding})
    assert "Content-Encoding" not in response.headers
    assert "Vary" not in response.headers
    assert response.text == CONTENT


def test_gzip_ignored_for_small_responses(test_client_factory):
    def homepage(request):
        return PlainTextResponse("OK", status_code=200)

    app = Starlette(routes=[Route("/", homepage)])
    app.add_middleware(GzipMiddleware)

    client = test_client_factory(app)
    response = client.get("/", headers={"accept-encoding": "gzip"})
    assert response.status_code == 200
    assert response.text == "OK"
    assert "Content-Encoding" not in response.headers
    assert response.headers["Vary"] == "Accept-Encoding"
    assert int(response.headers["Content-Length"]) == 2


def test_gzip_skip_on_size_threshold(test_client_factory):
    app = raw_app(
        headers={"content-length": str(len(SMALL_CONTENT))},
        chunks=(SMALL_CONTENT,),
    )
    client = test_client_factory(GzipMiddleware(app))
    response = client.get("/", headers={"accept-encoding": "gzip"})
    assert "Content-Encoding" not in response.headers
    assert response.text == SMALL_CONTENT


def test_gzip_implicit_content_type(test_client_factory):
    def homepage(request):
        return Response(CONTENT)

    app = Starlette(routes=[Route("/", homepage)])
    app.add_middleware(GzipMiddleware)

    client = test_client_factory(app)
    response = client.get("/", headers={"accept-encoding": "gzip"})
    assert response.headers["Content-Encoding"] == "gzip"
    assert response.headers["Content-Type"] == "text/plain; charset=utf-8"
    assert response.text == CONTENT


def test_gzip_explicit_status_code(test_client_factory):
    def homepage(request):
        return Response(CONTENT, status_code=404)

    app = Starlette(routes=[Route("/", homepage)])
    app.add_middleware(GzipMiddleware)

    client = test_client_factory(app)
    response = client.get("/", headers={"accept-encoding": "gzip"})
    assert response.status_code == 404
    assert response.headers["Content-Encoding"] == "gzip"
    assert "Content-Type" not in response.headers
    assert response.text == CONTENT


def test_gzip_skip_on_status_code(test_client_factory):
    app = raw_app(status=206, headers={"content-type": "text/plain"})
    client = test_client_factory(GzipMiddleware(app))
    response = client.get("/", headers={"accept-encoding": "gzip"})
    assert response.status_code == 206
    assert "Content-Encoding" not in response.headers
    assert response.text == CONTENT


def test_gzip_skip_on_content_type(test_client_factory):
    def homepage(request):
        return Response(CONTENT * 10, media_type="application/octet-stream")

    app = Starlette(routes=[Route("/", homepage)])
    app.add_middleware(GzipMiddleware)

    client = test_client_factory(app)
    response = client.get("/", headers={"accept-encoding": "gzip"})
    assert "Content-Encoding" not in response.headers
    assert response.text == CONTENT * 10


def test_gzip_skip_on_content_range(test_client_factory):
    app = raw_app(headers={"content-range": "bytes 21010-47021/47022"})
    client = test_client_factory(GzipMiddleware(app))
    response = client.get("/", headers={"accept-encoding": "gzip"})
    assert "Content-Encoding" not in response.headers
    assert response.text == CONTENT


def test_gzip_json_response(test_client_factory):
    def homepage(request):
        return JSONResponse({"data": "a" * 4000}, status_code=200)

    app = Starlette(routes=[Route("/", homepage)])
    app.add_middleware(GzipMiddleware, level=9)

    client = test_client_factory(app)
    response = client.get("/", headers={"accept-encoding": "gzip"})
    assert response.status_code == 200
    assert response.headers["Content-Encoding"] == "gzip"
    assert response.json() == {"data": "a" * 4000}


def test_gzip_streaming_response(test_client_factory):
    def homepage(request):
        async def generator(bytes, count):
            for index in range(count):
                yield bytes

        streaming = generator(bytes=b"x" * 400, count=10)
        return StreamingResponse(streaming, status_code=200)

    app = Starlette(routes=[Route("/", homepage)])
    app.add_middleware(GzipMiddleware)

    client = test_client_factory(app)
    response = client.get("/", headers={"accept-encoding": "gzip"})
    assert response.status_code == 200
    assert response.headers["Content-Encoding"] == "gzip"
    assert response.text == "x" * 4000
    assert "Content-Length" not in response.headers


def test_gzip_avoids_double_encoding(test_client_factory):
    # See https://github.com/encode/starlette/pull/1901
    def homepage(request):
        gzip_buffer = io.BytesIO()
        gzip_file = gzip.GzipFile(mode="wb", fileobj=gzip_buffer)
        gzip_file.write(b"hello world" * 200)
        gzip_file.close()
        body = gzip_buffer.getvalue()
        return Response(
            body,
            headers={
                "content-encoding": "gzip",
                "x-gzipped-content-length": str(len(body)),
            },
        )

    app = Starlette(routes=[Route("/", homepage)])
    app.add_middleware(GzipMiddleware, minimum_size=1)

    client = test_client_factory(app)
    response = client.get("/", headers={"accept-encoding": "gzip"})
    assert response.status_code == 200
    assert response.text == "hello world" * 200
    assert response.headers["Content-Encoding"] == "gzip"
    assert (
        response.headers["Content-Length"]
        == response.headers["x-gzipped-content-length"]
    )


def test_excluded_handlers(test_client_factory):
    def homepage(request):
        return PlainTextResponse("x" * 4000, status_code=200)

    app = Starlette(routes=[Route("/excluded", homepage)])
    app.add_middleware(
        GzipMiddleware,
        excluded_handlers=["/excluded"],
    )

    client = test_client_factory(app)
    response = client.get("/excluded", headers={"accept-encoding": "gzip"})

    assert response.status_code == 200
    assert response.text == "x" * 4000
    assert "Content-Encoding" not in response.headers
    assert int(response.headers["Content-Length"]) == 4000


def test_vary_header_is_appended(test_client_factory):
    def homepage(request):
        return PlainTextResponse("x" * 4000, headers={"vary": "Cookie"})

    app = Starlette(routes=[Route("/", homepage)])
    app.add_middleware(GzipMiddleware)

    client = test_client_factory(app)
    response = client.get("/", headers={"accept-encoding": "gzip"})
    assert response.headers["Vary"] == "Cookie, Accept-Encoding"


def test_real_writer_is_recoverable(test_client_factory):
    unwrapped = []

    def homepage(request):
        writer = request.scope[WRITER_SCOPE_KEY]
        assert isinstance(writer, Unwrapper)
        unwrapped.append(writer.unwrap())
        return PlainTextResponse("x" * 4000)

    app = Starlette(routes=[Route("/", homepage)])
    app.add_middleware(GzipMiddleware)

    client = test_client_factory(app)
    client.get("/", headers={"accept-encoding": "gzip"})
    assert len(unwrapped) == 1
    assert isinstance(unwrapped[0], ASGIResponseWriter)


def test_pool_is_reused_across_requests(test_client_factory):
    pool = CompressorPool(level=6)
    middleware = GzipMiddleware(raw_app(headers={"content-type": "text/plain"}), pool=pool)

    client = test_client_factory(middleware)
    for _ in range(3):
        response = client.get("/", headers={"accept-encoding": "gzip"})
        assert response.headers["Content-Encoding"] == "gzip"
        assert response.text == CONTENT

    assert middleware.pool is pool
    assert len(pool) == 1


@pytest.mark.parametrize("level", [-2, 10])
def test_invalid_level_fails_at_setup(level):
    with pytest.raises(InvalidCompressionLevel):
        GzipMiddleware(raw_app(), level=level)


@pytest.mark.anyio
async def test_event_stream_chunks_are_flushed():
    events = [f"data: {index}\n\n".encode() for index in range(3)]
    decompressor = zlib.decompressobj(16 + zlib.MAX_WBITS)
    received = []
    messages = []

    async def app(scope, receive, send):
        await send({
            "type": "http.response.start",
            "status": 200,
            "headers": [(b"content-type", b"text/event-stream")],
        })
        for index, event in enumerate(events):
            await send({"type": "http.response.body", "body": event, "more_body": True})
            # Each event has reached the client before the next one is produced.
            assert b"".join(received) == b"".join(events[:index + 1])
        await send({"type": "http.response.body", "body": b"", "more_body": False})

    async def receive():
        return {"type": "http.request", "body": b"", "more_body": False}

    async def send(message):
        messages.append(message)
        if message["type"] == "http.response.body":
            received.append(decompressor.decompress(message["body"]))

    scope = {
        "type": "http",
        "method": "GET",
        "path": "/events",
        "headers": [(b"accept-encoding", b"gzip")],
    }
    await GzipMiddleware(app)(scope, receive, send)

    assert (b"content-encoding", b"gzip") in messages[0]["headers"]
    assert messages[-1] == {"type": "http.response.body", "body": b"", "more_body": False}
    assert decompressor.eof
    assert b"".join(received) == b"".join(events)


@pytest.mark.anyio
async def test_non_http_scopes_pass_through():
    called = []

    async def app(scope, receive, send):
        called.append(scope["type"])

    await GzipMiddleware(app)({"type": "lifespan"}, None, None)
    assert called == ["lifespan"]
