"""
Response writers: the capability set handlers write through, the real
writer over an ASGI ``send`` callable, and the gzip-compressing decorator.
"""
import logging
from dataclasses import dataclass
from http import HTTPStatus
from typing import Protocol, runtime_checkable

from starlette.datastructures import MutableHeaders
from starlette.types import Message, Send

from .headers import (
    CONTENT_ENCODING,
    CONTENT_LENGTH,
    CONTENT_RANGE,
    CONTENT_TYPE,
    supported_content_type,
)
from .pool import CompressorPool, GzipStream
from .sniff import detect_content_type

logger = logging.getLogger(__name__)

COMPRESS_THRESHOLD = 1000

# Statuses that do not force a decision when committed.
BODYLESS_STATUSES = frozenset({
    HTTPStatus.NO_CONTENT,
    HTTPStatus.NOT_MODIFIED,
    HTTPStatus.PARTIAL_CONTENT,
})


@runtime_checkable
class ResponseWriter(Protocol):
    """What a handler needs to produce a response."""

    headers: MutableHeaders

    async def write_header(self, status_code: int) -> None: ...
    async def write(self, data: bytes) -> int: ...


@runtime_checkable
class Flusher(Protocol):
    async def flush(self) -> None: ...


@runtime_checkable
class Unwrapper(Protocol):
    def unwrap(self) -> ResponseWriter: ...


class ASGIResponseWriter:
    """
    The real writer: turns writer calls into ASGI ``http.response.*`` messages.

    The status line and headers go out on the first ``write_header`` (or the
    first ``write``). Body chunks are always sent with ``more_body`` set;
    ``end`` sends the closing empty chunk.
    """

    def __init__(self, send: Send) -> None:
        self._send = send
        self.headers = MutableHeaders()
        self.status_code: int | None = None
        self.ended = False

    async def write_header(self, status_code: int) -> None:
        if self.status_code is not None:
            logger.warning(
                "superfluous write_header(%d), status %d already sent",
                status_code, self.status_code,
            )
            return
        self.status_code = status_code
        await self._send({
            "type": "http.response.start",
            "status": int(status_code),
            "headers": self.headers.raw,
        })

    async def write(self, data: bytes) -> int:
        if self.status_code is None:
            await self.write_header(HTTPStatus.OK)
        if data:
            await self._send({"type": "http.response.body", "body": bytes(data), "more_body": True})
        return len(data)

    async def end(self) -> None:
        if self.ended:
            return
        if self.status_code is None:
            await self.write_header(HTTPStatus.OK)
        self.ended = True
        await self._send({"type": "http.response.body", "body": b"", "more_body": False})

    async def send(self, message: Message) -> None:
        """Forwards a message verbatim, e.g. ``http.response.pathsend``."""
        self.ended = True
        await self._send(message)


@dataclass(frozen=True)
class Undecided:
    pass


@dataclass(frozen=True)
class Skipping:
    reason: str


@dataclass(frozen=True)
class Compressing:
    stream: GzipStream


@dataclass(frozen=True)
class Closed:
    pass


Decision = Undecided | Skipping | Compressing | Closed


class GzipResponseWriter:
    """
    Wraps a :class:`ResponseWriter` and gzips what is written through it
    when the response qualifies.

    The decision is taken once, on the first ``write_header`` with a status
    other than 204, 304 or 206, or on the first ``write``. Before the first
    ``write`` without a committed status, an unset Content-Type is sniffed
    from the body so that the content-type rule sees it. A response is left
    uncompressed when it declares a Content-Range, a Content-Encoding, a
    Content-Length below ``minimum_size`` or a Content-Type that does not
    compress well.

    Use as an async context manager so the stream goes back to the pool.
    """

    def __init__(
        self,
        writer: ResponseWriter,
        pool: CompressorPool,
        minimum_size: int = COMPRESS_THRESHOLD,
    ) -> None:
        self._writer = writer
        self._pool = pool
        self.minimum_size = minimum_size
        self.decision: Decision = Undecided()
        self.wrote_header = False
        self._flusher = writer if isinstance(writer, Flusher) else None

    @property
    def headers(self) -> MutableHeaders:
        return self._writer.headers

    @property
    def compressing(self) -> bool:
        return isinstance(self.decision, Compressing)

    def unwrap(self) -> ResponseWriter:
        return self._writer

    def skip_reason(self) -> str | None:
        headers = self.headers
        if CONTENT_RANGE in headers:
            return "content range"
        if CONTENT_ENCODING in headers:
            return "already encoded"
        content_length = headers.get(CONTENT_LENGTH)
        if content_length is not None:
            # Only plain ASCII digits count as a length.
            if content_length.isascii() and content_length.isdigit():
                if int(content_length) < self.minimum_size:
                    return "below minimum size"
        content_type = headers.get(CONTENT_TYPE)
        if content_type and not supported_content_type(content_type):
            return "content type"
        return None

    def _decide(self) -> None:
        reason = self.skip_reason()
        if reason is not None:
            logger.debug("not compressing response: %s", reason)
            self.decision = Skipping(reason)
            return

        stream = self._pool.acquire()
        stream.reset(self._writer)
        self.headers[CONTENT_ENCODING] = "gzip"
        del self.headers[CONTENT_LENGTH]
        self.decision = Compressing(stream)
        logger.debug("compressing response with gzip level %d", stream.level)

    async def write_header(self, status_code: int) -> None:
        committed = self.wrote_header
        self.wrote_header = True
        if (
            not committed
            and isinstance(self.decision, Undecided)
            and status_code not in BODYLESS_STATUSES
        ):
            self._decide()
        await self._writer.write_header(status_code)

    async def write(self, data: bytes) -> int:
        if not self.wrote_header:
            if not self.headers.get(CONTENT_TYPE):
                self.headers[CONTENT_TYPE] = detect_content_type(data)
            await self.write_header(HTTPStatus.OK)
        if isinstance(self.decision, Compressing):
            return await self.decision.stream.write(data)
        if isinstance(self.decision, Closed):
            raise RuntimeError("write after the gzip stream was closed")
        return await self._writer.write(data)

    async def flush(self) -> None:
        if isinstance(self.decision, Compressing):
            await self.decision.stream.flush()
        if self._flusher is not None:
            await self._flusher.flush()

    async def close(self) -> None:
        if not isinstance(self.decision, Compressing):
            return
        stream = self.decision.stream
        self.decision = Closed()
        # A stream that failed to finish is dropped rather than reused.
        await stream.close()
        try:
            if self._flusher is not None:
                await self._flusher.flush()
        finally:
            self._pool.release(stream)

    async def __aenter__(self) -> "GzipResponseWriter":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()
