import logging
import re
import typing
from http import HTTPStatus

from starlette.datastructures import Headers, MutableHeaders
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from .headers import CONTENT_TYPE, accepts_gzip, add_vary_header, allows_gzip
from .pool import DEFAULT_LEVEL, CompressorPool, GzipStream, InvalidCompressionLevel
from .sniff import detect_content_type
from .writer import (
    COMPRESS_THRESHOLD,
    ASGIResponseWriter,
    Flusher,
    GzipResponseWriter,
    ResponseWriter,
    Unwrapper,
)

__all__ = [
    "COMPRESS_THRESHOLD",
    "DEFAULT_LEVEL",
    "WRITER_SCOPE_KEY",
    "ASGIResponseWriter",
    "CompressorPool",
    "Flusher",
    "GzipMiddleware",
    "GzipResponder",
    "GzipResponseWriter",
    "GzipStream",
    "InvalidCompressionLevel",
    "ResponseWriter",
    "Unwrapper",
    "accepts_gzip",
    "allows_gzip",
    "detect_content_type",
]

logger = logging.getLogger(__name__)

# Scope key under which handlers find the writer wrapping their responses.
WRITER_SCOPE_KEY = "gzip_asgi.writer"


class GzipMiddleware:
    """
    Compresses responses with gzip for clients that explicitly accept it.

    One :class:`CompressorPool` is built per middleware instance (or passed in
    through ``pool``), so an invalid ``level`` fails here rather than while
    serving a request.
    """

    def __init__(
        self,
        app: ASGIApp,
        level: int = DEFAULT_LEVEL,
        minimum_size: int = COMPRESS_THRESHOLD,
        excluded_handlers: list[str] | None = None,
        flush_content_types: typing.Iterable[str] = ("text/event-stream",),
        pool: CompressorPool | None = None,
    ) -> None:
        self.app = app
        self.pool = pool if pool is not None else CompressorPool(level)
        self.minimum_size = minimum_size
        self.flush_content_types = frozenset(t.lower() for t in flush_content_types)
        if excluded_handlers:
            self.excluded_handlers = [re.compile(path) for path in excluded_handlers]
        else:
            self.excluded_handlers = []

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        if self._is_handler_excluded(scope):
            logger.debug("gzip disabled for excluded handler %s", scope.get("path", ""))
            await self.app(scope, receive, send)
            return

        if not accepts_gzip(Headers(scope=scope)):
            await self.app(scope, receive, send)
            return

        responder = GzipResponder(
            self.app,
            self.pool,
            minimum_size=self.minimum_size,
            flush_content_types=self.flush_content_types,
        )
        await responder(scope, receive, send)

    def _is_handler_excluded(self, scope: Scope) -> bool:
        handler = scope.get("path", "")
        return any(pattern.search(handler) for pattern in self.excluded_handlers)


class GzipResponder:
    """
    Drives a :class:`GzipResponseWriter` from the messages an ASGI app sends.

    ``http.response.start`` is held back: its headers are copied into the
    real writer and its status is only committed once the first body chunk
    shows up. A 200 status is committed implicitly by the first write, so
    a missing Content-Type can be sniffed from that chunk.
    """

    def __init__(
        self,
        app: ASGIApp,
        pool: CompressorPool,
        minimum_size: int = COMPRESS_THRESHOLD,
        flush_content_types: typing.AbstractSet[str] = frozenset(),
    ) -> None:
        self.app = app
        self.pool = pool
        self.minimum_size = minimum_size
        self.flush_content_types = flush_content_types
        self.status_code: int = HTTPStatus.OK
        self.started = False
        self.flush_chunks = False

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        self.writer = ASGIResponseWriter(send)
        self.gzip_writer = GzipResponseWriter(self.writer, self.pool, self.minimum_size)
        scope[WRITER_SCOPE_KEY] = self.gzip_writer
        async with self.gzip_writer:
            await self.app(scope, receive, self.send_with_gzip)

    async def send_with_gzip(self, message: Message) -> None:
        message_type = message["type"]
        if message_type == "http.response.start":
            # Don't send the initial message until we've determined how to
            # modify the outgoing headers correctly.
            self.status_code = message["status"]
            self.writer.headers = MutableHeaders(raw=list(message.get("headers", [])))
            add_vary_header(self.writer.headers)
        elif message_type == "http.response.body":
            body = message.get("body", b"")
            more_body = message.get("more_body", False)

            if not self.started:
                self.started = True
                if self.status_code != HTTPStatus.OK:
                    await self.gzip_writer.write_header(self.status_code)
                await self.gzip_writer.write(body)
                self.flush_chunks = self._is_flushed_type()
            else:
                await self.gzip_writer.write(body)

            if more_body:
                if self.flush_chunks:
                    await self.gzip_writer.flush()
            else:
                await self.gzip_writer.close()
                await self.writer.end()
        else:
            # e.g. http.response.pathsend: send headers untouched and forward.
            if not self.started:
                self.started = True
                await self.writer.write_header(self.status_code)
            await self.writer.send(message)

    def _is_flushed_type(self) -> bool:
        content_type = self.writer.headers.get(CONTENT_TYPE, "")
        media_type = content_type.split(";", 1)[0].strip().lower()
        return media_type in self.flush_content_types
