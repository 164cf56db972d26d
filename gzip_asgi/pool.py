"""
Reusable gzip streams and the pool that hands them out to requests.
"""
import logging
import threading
import zlib
from collections import deque
from typing import Protocol

logger = logging.getLogger(__name__)

DEFAULT_LEVEL = zlib.Z_BEST_SPEED
DEFAULT_MAX_IDLE = 64

# 16 + MAX_WBITS: zlib writes the gzip header and trailer
GZIP_WBITS = 16 + zlib.MAX_WBITS


class InvalidCompressionLevel(ValueError):
    """Raised at setup time for a level zlib does not accept."""


class Sink(Protocol):
    async def write(self, data: bytes) -> int: ...


def validate_level(level: int) -> int:
    if isinstance(level, bool) or not isinstance(level, int):
        raise InvalidCompressionLevel(f"compression level must be an integer, got {level!r}")
    if not zlib.Z_DEFAULT_COMPRESSION <= level <= zlib.Z_BEST_COMPRESSION:
        raise InvalidCompressionLevel(
            f"invalid compression level {level}: expected "
            f"{zlib.Z_DEFAULT_COMPRESSION}..{zlib.Z_BEST_COMPRESSION}"
        )
    return level


class GzipStream:
    """
    A gzip encoder that can be pointed at a new sink for every response.

    zlib compress objects are single-use, so each reset copies a pristine
    object built once for this stream instead of re-initializing one.
    """

    def __init__(self, level: int = DEFAULT_LEVEL) -> None:
        self.level = validate_level(level)
        self._pristine = zlib.compressobj(level, zlib.DEFLATED, GZIP_WBITS)
        self._compressor: "zlib._Compress | None" = None
        self._sink: Sink | None = None

    @property
    def attached(self) -> bool:
        return self._sink is not None

    def reset(self, sink: Sink) -> None:
        self._compressor = self._pristine.copy()
        self._sink = sink

    def detach(self) -> None:
        self._compressor = None
        self._sink = None

    def _require_sink(self) -> Sink:
        if self._sink is None:
            raise RuntimeError("gzip stream is not attached to a sink")
        return self._sink

    async def write(self, data: bytes) -> int:
        sink = self._require_sink()
        out = self._compressor.compress(data)
        if out:
            await sink.write(out)
        return len(data)

    async def flush(self) -> None:
        """Pushes everything compressed so far to the sink without ending the stream."""
        sink = self._require_sink()
        out = self._compressor.flush(zlib.Z_SYNC_FLUSH)
        if out:
            await sink.write(out)

    async def close(self) -> None:
        """Writes the remaining data and the gzip trailer, then detaches."""
        sink = self._require_sink()
        out = self._compressor.flush(zlib.Z_FINISH)
        self.detach()
        if out:
            await sink.write(out)


class CompressorPool:
    """
    A cache of :class:`GzipStream` instances sharing one compression level.

    ``acquire`` and ``release`` may be called concurrently from any thread.
    Idle instances beyond ``max_idle`` are simply dropped.
    """

    def __init__(self, level: int = DEFAULT_LEVEL, max_idle: int | None = DEFAULT_MAX_IDLE) -> None:
        self.level = validate_level(level)
        self.max_idle = max_idle
        self._idle: deque[GzipStream] = deque()
        self._lock = threading.Lock()
        logger.debug("gzip compressor pool created (level=%d, max_idle=%s)", level, max_idle)

    def __len__(self) -> int:
        return len(self._idle)

    def acquire(self) -> GzipStream:
        with self._lock:
            if self._idle:
                return self._idle.pop()
        return GzipStream(self.level)

    def release(self, stream: GzipStream) -> None:
        if stream.level != self.level:
            raise ValueError(
                f"stream with level {stream.level} released to a level {self.level} pool"
            )
        stream.detach()
        with self._lock:
            if self.max_idle is None or len(self._idle) < self.max_idle:
                self._idle.append(stream)

    def clear(self) -> None:
        with self._lock:
            self._idle.clear()
