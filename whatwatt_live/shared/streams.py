"""
MODULE OVERVIEW:
Turns whatever the transport hands us into one lazy sequence of byte chunks.

WHAT IS HAPPENING HERE:
A response body can show up in three shapes:
  * pull-based: an object with a coroutine `read(n)` (asyncio.StreamReader),
  * push-based: an async iterable of bytes, or anything with `aiter_bytes()`
    (an httpx streaming response),
  * event-driven: an object that calls us back, the asyncio.Protocol way,
    through `data_received` / `eof_received` / `connection_lost`.
The shape is inspected exactly once, in `iter_chunks`, and the matching adapter
is returned. Every adapter yields bytes in order, ends when the source ends and
cannot be restarted.
"""
import asyncio
import inspect
from typing import Any, AsyncIterator, Optional

from whatwatt_live.shared.errors import StreamSourceError

CHUNK_SIZE = 65536

_EOF = object()


def _as_bytes(chunk: Any) -> bytes:
    if isinstance(chunk, str):
        return chunk.encode("utf-8")
    return bytes(chunk)


async def _from_reader(reader: Any) -> AsyncIterator[bytes]:
    while True:
        chunk = await reader.read(CHUNK_SIZE)
        if not chunk:
            break
        yield _as_bytes(chunk)


async def _from_iterable(iterable: Any) -> AsyncIterator[bytes]:
    async for chunk in iterable:
        if chunk:
            yield _as_bytes(chunk)


class _QueueListener:
    """Bridges callback-style delivery into an asyncio.Queue."""

    def __init__(self) -> None:
        self.queue: asyncio.Queue = asyncio.Queue()

    def data_received(self, data: bytes) -> None:
        self.queue.put_nowait(data)

    def eof_received(self) -> None:
        self.queue.put_nowait(_EOF)

    def connection_lost(self, exc: Optional[BaseException]) -> None:
        self.queue.put_nowait(exc if exc is not None else _EOF)


async def _from_emitter(source: Any) -> AsyncIterator[bytes]:
    listener = _QueueListener()
    source.set_listener(listener)
    try:
        while True:
            item = await listener.queue.get()
            if item is _EOF:
                break
            if isinstance(item, BaseException):
                raise item
            if item:
                yield _as_bytes(item)
    finally:
        source.set_listener(None)


def iter_chunks(source: Any) -> AsyncIterator[bytes]:
    """Pick the adapter for `source` and return its chunk iterator.

    Raises:
        StreamSourceError: the body is missing/empty or of an unknown shape.
    """
    if source is None or (isinstance(source, (bytes, bytearray, str)) and not source):
        raise StreamSourceError("Response body is empty")

    read = getattr(source, "read", None)
    if read is not None and inspect.iscoroutinefunction(read):
        return _from_reader(source)

    aiter_bytes = getattr(source, "aiter_bytes", None)
    if callable(aiter_bytes):
        return _from_iterable(aiter_bytes())

    if hasattr(source, "__aiter__"):
        return _from_iterable(source)

    if callable(getattr(source, "set_listener", None)):
        return _from_emitter(source)

    raise StreamSourceError(
        f"Unsupported stream type {type(source).__name__}: expected an async reader, "
        f"an async iterable of bytes or an event-driven source"
    )
