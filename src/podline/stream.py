# stream.py
from __future__ import annotations

import struct
import threading
from typing import BinaryIO, Iterable, Optional

# Multiplexed stream framing:
#   [stream type][0][0][0][size: uint32 big-endian][payload: size bytes]
HEADER_SIZE = 8


class FrameDemuxer:
    """
    Incremental decoder for the engine's multiplexed output.

    Frames may be split across chunks in any way, so bytes are buffered
    until a full frame is available; each payload is forwarded to `sink`
    in arrival order.
    """

    def __init__(self, sink: Optional[BinaryIO]):
        self.sink = sink
        self._buffer = bytearray()
        self.frames = 0

    def feed(self, chunk: bytes) -> None:
        self._buffer.extend(chunk)
        while len(self._buffer) >= HEADER_SIZE:
            (size,) = struct.unpack(">I", self._buffer[4:HEADER_SIZE])
            end = HEADER_SIZE + size
            if len(self._buffer) < end:
                return
            payload = bytes(self._buffer[HEADER_SIZE:end])
            del self._buffer[:end]
            self.frames += 1
            if self.sink is not None:
                self.sink.write(payload)
                flush = getattr(self.sink, "flush", None)
                if flush is not None:
                    flush()

    @property
    def pending(self) -> int:
        """Bytes of an incomplete trailing frame."""
        return len(self._buffer)


def demultiplex(chunks: Iterable[bytes], sink: Optional[BinaryIO]) -> int:
    """Decode a whole multiplexed stream into `sink`. Returns the number of frames."""
    demuxer = FrameDemuxer(sink)
    for chunk in chunks:
        demuxer.feed(chunk)
    return demuxer.frames


class OutputPump:
    """
    Forwards a container's output stream to a sink on a worker thread while
    the caller waits for the container.

    Scoped to one container run: start() after the stream is opened,
    join() before the container is removed. cancel() closes the stream,
    which is what ends the read loop when the container is still running.
    """

    def __init__(self, stream: Iterable[bytes], sink: Optional[BinaryIO], name: str = "output"):
        self._stream = stream
        self._demuxer = FrameDemuxer(sink)
        self._cancelled = threading.Event()
        self._thread = threading.Thread(target=self._pump, name=f"podline-{name}", daemon=True)
        self.error: Optional[BaseException] = None

    def _pump(self) -> None:
        try:
            for chunk in self._stream:
                self._demuxer.feed(chunk)
        except Exception as e:
            # closing the stream underneath the reader is how cancel works
            if not self._cancelled.is_set():
                self.error = e

    def start(self) -> "OutputPump":
        self._thread.start()
        return self

    def cancel(self) -> None:
        self._cancelled.set()
        close = getattr(self._stream, "close", None)
        if close is not None:
            close()

    def join(self, timeout: Optional[float] = None) -> bool:
        """Returns True once the pump has finished."""
        self._thread.join(timeout)
        return not self._thread.is_alive()

    @property
    def frames(self) -> int:
        return self._demuxer.frames

    @property
    def pending(self) -> int:
        return self._demuxer.pending
