"""Tests for the multiplexed output demultiplexer and the output pump."""

from __future__ import annotations

import io

from conftest import FakeStream, frame

from podline.stream import FrameDemuxer, OutputPump, demultiplex

HELLO = bytes.fromhex("0000000000000005") + b"hello"
WORLD = bytes.fromhex("0000000000000006") + b"world!"


class TestDemultiplex:
    def test_two_frames_in_order(self):
        sink = io.BytesIO()
        assert demultiplex([HELLO + WORLD], sink) == 2
        assert sink.getvalue() == b"helloworld!"

    def test_frames_split_across_chunks(self):
        data = HELLO + WORLD
        sink = io.BytesIO()
        demultiplex([data[i:i + 3] for i in range(0, len(data), 3)], sink)
        assert sink.getvalue() == b"helloworld!"

    def test_stdout_and_stderr_interleaved(self):
        sink = io.BytesIO()
        demultiplex([frame(b"out ", 1), frame(b"err ", 2), frame(b"out", 1)], sink)
        assert sink.getvalue() == b"out err out"

    def test_no_sink_discards(self):
        assert demultiplex([HELLO, WORLD], None) == 2

    def test_empty_frame(self):
        sink = io.BytesIO()
        assert demultiplex([frame(b""), HELLO], sink) == 2
        assert sink.getvalue() == b"hello"

    def test_incomplete_frame_is_pending(self):
        sink = io.BytesIO()
        demuxer = FrameDemuxer(sink)
        demuxer.feed(HELLO + WORLD[:10])
        assert sink.getvalue() == b"hello"
        assert demuxer.pending == 10
        demuxer.feed(WORLD[10:])
        assert demuxer.pending == 0
        assert sink.getvalue() == b"helloworld!"


class TestOutputPump:
    def test_pumps_whole_stream(self):
        sink = io.BytesIO()
        pump = OutputPump(FakeStream([HELLO, WORLD]), sink).start()
        assert pump.join(5)
        assert pump.error is None
        assert pump.frames == 2
        assert pump.pending == 0
        assert sink.getvalue() == b"helloworld!"

    def test_records_stream_error(self):
        def broken():
            yield HELLO
            raise OSError("connection reset")

        sink = io.BytesIO()
        pump = OutputPump(broken(), sink).start()
        assert pump.join(5)
        assert isinstance(pump.error, OSError)
        assert sink.getvalue() == b"hello"

    def test_cancel_closes_stream(self):
        stream = FakeStream([HELLO])
        pump = OutputPump(stream, io.BytesIO())
        pump.cancel()
        assert stream.closed
        pump.start()
        assert pump.join(5)
        assert pump.error is None
