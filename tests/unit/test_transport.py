"""Unit tests for the framed transport."""

import asyncio
import struct
from unittest.mock import AsyncMock, Mock

import pytest

from linelens.protocol.messages import ExecuteMessage, ReadyMessage
from linelens.protocol.transport import (
    FrameReader,
    FrameWriter,
    MessageTransport,
    ProtocolError,
)


def feed(*chunks: bytes, eof: bool = True) -> asyncio.StreamReader:
    reader = asyncio.StreamReader()
    for chunk in chunks:
        reader.feed_data(chunk)
    if eof:
        reader.feed_eof()
    return reader


class CaptureWriter:
    """Stand-in for asyncio.StreamWriter that records written bytes."""

    def __init__(self):
        self.data = bytearray()
        self.closed = False

    def write(self, data: bytes) -> None:
        self.data.extend(data)

    async def drain(self) -> None:
        pass

    def close(self) -> None:
        self.closed = True

    async def wait_closed(self) -> None:
        pass


@pytest.mark.unit
class TestFrameReader:
    """Test FrameReader functionality."""

    @pytest.mark.asyncio
    async def test_read_frame(self):
        frame_reader = FrameReader(feed(b"\x00\x00\x00\x05hello"))
        assert await frame_reader.read_frame(timeout=1.0) == b"hello"

    @pytest.mark.asyncio
    async def test_frame_split_across_chunks(self):
        reader = feed(b"\x00\x00", eof=False)
        frame_reader = FrameReader(reader)
        task = asyncio.create_task(frame_reader.read_frame(timeout=1.0))
        await asyncio.sleep(0)
        reader.feed_data(b"\x00\x03ab")
        reader.feed_data(b"c")
        assert await task == b"abc"

    @pytest.mark.asyncio
    async def test_eof_mid_frame(self):
        frame_reader = FrameReader(feed(b"\x00\x00\x00\x09abc"))
        with pytest.raises(ProtocolError, match="frame data"):
            await frame_reader.read_frame()

    @pytest.mark.asyncio
    async def test_eof_before_header(self):
        with pytest.raises(ProtocolError, match="frame length"):
            await FrameReader(feed()).read_frame()

    @pytest.mark.asyncio
    async def test_oversized_frame(self):
        frame_reader = FrameReader(feed(struct.pack(">I", 2048)), max_frame_size=1024)
        with pytest.raises(ProtocolError, match="too large"):
            await frame_reader.read_frame()

    @pytest.mark.asyncio
    async def test_timeout(self):
        frame_reader = FrameReader(feed(eof=False))
        with pytest.raises(asyncio.TimeoutError):
            await frame_reader.read_frame(timeout=0.1)


@pytest.mark.unit
class TestFrameWriter:
    """Test FrameWriter functionality."""

    @pytest.mark.asyncio
    async def test_length_prefix(self):
        writer = CaptureWriter()
        await FrameWriter(writer).write_frame(b"hello")
        assert bytes(writer.data) == b"\x00\x00\x00\x05hello"

    @pytest.mark.asyncio
    async def test_write_after_close(self):
        frame_writer = FrameWriter(CaptureWriter())
        await frame_writer.close()
        with pytest.raises(ProtocolError):
            await frame_writer.write_frame(b"x")

    @pytest.mark.asyncio
    async def test_broken_pipe(self):
        writer = Mock()
        writer.drain = AsyncMock(side_effect=BrokenPipeError("gone"))
        frame_writer = FrameWriter(writer)
        with pytest.raises(ProtocolError, match="Connection lost"):
            await frame_writer.write_frame(b"x")


@pytest.mark.unit
class TestMessageTransport:
    """Test message encoding over frames."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("use_msgpack", [True, False])
    async def test_send_then_receive(self, use_msgpack):
        writer = CaptureWriter()
        sender = MessageTransport(feed(), writer, use_msgpack=use_msgpack)
        message = ExecuteMessage(id=7, code="a = 5", timeout=1000)
        await sender.send_message(message)

        receiver = MessageTransport(feed(bytes(writer.data)), CaptureWriter(), use_msgpack=use_msgpack)
        received = await receiver.receive_message(timeout=1.0)
        assert received == message

    @pytest.mark.asyncio
    async def test_garbage_frame(self):
        transport = MessageTransport(feed(b"\x00\x00\x00\x03\xc1\xc1\xc1"), CaptureWriter())
        with pytest.raises(ProtocolError, match="Invalid message"):
            await transport.receive_message()

    @pytest.mark.asyncio
    async def test_closed_transport(self):
        transport = MessageTransport(feed(), CaptureWriter())
        await transport.close()
        with pytest.raises(ProtocolError):
            await transport.send_message(ReadyMessage(session_id="doc", pid=1))
        with pytest.raises(ProtocolError):
            await transport.receive_message()
