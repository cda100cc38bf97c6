"""Tests for reading worker output lines."""

import asyncio

from fork_dispatch.substrates.local.substrate import read_line


def make_stream(data: bytes, limit: int = 64) -> asyncio.StreamReader:
    stream = asyncio.StreamReader(limit=limit)
    stream.feed_data(data)
    stream.feed_eof()
    return stream


async def test_reads_lines_in_order() -> None:
    """Returns each line with its newline, then empty bytes."""
    stream = make_stream(b"first\nsecond\n")

    assert await read_line(stream) == b"first\n"
    assert await read_line(stream) == b"second\n"
    assert await read_line(stream) == b""


async def test_reads_line_longer_than_limit() -> None:
    """A line over the limit is returned whole."""
    long_line = b"x" * 200 + b"\n"
    stream = make_stream(long_line + b":fork:bye\n")

    assert await read_line(stream) == long_line
    assert await read_line(stream) == b":fork:bye\n"


async def test_reads_unterminated_tail() -> None:
    """Output not ending in a newline is still returned."""
    stream = make_stream(b"y" * 150)

    assert await read_line(stream) == b"y" * 150
    assert await read_line(stream) == b""
