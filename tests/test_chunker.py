"""Tests for content-defined chunking."""

import io
import os
import random
import threading

import pytest

from coffre.chunker import chunk_bytes, chunk_file, chunk_sizes, chunk_stream
from coffre.exceptions import ConfigurationError
from coffre.models import compute_chunk_hash

SIZES = dict(min_size=1024, avg_size=4096, max_size=16384)


def _random_bytes(size, seed=1):
    rng = random.Random(seed)
    return bytes(rng.getrandbits(8) for _ in range(size))


def test_chunks_reassemble_input():
    """Concatenated chunks equal the input, offsets are contiguous."""
    data = _random_bytes(100 * 1024)
    chunks = list(chunk_bytes(data, **SIZES))

    assert b"".join(c.data for c in chunks) == data
    offset = 0
    for i, chunk in enumerate(chunks):
        assert chunk.index == i
        assert chunk.offset == offset
        assert chunk.hash == compute_chunk_hash(chunk.data)
        offset += chunk.size


def test_chunk_size_bounds():
    """No chunk exceeds max; only the last one may be below min."""
    data = _random_bytes(300 * 1024, seed=2)
    chunks = list(chunk_bytes(data, **SIZES))

    assert len(chunks) > 1
    assert all(c.size <= SIZES['max_size'] for c in chunks)
    assert all(c.size >= SIZES['min_size'] for c in chunks[:-1])


def test_empty_input_yields_single_empty_chunk():
    chunks = list(chunk_bytes(b"", **SIZES))

    assert len(chunks) == 1
    assert chunks[0].data == b""
    assert chunks[0].hash == compute_chunk_hash(b"")


def test_single_byte_input():
    chunks = list(chunk_bytes(b"x", **SIZES))

    assert len(chunks) == 1
    assert chunks[0].data == b"x"


def test_boundaries_are_local():
    """Inserting bytes in the middle keeps most chunks unchanged."""
    data = _random_bytes(200 * 1024, seed=3)
    middle = len(data) // 2
    edited = data[:middle] + b"inserted bytes" + data[middle:]

    before = {c.hash for c in chunk_bytes(data, **SIZES)}
    after = {c.hash for c in chunk_bytes(edited, **SIZES)}

    shared = before & after
    assert len(shared) >= len(before) // 2


def test_chunk_file_matches_chunk_bytes(tmp_path):
    data = _random_bytes(64 * 1024, seed=4)
    path = tmp_path / 'file.bin'
    path.write_bytes(data)

    from_file = [c.hash for c in chunk_file(str(path), **SIZES)]
    from_bytes = [c.hash for c in chunk_bytes(data, **SIZES)]

    assert from_file == from_bytes


def test_chunk_file_empty(tmp_path):
    path = tmp_path / 'empty'
    path.write_bytes(b"")

    chunks = list(chunk_file(str(path), **SIZES))

    assert [c.data for c in chunks] == [b""]


def test_chunk_stream_matches_chunk_bytes():
    data = _random_bytes(200 * 1024, seed=3)

    from_stream = list(chunk_stream(io.BytesIO(data), **SIZES))

    assert [c.hash for c in from_stream] == [c.hash for c in chunk_bytes(data, **SIZES)]
    assert [c.offset for c in from_stream] == [c.offset for c in chunk_bytes(data, **SIZES)]
    assert [c.index for c in from_stream] == list(range(len(from_stream)))
    assert [c.data for c in chunk_stream(io.BytesIO(b""), **SIZES)] == [b""]


class _TrickleReader(io.RawIOBase):
    """Returns at most 1000 bytes per read and has no file descriptor."""

    def __init__(self, data):
        self._data = io.BytesIO(data)

    def readable(self):
        return True

    def read(self, size=-1):
        return self._data.read(min(size, 1000) if size >= 0 else 1000)


def test_chunk_stream_short_reads():
    data = _random_bytes(90 * 1024, seed=4)

    chunks = list(chunk_stream(_TrickleReader(data), **SIZES))

    assert b"".join(c.data for c in chunks) == data
    assert [c.hash for c in chunks] == [c.hash for c in chunk_bytes(data, **SIZES)]


def test_chunk_stream_from_pipe():
    data = _random_bytes(100 * 1024, seed=5)
    read_fd, write_fd = os.pipe()

    def writer():
        with os.fdopen(write_fd, 'wb') as w:
            w.write(data)

    thread = threading.Thread(target=writer)
    thread.start()
    with os.fdopen(read_fd, 'rb') as r:
        chunks = list(chunk_stream(r, **SIZES))
    thread.join()

    assert b"".join(c.data for c in chunks) == data
    assert [c.hash for c in chunks] == [c.hash for c in chunk_bytes(data, **SIZES)]


def test_chunk_file_missing(tmp_path):
    with pytest.raises(FileNotFoundError):
        list(chunk_file(os.path.join(str(tmp_path), 'missing'), **SIZES))


@pytest.mark.parametrize("sizes", [
    dict(min_size=8192, avg_size=4096, max_size=16384),
    dict(min_size=1024, avg_size=4096, max_size=2048),
    dict(min_size=16, avg_size=64, max_size=128),
])
def test_invalid_sizes(sizes):
    with pytest.raises(ConfigurationError):
        chunk_sizes(**sizes)


def test_sizes_default_to_config():
    config = {'CHUNKER': {'MIN_SIZE': 2048, 'AVG_SIZE': 8192, 'MAX_SIZE': 32768}}

    assert chunk_sizes(config) == (2048, 8192, 32768)
