"""Tests for redundancy across backends."""

import os
import uuid

import pytest

from coffre.backend_mgr import BackendManager, parse_piece_key, piece_key
from coffre.backends import MemoryBackend
from coffre.exceptions import BackendError, ConfigurationError, NotFoundError, RedundancyError
from coffre.models import Chunk

from conftest import OfflineBackend


@pytest.fixture
def backends():
    names = [f"mgr-{uuid.uuid4().hex[:8]}" for _ in range(3)]
    yield [MemoryBackend(n) for n in names]
    for name in names:
        MemoryBackend.reset(name)


@pytest.fixture
def manager(backends):
    return BackendManager(list(backends))


def test_piece_keys_are_unique_per_chunk():
    assert piece_key('aa', 0) != piece_key('aa', 1)
    assert piece_key('aa', 1) != piece_key('ab', 1)
    assert parse_piece_key(piece_key('abc', 2)) == ('abc', 2)
    assert parse_piece_key('index') is None


def test_replication_pieces_are_full_copies(manager):
    data = os.urandom(500)

    pieces = manager.encode(data, total_pieces=3, failure_tolerance=2)

    assert pieces == [data, data, data]
    assert manager.decode({2: pieces[2]}, 3, 1, len(data)) == data


def test_erasure_coding_tolerates_one_loss(manager):
    data = os.urandom(1000)
    pieces = manager.encode(data, total_pieces=3, failure_tolerance=1)

    for missing in range(3):
        available = {i: p for i, p in enumerate(pieces) if i != missing}
        assert manager.decode(available, 3, 2, len(data)) == data


def test_erasure_coding_fails_beyond_tolerance(manager):
    data = os.urandom(1000)
    pieces = manager.encode(data, total_pieces=3, failure_tolerance=1)

    with pytest.raises(RedundancyError):
        manager.decode({0: pieces[0]}, 3, 2, len(data))


def test_direct_storage(manager):
    pieces = manager.encode(b"plain", total_pieces=1, failure_tolerance=0)

    assert pieces == [b"plain"]


@pytest.mark.parametrize("total,tolerance", [(3, 3), (2, 5), (4, 0), (0, 0)])
def test_invalid_redundancy(manager, total, tolerance):
    with pytest.raises(ConfigurationError):
        manager.redundancy(total, tolerance)


def test_redundancy_defaults_to_backend_count(manager):
    assert manager.redundancy(None, 1) == (3, 1)


def test_no_backend():
    with pytest.raises(ConfigurationError):
        BackendManager([]).redundancy(None, 0)


@pytest.mark.asyncio
async def test_store_and_load_chunk(manager, backends):
    data = os.urandom(2000)

    locations = await manager.store_chunk('c1', data, 3, 1)

    assert [l.key for l in locations] == [piece_key('c1', i) for i in range(3)]
    assert [l.backend for l in locations] == [b.location() for b in backends]
    chunk = Chunk(hash='c1', plain_size=2000, encoded_size=2000,
                  total_pieces=3, required_pieces=2)
    assert await manager.load_chunk(chunk) == data


@pytest.mark.asyncio
async def test_store_within_tolerance(manager):
    manager.backends[1] = OfflineBackend()
    data = os.urandom(100)

    await manager.store_chunk('c2', data, 3, 1)

    chunk = Chunk(hash='c2', plain_size=100, encoded_size=100,
                  total_pieces=3, required_pieces=2)
    assert await manager.load_chunk(chunk) == data


@pytest.mark.asyncio
async def test_store_beyond_tolerance(manager):
    manager.backends[1] = OfflineBackend()

    with pytest.raises(RedundancyError) as exc_info:
        await manager.store_chunk('c3', b"data", 3, 0)

    assert exc_info.value.missing_indices == [1]


@pytest.mark.asyncio
async def test_load_chunk_with_missing_pieces(manager, backends):
    data = os.urandom(300)
    await manager.store_chunk('c4', data, 3, 1)
    backends[0].delete(piece_key('c4', 0))
    backends[2].delete(piece_key('c4', 2))

    chunk = Chunk(hash='c4', plain_size=300, encoded_size=300,
                  total_pieces=3, required_pieces=2)
    with pytest.raises(RedundancyError) as exc_info:
        await manager.load_chunk(chunk)

    assert exc_info.value.chunk_hash == 'c4'


@pytest.mark.asyncio
async def test_delete_chunk_reports_errors(manager, backends):
    await manager.store_chunk('c5', b"x" * 64, 3, 2)
    manager.backends[2] = OfflineBackend()

    errors = await manager.delete_chunk('c5', 3)

    assert len(errors) == 1
    assert isinstance(errors[0], BackendError)
    assert backends[0].list('chunks/') == []


def test_blobs_written_everywhere(manager, backends):
    written = manager.put_blob('index', b'meta')

    assert written == 3
    assert all(b.get('index') == b'meta' for b in backends)


def test_blob_read_falls_back(manager, backends):
    manager.put_blob('index', b'meta')
    manager.backends[0] = OfflineBackend()
    backends[1].delete('index')

    assert manager.get_blob('index') == b'meta'


def test_blob_missing(manager):
    with pytest.raises(NotFoundError):
        manager.get_blob('nothing')


def test_blob_write_fails_without_backend():
    manager = BackendManager([OfflineBackend(), OfflineBackend('mem://off2')])

    with pytest.raises(BackendError):
        manager.put_blob('index', b'meta')


def test_blob_write_fails_if_one_backend_refuses(manager, backends):
    manager.backends[2] = OfflineBackend()

    with pytest.raises(BackendError) as exc_info:
        manager.put_blob('index', b'meta')

    assert exc_info.value.details['failed'] == ['mem://offline']


def test_blob_copies(manager, backends):
    manager.put_blob('index', b'meta')
    backends[1].delete('index')
    manager.backends[2] = OfflineBackend()

    assert manager.blob_copies('index') == {0: b'meta', 1: None}


def test_add_backend_by_url(manager):
    url = f"mem://added-{uuid.uuid4().hex[:8]}"

    manager.add_backend(url)

    assert manager.locations()[-1] == url
    assert manager.protocols() == ['mem']
    MemoryBackend.reset(url[len('mem://'):])


def test_available_space_tolerates_offline(manager):
    manager.backends[0] = OfflineBackend()

    spaces = manager.available_space()

    assert spaces['mem://offline'] is None
    assert all(v > 0 for k, v in spaces.items() if k != 'mem://offline')
