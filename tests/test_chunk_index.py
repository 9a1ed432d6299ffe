"""Tests for the deduplication index, reference counting and pack."""

import asyncio

import pytest

from coffre.backend_mgr import piece_key
from coffre.chunk_index import ChunkIndex
from coffre.exceptions import BackendError
from coffre.models import Chunk, ChunkDescriptor, PieceLocation, compute_chunk_hash

from conftest import disable_backend


def _chunk(data: bytes) -> Chunk:
    return Chunk(hash=compute_chunk_hash(data), plain_size=len(data), encoded_size=len(data))


async def _write(repo, data: bytes) -> ChunkDescriptor:
    chunk = Chunk(hash=compute_chunk_hash(data), plain_size=len(data),
                  encoded_size=len(data), total_pieces=3, required_pieces=2)
    locations = await repo.backend_manager.store_chunk(chunk.hash, data, 3, 1)
    return ChunkDescriptor(chunk=chunk, piece_locations=locations)


def test_insert_is_idempotent():
    index = ChunkIndex()
    chunk = _chunk(b"hello")

    assert index.insert_chunk('s1', chunk, []) is True
    assert index.insert_chunk('s1', chunk, []) is False
    assert index.insert_chunk('s2', chunk, []) is False

    assert len(index) == 1
    assert index.get(chunk.hash).ref_count == 2


def test_add_reference_unknown_hash():
    index = ChunkIndex()

    assert index.add_reference('missing', 's1') is False


def test_descriptor_location_count_must_match():
    chunk = Chunk(hash='aa', plain_size=1, encoded_size=1, total_pieces=3, required_pieces=2)

    with pytest.raises(ValueError):
        ChunkDescriptor(chunk=chunk, piece_locations=[PieceLocation('mem://a', 'k')])


def test_remove_snapshot_keeps_data():
    index = ChunkIndex()
    shared, own = _chunk(b"shared"), _chunk(b"own")
    index.insert_chunk('s1', shared, [])
    index.insert_chunk('s2', shared, [])
    index.insert_chunk('s1', own, [])

    released = index.remove_snapshot('s1')

    assert released == 1
    assert own.hash in index
    assert [d.hash for d in index.unreferenced()] == [own.hash]
    assert index.get(shared.hash).snapshots == {'s2'}


@pytest.mark.asyncio
async def test_concurrent_store_writes_once(repo):
    """Concurrent stores of one hash write once and keep every reference."""
    index = repo.open_index()
    data = b"same content" * 100
    writes = []

    async def write():
        writes.append(1)
        await asyncio.sleep(0.01)
        return await _write(repo, data)

    results = await asyncio.gather(*(
        index.store(f"snap{i}", compute_chunk_hash(data), write) for i in range(10)
    ))

    assert len(writes) == 1
    assert sum(1 for _, is_new in results if is_new) == 1
    assert index.get(compute_chunk_hash(data)).ref_count == 10


@pytest.mark.asyncio
async def test_pack_frees_unreferenced_chunks(repo):
    index = repo.open_index()
    kept, dropped = b"kept" * 50, b"dropped" * 50
    for data, snap in ((kept, 'keep'), (dropped, 'drop')):
        descriptor = await _write(repo, data)
        index.insert_chunk(snap, descriptor.chunk, descriptor.piece_locations)

    index.remove_snapshot('drop')
    result = await index.pack_all(repo)

    assert result.chunks_removed == 1
    assert result.freed_bytes == len(dropped)
    assert result.errors == 0
    assert compute_chunk_hash(dropped) not in index
    assert compute_chunk_hash(kept) in index

    for backend in repo.backend_manager.backends:
        keys = backend.list('chunks/')
        assert piece_key(compute_chunk_hash(dropped), 0) not in keys
    assert str(result).startswith("Freed storage space:")


@pytest.mark.asyncio
async def test_pack_never_touches_referenced_chunks(repo):
    index = repo.open_index()
    descriptor = await _write(repo, b"referenced")
    index.insert_chunk('s1', descriptor.chunk, descriptor.piece_locations)

    result = await index.pack_all(repo)

    assert result.chunks_removed == 0
    data = await repo.backend_manager.load_chunk(descriptor.chunk)
    assert data == b"referenced"


@pytest.mark.asyncio
async def test_pack_tolerates_delete_failures(repo):
    index = repo.open_index()
    descriptor = await _write(repo, b"doomed" * 10)
    index.insert_chunk('s1', descriptor.chunk, descriptor.piece_locations)
    index.remove_snapshot('s1')
    disable_backend(repo, 2)

    stream = index.pack(repo)
    events = await stream.drain()

    assert stream.result.chunks_removed == 1
    assert stream.result.errors == 1
    assert stream.error_count == 1
    assert any(e.is_error for e in events)
    assert descriptor.hash not in index
    assert stream.result.orphan_sweep_skipped


@pytest.mark.asyncio
async def test_pack_sweeps_orphan_pieces(repo):
    index = repo.open_index()
    orphan = piece_key('f' * 64, 0)
    repo.backend_manager.backends[0].put(orphan, b"left by a cancelled add")

    result = await index.pack_all(repo)

    assert result.orphans_removed == 1
    assert orphan not in repo.backend_manager.backends[0].list('chunks/')


def test_index_save_needs_every_backend(repo):
    index = repo.open_index()
    index.insert_chunk('s1', _chunk(b"one"), [])
    disable_backend(repo, 0)

    with pytest.raises(BackendError):
        index.save(repo)


@pytest.mark.asyncio
async def test_pack_refuses_divergent_index_copies(repo):
    """A stale index reopened after a failed save must not delete newer chunks."""
    index = repo.open_index()
    first = await _write(repo, b"first backup" * 10)
    index.insert_chunk('s1', first.chunk, first.piece_locations)
    index.save(repo)

    second = await _write(repo, b"second backup" * 10)
    index.insert_chunk('s2', second.chunk, second.piece_locations)
    backends = repo.backend_manager.backends
    online = backends[0]
    disable_backend(repo, 0)
    with pytest.raises(BackendError):
        index.save(repo)
    backends[0] = online

    stale = ChunkIndex.open(repo)
    assert second.hash not in stale

    with pytest.raises(BackendError):
        await stale.pack_all(repo)
    assert await repo.backend_manager.load_chunk(second.chunk) == b"second backup" * 10
    assert all(piece_key(second.hash, i) in b.list('chunks/')
               for i, b in enumerate(backends))


def test_save_and_open(repo):
    index = repo.open_index()
    chunk = _chunk(b"persisted")
    index.insert_chunk('s1', chunk, [])
    index.save(repo)

    reopened = ChunkIndex.open(repo)

    assert len(reopened) == 1
    assert reopened.get(chunk.hash).snapshots == {'s1'}
    assert reopened.get(chunk.hash).chunk == chunk


def test_missing_index_opens_empty(repo):
    assert len(ChunkIndex.open(repo)) == 0


def test_index_is_encrypted(repo):
    index = repo.open_index()
    chunk = _chunk(b"secret chunk")
    index.insert_chunk('s1', chunk, [])
    index.save(repo)

    raw = repo.backend_manager.get_blob('index')

    assert chunk.hash.encode() not in raw
