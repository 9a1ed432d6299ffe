"""Tests for snapshots, clone and volumes."""

from datetime import timedelta

import pytest

from coffre.archive import cat, decode_archive_data
from coffre.exceptions import NotFoundError
from coffre.models import ARCHIVE_DIRECTORY, Archive, Stats
from coffre.snapshot import Snapshot
from coffre.volume import Volume


async def backup(repo, index, root, snapshot=None, targets=('data',)):
    snapshot = snapshot or Snapshot.create('test')
    await snapshot.add(root, list(targets), None, repo, index).drain()
    return snapshot


def test_add_archive_replaces_stats():
    snapshot = Snapshot.create('stats')
    snapshot.add_archive(Archive(path='a.txt', size=10), storage_size=4)
    snapshot.add_archive(Archive(path='a.txt', size=25), storage_size=6)

    assert snapshot.stats.files == 1
    assert snapshot.stats.size == 25
    assert snapshot.stats.storage_size == 10


def test_stats_display():
    stats = Stats(size=2048, storage_size=1024, files=3, dirs=1, symlinks=0)

    assert str(stats) == (
        "3 files, 1 dirs, 0 symlinks, 2.0 KiB original size, 1.0 KiB storage size"
    )


def test_snapshot_date_is_utc():
    snapshot = Snapshot.create('dated')

    assert snapshot.date.utcoffset() == timedelta(0)
    assert Snapshot.from_dict(snapshot.to_dict()).date == snapshot.date


def test_list_archives_sorted_and_lookup():
    snapshot = Snapshot.create()
    for path in ('b', 'a/c', 'a'):
        snapshot.add_archive(Archive(path=path, type=ARCHIVE_DIRECTORY))

    assert [a.path for a in snapshot.list_archives()] == ['a', 'a/c', 'b']
    assert snapshot.get_archive('a/c').path == 'a/c'
    with pytest.raises(NotFoundError) as exc_info:
        snapshot.get_archive('missing')
    assert exc_info.value.kind == 'archive'


def test_listing_rows():
    snapshot = Snapshot.create()
    snapshot.add_archive(Archive(path='f.txt', mode=0o100644, size=2048, mod_time=0))

    row = snapshot.listing()[0]

    assert row['mode'] == '-rw-r--r--'
    assert row['size'] == '2.0 KiB'
    assert row['mod_time'] == '1970-01-01 00:00:00'
    assert row['path'] == 'f.txt'


@pytest.mark.asyncio
async def test_save_and_load(repo, index, sample_tree):
    root, contents = sample_tree
    snapshot = await backup(repo, index, root)
    snapshot.save(repo)

    loaded = Snapshot.load(repo, snapshot.id)

    assert loaded.id == snapshot.id
    assert loaded.date == snapshot.date
    assert loaded.stats.to_dict() == snapshot.stats.to_dict()
    assert loaded.archives == snapshot.archives
    assert await cat(repo, loaded, 'data/notes.txt') == contents['data/notes.txt']


def test_load_missing_snapshot(repo):
    with pytest.raises(NotFoundError) as exc_info:
        Snapshot.load(repo, 'deadbeef')

    assert exc_info.value.kind == 'snapshot'


@pytest.mark.asyncio
async def test_clone_is_independent(repo, index, sample_tree):
    root, _ = sample_tree
    original = await backup(repo, index, root)

    clone = original.clone(index)

    assert clone.id != original.id
    assert clone.archives == original.archives
    assert clone.stats.to_dict() == original.stats.to_dict()
    for chunk_hash in original.chunk_hashes():
        assert index.get(chunk_hash).snapshots == {original.id, clone.id}

    clone.archives['data/notes.txt'].points_to = 'changed'
    assert original.archives['data/notes.txt'].points_to == ''


@pytest.mark.asyncio
async def test_clone_then_replace_archive(repo, index, sample_tree):
    root, contents = sample_tree
    original = await backup(repo, index, root)
    clone = original.clone(index)
    old_hashes = original.get_archive('data/notes.txt').chunk_hashes()

    with open(f"{root}/data/notes.txt", 'wb') as f:
        f.write(b'rewritten notes\n')
    await backup(repo, index, root, snapshot=clone, targets=['data/notes.txt'])

    assert await cat(repo, clone, 'data/notes.txt') == b'rewritten notes\n'
    assert await cat(repo, original, 'data/notes.txt') == contents['data/notes.txt']
    assert clone.stats.files == original.stats.files
    assert clone.stats.size == original.stats.size - len(contents['data/notes.txt']) + 16
    for chunk_hash in old_hashes:
        assert index.get(chunk_hash).snapshots == {original.id}


@pytest.mark.asyncio
async def test_clone_survives_original_removal(repo, index, sample_tree):
    root, contents = sample_tree
    volume = repo.add_volume(Volume.create('docs'))
    original = await backup(repo, index, root)
    original.save(repo)
    volume.add_snapshot(original.id)

    clone = original.clone(index)
    clone.save(repo)
    volume.add_snapshot(clone.id)

    repo.remove_snapshot(original.id, index)
    result = await index.pack_all(repo)

    assert result.chunks_removed == 0
    for path, content in contents.items():
        assert await decode_archive_data(repo, clone.get_archive(path)) == content


def test_volume_snapshots(repo):
    volume = Volume.create('photos', 'holiday pictures')
    volume.add_snapshot('s1')
    volume.add_snapshot('s1')
    volume.add_snapshot('s2')

    assert volume.snapshots == ['s1', 's2']
    assert Volume.from_dict(volume.to_dict()) == volume

    with pytest.raises(NotFoundError):
        volume.remove_snapshot('s3')
    with pytest.raises(NotFoundError):
        volume.load_snapshot('s3', repo)


@pytest.mark.asyncio
async def test_volume_remove_snapshot_releases_chunks(repo, index, sample_tree):
    root, _ = sample_tree
    volume = Volume.create('docs')
    snapshot = await backup(repo, index, root)
    volume.add_snapshot(snapshot.id)

    released = volume.remove_snapshot(snapshot.id, index)

    assert released == len(snapshot.chunk_hashes())
    assert volume.snapshots == []


@pytest.mark.asyncio
async def test_volume_list_snapshots(repo, index, sample_tree):
    root, _ = sample_tree
    volume = repo.add_volume(Volume.create('docs'))
    snapshot = await backup(repo, index, root)
    snapshot.save(repo)
    volume.add_snapshot(snapshot.id)

    rows = volume.list_snapshots(repo)

    assert [r['id'] for r in rows] == [snapshot.id]
    assert rows[0]['description'] == 'test'
