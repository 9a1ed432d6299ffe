"""Tests for configuration helpers, logging setup and data models."""

import io
import logging

import pytest

from coffre.config import (
    COFFRE_CONFIG, _get_env_int, _get_env_list, _get_env_str, get_config, log_config,
    setup_logging
)
from coffre.models import (
    ARCHIVE_DIRECTORY, ARCHIVE_SYMLINK, Archive, Chunk, ChunkDescriptor, PieceLocation,
    Stats, archive_stats, size_to_string
)


def test_env_int(monkeypatch):
    monkeypatch.setenv('COFFRE_TEST_INT', '42')
    monkeypatch.setenv('COFFRE_TEST_BAD', 'forty-two')

    assert _get_env_int('COFFRE_TEST_INT', 1) == 42
    assert _get_env_int('COFFRE_TEST_BAD', 1) == 1
    assert _get_env_int('COFFRE_TEST_UNSET', 7) == 7


def test_env_str_and_list(monkeypatch):
    monkeypatch.setenv('COFFRE_TEST_STR', 'zstd')
    monkeypatch.setenv('COFFRE_TEST_LIST', '*.tmp, .cache ,,')

    assert _get_env_str('COFFRE_TEST_STR', 'none') == 'zstd'
    assert _get_env_list('COFFRE_TEST_LIST') == ['*.tmp', '.cache']
    assert _get_env_list('COFFRE_TEST_UNSET', ['a']) == ['a']


def test_default_configuration():
    config = get_config()

    assert config['CHUNKER']['MIN_SIZE'] <= config['CHUNKER']['AVG_SIZE'] <= config['CHUNKER']['MAX_SIZE']
    assert config['STORE']['ENCRYPTION'] in config['ALGORITHMS']['ENCRYPTION']
    assert config['KDF']['ALGORITHM'] == 'pbkdf2'
    assert 0 <= config['VERIFY']['PERCENTAGE'] <= 100


def test_setup_logging():
    stream = io.StringIO()
    log = setup_logging('debug', stream=stream)
    try:
        assert log.name == 'coffre'
        assert log.level == logging.DEBUG
        logging.getLogger('coffre.test').debug("message de test")
        log_config(COFFRE_CONFIG)
    finally:
        setup_logging('warning')


def test_setup_logging_unknown_level():
    with pytest.raises(ValueError):
        setup_logging('verbose')


@pytest.mark.parametrize("size,expected", [
    (0, '0 B'),
    (1023, '1023 B'),
    (1024, '1.0 KiB'),
    (1536, '1.5 KiB'),
    (5 * 1024 ** 3, '5.0 GiB'),
])
def test_size_to_string(size, expected):
    assert size_to_string(size) == expected


def test_archive_stats_by_type():
    assert archive_stats(Archive(path='f', size=12)).files == 1
    assert archive_stats(Archive(path='f', size=12)).size == 12
    assert archive_stats(Archive(path='d', type=ARCHIVE_DIRECTORY)).dirs == 1
    assert archive_stats(Archive(path='l', type=ARCHIVE_SYMLINK)).symlinks == 1


def test_stats_add_and_subtract():
    total = Stats(size=10, files=1)
    total.add(Stats(size=5, files=1, storage_size=3))
    total.subtract(Stats(size=20, files=1))

    assert total.size == 0
    assert total.files == 1
    assert total.storage_size == 3


def test_archive_consistency():
    chunks = [Chunk(hash='a', plain_size=4, encoded_size=4),
              Chunk(hash='b', plain_size=6, encoded_size=6)]

    assert Archive(path='f', size=10, chunks=chunks).is_consistent()
    assert not Archive(path='f', size=11, chunks=chunks).is_consistent()
    assert not Archive(path='d', type=ARCHIVE_DIRECTORY, chunks=chunks).is_consistent()


def test_descriptor_serialization():
    chunk = Chunk(hash='ab' * 32, plain_size=10, encoded_size=38, total_pieces=2,
                  required_pieces=1, compression='zstd', encryption='aes')
    descriptor = ChunkDescriptor(
        chunk=chunk,
        piece_locations=[PieceLocation('mem://a', 'chunks/x.0'),
                         PieceLocation('mem://b', 'chunks/x.1')],
        snapshots={'s2', 's1'},
    )

    data = descriptor.to_dict()

    assert data['snapshots'] == ['s1', 's2']
    assert ChunkDescriptor.from_dict(data) == descriptor
