"""Shared pytest fixtures for all tests."""

import os
import copy
import uuid

import pytest

from coffre.backends import MemoryBackend
from coffre.config import COFFRE_CONFIG
from coffre.exceptions import BackendError
from coffre.repository import Repository


class OfflineBackend:
    """Backend stub whose every operation fails like an unreachable server."""

    def __init__(self, location='mem://offline'):
        self._location = location

    def _fail(self, operation, key=None):
        raise BackendError("Backend offline", location=self._location, key=key,
                           operation=operation)

    def put(self, key, data):
        self._fail('put', key)

    def get(self, key):
        self._fail('get', key)

    def delete(self, key):
        self._fail('delete', key)

    def list(self, prefix=""):
        self._fail('list')

    def available_space(self):
        self._fail('stat')

    def location(self):
        return self._location

    def protocols(self):
        return ['mem']

    def init_repository(self):
        pass


def disable_backend(repository, index):
    """Replace backend ``index`` with an offline stub, keeping its location."""
    backends = repository.backend_manager.backends
    backends[index] = OfflineBackend(backends[index].location())


@pytest.fixture
def test_config():
    """
    Engine configuration with small chunks and a cheap KDF.

    Returns:
        Deep copy of COFFRE_CONFIG
    """
    config = copy.deepcopy(COFFRE_CONFIG)
    config['CHUNKER'].update({'MIN_SIZE': 1024, 'AVG_SIZE': 4096, 'MAX_SIZE': 16384})
    config['KDF']['ITERATIONS'] = 1000
    config['STORE']['EXCLUDES'] = []
    return config


@pytest.fixture
def mem_urls():
    """Three unique in-memory backend URLs, wiped after the test."""
    names = [f"test-{uuid.uuid4().hex[:12]}" for _ in range(3)]
    yield [f"mem://{name}" for name in names]
    for name in names:
        MemoryBackend.reset(name)


@pytest.fixture
def repo(mem_urls, test_config):
    """
    Open repository spread over three memory backends.

    Returns:
        Repository with password 'secret'
    """
    repository = Repository.create(mem_urls[0], 'secret', config=test_config)
    repository.add_backend(mem_urls[1])
    repository.add_backend(mem_urls[2])
    repository.save()
    return repository


@pytest.fixture
def single_repo(test_config):
    """Repository on a single memory backend."""
    url = f"mem://test-{uuid.uuid4().hex[:12]}"
    yield Repository.create(url, 'secret', config=test_config)
    MemoryBackend.reset(url[len('mem://'):])


@pytest.fixture
def index(repo):
    """Empty chunk index of ``repo``."""
    return repo.open_index()


@pytest.fixture
def sample_tree(tmp_path):
    """
    Create a small directory tree to back up.

    Layout:
        data/big.bin        200 KiB of random bytes
        data/notes.txt      short text
        data/empty.txt      empty file
        data/sub/deep.txt   nested file
        data/link           symlink to notes.txt
        data/cache.tmp      file meant to be excluded

    Returns:
        (root_dir, {relative path: content})
    """
    root = tmp_path / 'root'
    data = root / 'data'
    (data / 'sub').mkdir(parents=True)

    contents = {
        'data/big.bin': os.urandom(200 * 1024),
        'data/notes.txt': b'Sample content for testing\n' * 10,
        'data/empty.txt': b'',
        'data/sub/deep.txt': b'deep file',
        'data/cache.tmp': b'temporary',
    }
    for rel, content in contents.items():
        (root / rel).write_bytes(content)
    os.symlink('notes.txt', data / 'link')
    return str(root), contents
