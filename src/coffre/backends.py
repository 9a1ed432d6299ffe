"""
Backends de stockage et registre par schéma d'URL.

Un backend est un simple magasin clé/valeur: le moteur n'a besoin que
de put/get/delete/list, de l'espace disponible et d'une initialisation
idempotente. Le transport est choisi par le schéma de l'URL
(``file://``, ``mem://``); d'autres transports s'ajoutent avec
``register_backend``.

Example:
    >>> from coffre.backends import backend_from_url
    >>> backend = backend_from_url("mem://doctest")
    >>> backend.put("hello", b"world")
    >>> backend.get("hello")
    b'world'
"""

import os
import uuid
import shutil
import logging
import threading
from typing import Callable, Dict, List, Optional, Protocol, runtime_checkable

from .exceptions import BackendError, ConfigurationError, NotFoundError

logger = logging.getLogger(__name__)


@runtime_checkable
class Backend(Protocol):
    """Capacités attendues d'un backend de stockage."""

    def put(self, key: str, data: bytes) -> None: ...

    def get(self, key: str) -> bytes: ...

    def delete(self, key: str) -> None: ...

    def list(self, prefix: str = "") -> List[str]: ...

    def available_space(self) -> int: ...

    def location(self) -> str: ...

    def protocols(self) -> List[str]: ...

    def init_repository(self) -> None: ...


def _check_key(key: str, location: str) -> str:
    parts = key.split('/')
    if not key or key.startswith('/') or any(p in ('', '.', '..') for p in parts):
        raise BackendError("Invalid key", location=location, key=key)
    return key


class LocalBackend:
    """
    Backend sur un répertoire local.

    Les clés contenant des ``/`` deviennent des sous-répertoires.
    Chaque écriture passe par un fichier temporaire suivi d'un
    ``os.replace``: un lecteur voit l'ancienne ou la nouvelle valeur,
    jamais un fichier tronqué.
    """

    TMP_SUFFIX = '.tmp'

    def __init__(self, path: str, logger: Optional[logging.Logger] = None):
        self.root = os.path.abspath(os.path.expanduser(path))
        self.logger = logger or logging.getLogger(__name__)

    @classmethod
    def from_url(cls, url: str) -> 'LocalBackend':
        path = url[len('file://'):] if url.startswith('file://') else url
        if not path:
            raise ConfigurationError("Empty local backend path", {"url": url})
        return cls(path)

    def _path(self, key: str) -> str:
        return os.path.join(self.root, *_check_key(key, self.location()).split('/'))

    def location(self) -> str:
        return f"file://{self.root}"

    def protocols(self) -> List[str]:
        return ['file']

    def init_repository(self) -> None:
        try:
            os.makedirs(self.root, exist_ok=True)
        except OSError as e:
            raise BackendError(f"Cannot create repository directory: {e}",
                               location=self.location(), operation='init') from e

    def put(self, key: str, data: bytes) -> None:
        path = self._path(key)
        tmp = f"{path}.{uuid.uuid4().hex[:8]}{self.TMP_SUFFIX}"
        try:
            os.makedirs(os.path.dirname(path), exist_ok=True)
            with open(tmp, 'wb') as f:
                f.write(data)
            os.replace(tmp, path)
        except OSError as e:
            if os.path.exists(tmp):
                os.remove(tmp)
            raise BackendError(f"Write failed: {e}", location=self.location(),
                               key=key, operation='put') from e

    def get(self, key: str) -> bytes:
        path = self._path(key)
        try:
            with open(path, 'rb') as f:
                return f.read()
        except FileNotFoundError as e:
            raise NotFoundError("Key not found", item_id=key, kind='key') from e
        except OSError as e:
            raise BackendError(f"Read failed: {e}", location=self.location(),
                               key=key, operation='get') from e

    def delete(self, key: str) -> None:
        """Supprime une clé; une clé absente n'est pas une erreur."""
        path = self._path(key)
        try:
            os.remove(path)
        except FileNotFoundError:
            return
        except OSError as e:
            raise BackendError(f"Delete failed: {e}", location=self.location(),
                               key=key, operation='delete') from e

    def list(self, prefix: str = "") -> List[str]:
        keys = []
        if not os.path.isdir(self.root):
            return keys
        try:
            for dirpath, _dirnames, filenames in os.walk(self.root):
                rel_dir = os.path.relpath(dirpath, self.root)
                for name in filenames:
                    if name.endswith(self.TMP_SUFFIX):
                        continue
                    rel = name if rel_dir == '.' else os.path.join(rel_dir, name)
                    key = rel.replace(os.sep, '/')
                    if key.startswith(prefix):
                        keys.append(key)
        except OSError as e:
            raise BackendError(f"List failed: {e}", location=self.location(),
                               operation='list') from e
        return sorted(keys)

    def available_space(self) -> int:
        try:
            return shutil.disk_usage(self.root).free
        except OSError as e:
            raise BackendError(f"Cannot stat filesystem: {e}",
                               location=self.location(), operation='stat') from e


class MemoryBackend:
    """
    Backend en mémoire, partagé par nom dans le processus.

    Deux instances ``mem://nom`` voient les mêmes données, ce qui permet
    de rouvrir un dépôt éphémère (tests, dépôts temporaires).
    """

    _stores: Dict[str, Dict[str, bytes]] = {}
    _lock = threading.Lock()

    def __init__(self, name: str, capacity: int = 1 << 40):
        self.name = name
        self.capacity = capacity
        with self._lock:
            self._data = self._stores.setdefault(name, {})

    @classmethod
    def from_url(cls, url: str) -> 'MemoryBackend':
        name = url[len('mem://'):]
        if not name:
            raise ConfigurationError("Memory backend needs a name", {"url": url})
        return cls(name)

    @classmethod
    def reset(cls, name: Optional[str] = None) -> None:
        """Oublie un magasin nommé (ou tous)."""
        with cls._lock:
            if name is None:
                for store in cls._stores.values():
                    store.clear()
            elif name in cls._stores:
                cls._stores[name].clear()

    def location(self) -> str:
        return f"mem://{self.name}"

    def protocols(self) -> List[str]:
        return ['mem']

    def init_repository(self) -> None:
        pass

    def put(self, key: str, data: bytes) -> None:
        _check_key(key, self.location())
        with self._lock:
            self._data[key] = bytes(data)

    def get(self, key: str) -> bytes:
        with self._lock:
            try:
                return self._data[key]
            except KeyError:
                raise NotFoundError("Key not found", item_id=key, kind='key') from None

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def list(self, prefix: str = "") -> List[str]:
        with self._lock:
            return sorted(k for k in self._data if k.startswith(prefix))

    def available_space(self) -> int:
        with self._lock:
            used = sum(len(v) for v in self._data.values())
        return max(0, self.capacity - used)


# Registre des transports par schéma d'URL
BACKENDS: Dict[str, Callable[[str], Backend]] = {
    'file': LocalBackend.from_url,
    'mem': MemoryBackend.from_url,
}


def register_backend(scheme: str, factory: Callable[[str], Backend]) -> None:
    """Enregistre un transport pour un schéma d'URL."""
    BACKENDS[scheme] = factory


def url_scheme(url: str) -> str:
    """
    Retourne le schéma d'une URL; un chemin nu est un chemin local.

    Example:
        >>> url_scheme("mem://a")
        'mem'
        >>> url_scheme("/var/backups")
        'file'
    """
    if '://' not in url:
        return 'file'
    return url.split('://', 1)[0].lower()


def backend_from_url(url: str) -> Backend:
    """
    Instancie le backend correspondant au schéma d'une URL.

    Raises:
        ConfigurationError: Si le schéma est inconnu
    """
    scheme = url_scheme(url)
    factory = BACKENDS.get(scheme)
    if factory is None:
        raise ConfigurationError("Unknown backend scheme", {"scheme": scheme, "url": url})
    logger.debug(f"Backend {scheme} pour {url}")
    return factory(url)
