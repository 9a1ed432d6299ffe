"""
Moteur de sauvegarde coffre.

Ce module fournit un moteur de sauvegarde dédupliquée, chiffrée et
redondante: les fichiers sont découpés en chunks définis par le contenu,
chaque chunk n'est stocké qu'une fois, puis compressé, chiffré et
réparti sur plusieurs backends de façon à survivre à la perte de
certains d'entre eux.

Composants principaux:
    - Repository: Dépôt (volumes, backends, clé de données)
    - Volume / Snapshot: Séries de snapshots et archives
    - ChunkIndex: Index de déduplication et comptage de références
    - BackendManager: Redondance (réplication ou Reed-Solomon)
    - ReedSolomonEncoder: Code d'effacement sur GF(2^8)
    - ProgressStream: Flux de progression des opérations longues

Configuration:
    Le module utilise des variables d'environnement pour la configuration:
    - COFFRE_CHUNK_MIN_SIZE / AVG_SIZE / MAX_SIZE: Tailles du chunker
    - COFFRE_COMPRESSION: Compression par défaut (défaut: none)
    - COFFRE_ENCRYPTION: Chiffrement par défaut (défaut: aes)
    - COFFRE_TOLERANCE: Tolérance aux pannes de backends (défaut: 0)
    - COFFRE_VERIFY_PERCENTAGE: Part des archives vérifiées (défaut: 70)

Example:
    >>> import asyncio
    >>> from coffre import Repository, Volume, Snapshot
    >>>
    >>> async def main():
    ...     repo = Repository.create("/srv/backup", "secret")
    ...     volume = repo.add_volume(Volume.create("home"))
    ...     index = repo.open_index()
    ...     snapshot = Snapshot.create("nightly")
    ...     stream = snapshot.add("/home/me", ["docs"], [], repo, index)
    ...     async for progress in stream:
    ...         print(progress.path, progress.total_statistics)
    ...     snapshot.save(repo)
    ...     volume.add_snapshot(snapshot.id)
    ...     index.save(repo)
    ...     repo.save()
    ...
    >>> asyncio.run(main())  # doctest: +SKIP

Architecture:
    1. Couche Modèle (repository.py, volume.py, snapshot.py, archive.py)
    2. Couche Index (chunk_index.py)
    3. Couche Encodage (chunker.py, crypto.py, keyring.py, reed_solomon.py)
    4. Couche Stockage (backend_mgr.py, backends.py)
"""

# Configuration
from .config import COFFRE_CONFIG, get_config, setup_logging, log_config

# Modèles de données
from .models import (
    ARCHIVE_FILE,
    ARCHIVE_DIRECTORY,
    ARCHIVE_SYMLINK,
    Chunk,
    PieceLocation,
    ChunkDescriptor,
    Archive,
    Stats,
    compute_chunk_hash,
    size_to_string,
)

# Exceptions
from .exceptions import (
    CoffreException,
    ConfigurationError,
    UnsupportedAlgorithmError,
    NotFoundError,
    AmbiguousIdError,
    AuthenticationError,
    CorruptionError,
    RedundancyError,
    BackendError,
    CancellationSignal,
)

# Composants principaux
from .chunker import ChunkData, chunk_bytes, chunk_file, chunk_stream
from .backends import Backend, LocalBackend, MemoryBackend, backend_from_url, register_backend
from .backend_mgr import BackendManager
from .reed_solomon import ReedSolomonEncoder
from .progress import Progress, ProgressStream
from .chunk_index import ChunkIndex, PackResult
from .archive import add, decode_archive_data, read_archive, cat
from .snapshot import Snapshot
from .volume import Volume
from .repository import Repository
from .verify import verify_repo, verify_volume, verify_snapshot


__version__ = "1.0.0"

__all__ = [
    # Configuration
    "COFFRE_CONFIG",
    "get_config",
    "setup_logging",
    "log_config",

    # Modèles
    "ARCHIVE_FILE",
    "ARCHIVE_DIRECTORY",
    "ARCHIVE_SYMLINK",
    "Chunk",
    "PieceLocation",
    "ChunkDescriptor",
    "Archive",
    "Stats",
    "compute_chunk_hash",
    "size_to_string",

    # Exceptions
    "CoffreException",
    "ConfigurationError",
    "UnsupportedAlgorithmError",
    "NotFoundError",
    "AmbiguousIdError",
    "AuthenticationError",
    "CorruptionError",
    "RedundancyError",
    "BackendError",
    "CancellationSignal",

    # Composants
    "ChunkData",
    "chunk_bytes",
    "chunk_file",
    "chunk_stream",
    "Backend",
    "LocalBackend",
    "MemoryBackend",
    "backend_from_url",
    "register_backend",
    "BackendManager",
    "ReedSolomonEncoder",
    "Progress",
    "ProgressStream",
    "ChunkIndex",
    "PackResult",
    "Snapshot",
    "Volume",
    "Repository",

    # Opérations
    "add",
    "decode_archive_data",
    "read_archive",
    "cat",
    "verify_repo",
    "verify_volume",
    "verify_snapshot",
]
