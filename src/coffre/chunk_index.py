"""
Index de déduplication des chunks.

L'index associe chaque hash de chunk à son descripteur: tailles,
algorithmes, emplacements des pièces et snapshots qui le référencent.
Un chunk n'est écrit sur les backends que s'il est absent de l'index;
il n'est supprimé physiquement que par ``pack``, une fois qu'aucun
snapshot ne le référence plus.

L'index est partagé entre plusieurs Add concurrents: la séquence
vérification / écriture / insertion d'un hash se fait sous un verrou
asyncio choisi par le hash (verrous répartis en shards).

Example:
    >>> from coffre.chunk_index import ChunkIndex
    >>> from coffre.models import Chunk
    >>> index = ChunkIndex()
    >>> chunk = Chunk(hash="ab" * 32, plain_size=4, encoded_size=4)
    >>> index.insert_chunk("snap1", chunk, [])
    True
    >>> index.insert_chunk("snap2", chunk, [])
    False
    >>> index.get(chunk.hash).ref_count
    2
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterator, List, Optional, Tuple

from .backend_mgr import parse_piece_key
from .config import COFFRE_CONFIG
from .crypto import decode_json, encode_json
from .exceptions import BackendError, CoffreException, NotFoundError
from .models import Archive, Chunk, ChunkDescriptor, PieceLocation, Stats, size_to_string
from .progress import KIND_CHUNK_REMOVED, KIND_ERROR, Progress, ProgressStream

INDEX_KEY = 'index'
INDEX_VERSION = 1


@dataclass
class PackResult:
    """Bilan d'un pack."""
    freed_bytes: int = 0
    chunks_removed: int = 0
    orphans_removed: int = 0
    orphan_sweep_skipped: bool = False
    errors: int = 0

    def __str__(self) -> str:
        return f"Freed storage space: {size_to_string(self.freed_bytes)}"


class ChunkIndex:
    """
    Index des chunks stockés, avec comptage de références.

    Attributes:
        chunks: Descripteurs par hash
        logger: Logger pour le debug
        config: Configuration du moteur
    """

    def __init__(self, descriptors: Optional[List[ChunkDescriptor]] = None,
                 logger: Optional[logging.Logger] = None,
                 config: Optional[Dict[str, Any]] = None):
        self.chunks: Dict[str, ChunkDescriptor] = {d.hash: d for d in descriptors or []}
        self.logger = logger or logging.getLogger(__name__)
        self.config = config or COFFRE_CONFIG
        self._lock_shards = self.config['INDEX']['LOCK_SHARDS']
        self._locks: Optional[List[asyncio.Lock]] = None

    # ------------------------------------------------------------------
    # Requêtes
    # ------------------------------------------------------------------

    def get(self, chunk_hash: str) -> Optional[ChunkDescriptor]:
        return self.chunks.get(chunk_hash)

    def __contains__(self, chunk_hash: str) -> bool:
        return chunk_hash in self.chunks

    def __len__(self) -> int:
        return len(self.chunks)

    def __iter__(self) -> Iterator[ChunkDescriptor]:
        return iter(list(self.chunks.values()))

    def unreferenced(self) -> List[ChunkDescriptor]:
        """Descripteurs sans aucune référence (éligibles au pack)."""
        return [d for d in self.chunks.values() if d.ref_count == 0]

    def total_storage_size(self) -> int:
        return sum(d.chunk.encoded_size for d in self.chunks.values())

    # ------------------------------------------------------------------
    # Références
    # ------------------------------------------------------------------

    def insert_chunk(self, snapshot_id: str, chunk: Chunk,
                     piece_locations: List[PieceLocation]) -> bool:
        """
        Enregistre un chunk pour un snapshot.

        Returns:
            True si le chunk est nouveau (l'appelant doit l'avoir écrit),
            False s'il était déjà présent (seule la référence est ajoutée)
        """
        descriptor = self.chunks.get(chunk.hash)
        if descriptor is not None:
            descriptor.snapshots.add(snapshot_id)
            return False
        self.chunks[chunk.hash] = ChunkDescriptor(
            chunk=chunk,
            piece_locations=list(piece_locations),
            snapshots={snapshot_id},
        )
        return True

    def add_reference(self, chunk_hash: str, snapshot_id: str) -> bool:
        """Ajoute une référence; False si le chunk est inconnu."""
        descriptor = self.chunks.get(chunk_hash)
        if descriptor is None:
            return False
        descriptor.snapshots.add(snapshot_id)
        return True

    def _lock_for(self, chunk_hash: str) -> asyncio.Lock:
        if self._locks is None:
            self._locks = [asyncio.Lock() for _ in range(self._lock_shards)]
        try:
            shard = int(chunk_hash[:8], 16) % self._lock_shards
        except ValueError:
            shard = hash(chunk_hash) % self._lock_shards
        return self._locks[shard]

    async def store(self, snapshot_id: str, chunk_hash: str,
                    write: Callable[[], Awaitable[ChunkDescriptor]]
                    ) -> Tuple[ChunkDescriptor, bool]:
        """
        Vérifie puis insère un chunk de façon atomique.

        Si le hash est connu, seule la référence est ajoutée. Sinon
        ``write()`` encode et écrit le chunk, puis le descripteur
        retourné est inséré. Deux Add concurrents n'écrivent jamais
        deux fois le même hash.

        Returns:
            (descripteur, True si le chunk a été écrit)
        """
        async with self._lock_for(chunk_hash):
            descriptor = self.chunks.get(chunk_hash)
            if descriptor is not None:
                descriptor.snapshots.add(snapshot_id)
                return descriptor, False

            descriptor = await write()
            descriptor.snapshots.add(snapshot_id)
            self.chunks[chunk_hash] = descriptor
            return descriptor, True

    def add_archive(self, archive: Archive, snapshot_id: str) -> int:
        """
        Référence tous les chunks d'une archive pour un snapshot.

        Returns:
            Nombre de chunks inconnus de l'index (ignorés)
        """
        missing = 0
        for chunk in archive.chunks:
            if not self.add_reference(chunk.hash, snapshot_id):
                missing += 1
                self.logger.warning(
                    f"Chunk {chunk.hash[:16]} de {archive.path} absent de l'index"
                )
        return missing

    def add_snapshot(self, snapshot) -> int:
        missing = 0
        for archive in snapshot.archives.values():
            missing += self.add_archive(archive, snapshot.id)
        return missing

    def reconcile_snapshot(self, snapshot) -> int:
        """
        Retire les références d'un snapshot vers des chunks qu'il
        n'utilise plus (archives remplacées).

        Returns:
            Nombre de références retirées
        """
        used = set(snapshot.chunk_hashes())
        dropped = 0
        for descriptor in self.chunks.values():
            if snapshot.id in descriptor.snapshots and descriptor.hash not in used:
                descriptor.snapshots.discard(snapshot.id)
                dropped += 1
        if dropped:
            self.logger.debug(f"Snapshot {snapshot.id}: {dropped} références obsolètes retirées")
        return dropped

    def remove_snapshot(self, snapshot_id: str) -> int:
        """
        Retire toutes les références d'un snapshot.

        Aucune suppression physique: les chunks sans référence seront
        libérés par ``pack``.

        Returns:
            Nombre de chunks dont le compteur est tombé à zéro
        """
        released = 0
        for descriptor in self.chunks.values():
            if snapshot_id in descriptor.snapshots:
                descriptor.snapshots.discard(snapshot_id)
                if descriptor.ref_count == 0:
                    released += 1
        self.logger.info(f"Snapshot {snapshot_id} retiré de l'index "
                         f"({released} chunks à libérer)")
        return released

    # ------------------------------------------------------------------
    # Pack
    # ------------------------------------------------------------------

    def pack(self, repository, cancel: Optional[asyncio.Event] = None) -> ProgressStream:
        """
        Supprime physiquement les chunks sans référence.

        Chaque suppression échouée est loggée, comptée et ignorée. Les
        pièces orphelines (présentes sur un backend mais inconnues de
        l'index, laissées par un Add annulé) sont aussi supprimées, à
        condition que chaque backend soit joignable et porte la même
        copie de l'index; sinon le balayage est sauté. Si des backends
        joignables portent des copies différentes de l'index, rien
        n'est supprimé.
        Ne doit pas tourner en même temps qu'un Add sur le même dépôt.

        Returns:
            ProgressStream dont ``result`` est un PackResult

        Raises:
            BackendError: (en fin de flux) si les copies de l'index divergent
        """
        manager = repository.backend_manager

        async def producer(stream: ProgressStream) -> PackResult:
            result = PackResult()
            stream.result = result
            total = Stats()

            copies = await asyncio.to_thread(manager.blob_copies, INDEX_KEY)
            if len(set(copies.values())) > 1:
                self.logger.error("Copies de l'index divergentes, pack annulé")
                raise BackendError("Index copies differ between backends",
                                   {"backends": sorted(copies)}, key=INDEX_KEY,
                                   operation='pack')

            for descriptor in self.unreferenced():
                stream.check_cancelled()
                errors = await manager.delete_chunk(descriptor.hash, descriptor.total_pieces)
                for error in errors:
                    result.errors += 1
                    await stream.emit(Progress(kind=KIND_ERROR, path=descriptor.hash,
                                               total_statistics=total.copy(), error=error))
                del self.chunks[descriptor.hash]
                result.freed_bytes += descriptor.chunk.encoded_size
                result.chunks_removed += 1
                total.storage_size = result.freed_bytes
                await stream.emit(Progress(
                    kind=KIND_CHUNK_REMOVED, path=descriptor.hash,
                    current_item_stats=Stats(storage_size=descriptor.chunk.encoded_size),
                    total_statistics=total.copy(),
                ))

            stream.check_cancelled()
            if len(copies) < len(manager.backends):
                result.orphan_sweep_skipped = True
                self.logger.warning("Backend injoignable, pièces orphelines conservées")
                listing = {}
            else:
                listing = await asyncio.to_thread(manager.list_pieces)

            for index, keys in listing.items():
                backend = manager.backends[index]
                for key in keys:
                    parsed = parse_piece_key(key)
                    if parsed is None or parsed[0] in self.chunks:
                        continue
                    try:
                        await asyncio.to_thread(backend.delete, key)
                        result.orphans_removed += 1
                    except CoffreException as e:
                        result.errors += 1
                        self.logger.warning(f"Pièce orpheline {key} non supprimée: {e}")
                        await stream.emit(Progress(kind=KIND_ERROR, path=key,
                                                   total_statistics=total.copy(), error=e))

            self.logger.info(f"Pack terminé: {result.chunks_removed} chunks, "
                             f"{result.orphans_removed} pièces orphelines, "
                             f"{size_to_string(result.freed_bytes)} libérés")
            return result

        return ProgressStream(producer, cancel=cancel, logger=self.logger,
                              config=self.config)

    async def pack_all(self, repository) -> PackResult:
        """Exécute ``pack`` jusqu'au bout et retourne le bilan."""
        stream = self.pack(repository)
        await stream.drain()
        return stream.result

    # ------------------------------------------------------------------
    # Persistance
    # ------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        return {
            'version': INDEX_VERSION,
            'chunks': [d.to_dict() for d in self.chunks.values()],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any],
                  logger: Optional[logging.Logger] = None,
                  config: Optional[Dict[str, Any]] = None) -> 'ChunkIndex':
        descriptors = [ChunkDescriptor.from_dict(d) for d in data.get('chunks', [])]
        return cls(descriptors, logger=logger, config=config)

    @classmethod
    def open(cls, repository, logger: Optional[logging.Logger] = None) -> 'ChunkIndex':
        """
        Charge l'index d'un dépôt; un index absent s'ouvre vide.

        Raises:
            AuthenticationError: Si l'index ne se déchiffre pas
        """
        logger = logger or repository.logger
        try:
            blob = repository.backend_manager.get_blob(INDEX_KEY)
        except NotFoundError:
            logger.info("Aucun index existant, création d'un index vide")
            return cls(logger=logger, config=repository.config)

        index = cls.from_dict(decode_json(blob, repository.data_key), logger=logger,
                              config=repository.config)
        logger.debug(f"Index chargé: {len(index)} chunks")
        return index

    def save(self, repository) -> None:
        """Écrit l'index (remplacement atomique sur chaque backend)."""
        blob = encode_json(self.to_dict(), repository.data_key)
        repository.backend_manager.put_blob(INDEX_KEY, blob)
        self.logger.debug(f"Index sauvegardé: {len(self)} chunks")
