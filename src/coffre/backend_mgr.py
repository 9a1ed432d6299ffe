"""
Gestionnaire des backends et de la redondance.

Ce module distribue chaque chunk encodé sur M backends de façon à ce
que la perte de F d'entre eux ne fasse perdre aucune donnée:

- M - F == 1: réplication, chaque pièce est une copie complète
- sinon: code d'effacement Reed-Solomon, K = M - F pièces de données
  et F pièces de parité

La pièce i d'un chunk est toujours stockée sur le backend i, sous la
clé ``chunks/<hash>.<i>``. Les métadonnées (dépôt, index, snapshots)
sont écrites en entier sur tous les backends.

Example:
    >>> import asyncio
    >>> from coffre.backends import MemoryBackend
    >>> from coffre.backend_mgr import BackendManager
    >>> mgr = BackendManager([MemoryBackend("a"), MemoryBackend("b"), MemoryBackend("c")])
    >>> pieces = mgr.encode(b"x" * 100, total_pieces=3, failure_tolerance=1)
    >>> mgr.decode({0: pieces[0], 2: pieces[2]}, 3, 2, 100) == b"x" * 100
    True
"""

import asyncio
import logging
from typing import List, Dict, Optional, Tuple, Union

from .backends import Backend, backend_from_url
from .exceptions import (
    BackendError, ConfigurationError, NotFoundError, RedundancyError
)
from .models import Chunk, PieceLocation
from .reed_solomon import ReedSolomonEncoder

CHUNK_PREFIX = 'chunks/'


def piece_key(chunk_hash: str, index: int) -> str:
    """
    Clé distante d'une pièce.

    Example:
        >>> piece_key("ab12", 2)
        'chunks/ab12.2'
    """
    return f"{CHUNK_PREFIX}{chunk_hash}.{index}"


def parse_piece_key(key: str) -> Optional[Tuple[str, int]]:
    """Retourne (hash, index) pour une clé de pièce, None sinon."""
    if not key.startswith(CHUNK_PREFIX):
        return None
    name = key[len(CHUNK_PREFIX):]
    chunk_hash, _, index = name.rpartition('.')
    if not chunk_hash or not index.isdigit():
        return None
    return chunk_hash, int(index)


class BackendManager:
    """
    Ensemble ordonné de backends et politique de redondance.

    Attributes:
        backends: Backends ordonnés (l'ordre fixe la pièce de chacun)
        logger: Logger pour le debug
    """

    def __init__(self, backends: Optional[List[Backend]] = None,
                 logger: Optional[logging.Logger] = None):
        self.backends: List[Backend] = list(backends or [])
        self.logger = logger or logging.getLogger(__name__)

    @classmethod
    def from_urls(cls, urls: List[str],
                  logger: Optional[logging.Logger] = None) -> 'BackendManager':
        return cls([backend_from_url(url) for url in urls], logger=logger)

    # ------------------------------------------------------------------
    # Backends
    # ------------------------------------------------------------------

    def add_backend(self, backend: Union[str, Backend]) -> Backend:
        """
        Ajoute un backend (par URL ou instance) en fin de liste.

        Le backend est initialisé (opération idempotente). Les chunks
        existants ne sont pas ré-encodés: seuls les nouveaux chunks
        peuvent utiliser le backend ajouté.
        """
        if isinstance(backend, str):
            backend = backend_from_url(backend)
        backend.init_repository()
        self.backends.append(backend)
        self.logger.info(f"Backend ajouté: {backend.location()} "
                         f"({len(self.backends)} au total)")
        return backend

    def locations(self) -> List[str]:
        return [b.location() for b in self.backends]

    def protocols(self) -> List[str]:
        protocols = []
        for backend in self.backends:
            for protocol in backend.protocols():
                if protocol not in protocols:
                    protocols.append(protocol)
        return protocols

    def available_space(self) -> Dict[str, Optional[int]]:
        """Espace disponible par backend (None si indisponible)."""
        spaces = {}
        for backend in self.backends:
            try:
                spaces[backend.location()] = backend.available_space()
            except BackendError as e:
                self.logger.warning(f"Espace indisponible pour {backend.location()}: {e}")
                spaces[backend.location()] = None
        return spaces

    # ------------------------------------------------------------------
    # Redondance
    # ------------------------------------------------------------------

    def redundancy(self, total_pieces: Optional[int] = None,
                   failure_tolerance: int = 0) -> Tuple[int, int]:
        """
        Valide et résout les paramètres (M, F).

        M vaut par défaut le nombre de backends.

        Raises:
            ConfigurationError: Si M > nombre de backends ou M - F <= 0
        """
        if not self.backends:
            raise ConfigurationError("Repository has no backend")
        total = len(self.backends) if total_pieces is None else total_pieces
        if total < 1 or total > len(self.backends):
            raise ConfigurationError(
                "Total pieces must be between 1 and the number of backends",
                {"pieces": total, "backends": len(self.backends)}
            )
        if failure_tolerance < 0:
            raise ConfigurationError("Failure tolerance cannot be negative",
                                     {"tolerance": failure_tolerance})
        if total - failure_tolerance <= 0:
            raise ConfigurationError(
                "Failure tolerance must be lower than the number of backends",
                {"backends": total, "tolerance": failure_tolerance}
            )
        return total, failure_tolerance

    def encode(self, data: bytes, total_pieces: Optional[int] = None,
               failure_tolerance: int = 0) -> List[bytes]:
        """
        Découpe des données encodées en M pièces.

        N'importe quelles M - F pièces permettent de les reconstruire.
        """
        total, tolerance = self.redundancy(total_pieces, failure_tolerance)
        required = total - tolerance
        if required == 1:
            return [bytes(data)] * total
        return ReedSolomonEncoder(required, tolerance, logger=self.logger).encode(data)

    def decode(self, pieces: Dict[int, bytes], total_pieces: int,
               required_pieces: int, size: int) -> bytes:
        """
        Reconstruit les données depuis les pièces disponibles.

        Raises:
            RedundancyError: Si moins de ``required_pieces`` sont disponibles
        """
        available = [i for i in sorted(pieces) if 0 <= i < total_pieces]
        if len(available) < required_pieces:
            raise RedundancyError(
                "Not enough pieces to reconstruct chunk",
                available_pieces=len(available),
                required_pieces=required_pieces,
                missing_indices=[i for i in range(total_pieces) if i not in pieces],
            )
        if required_pieces == 1:
            return pieces[available[0]][:size]
        encoder = ReedSolomonEncoder(required_pieces, total_pieces - required_pieces,
                                     logger=self.logger)
        return encoder.decode({i: pieces[i] for i in available}, size)

    # ------------------------------------------------------------------
    # Chunks
    # ------------------------------------------------------------------

    async def _put(self, index: int, key: str, data: bytes) -> None:
        await asyncio.to_thread(self.backends[index].put, key, data)

    async def _get(self, index: int, key: str) -> bytes:
        return await asyncio.to_thread(self.backends[index].get, key)

    async def store_chunk(self, chunk_hash: str, data: bytes,
                          total_pieces: Optional[int] = None,
                          failure_tolerance: int = 0) -> List[PieceLocation]:
        """
        Écrit les M pièces d'un chunk en parallèle.

        Le chunk est durable dès que M - F écritures ont réussi; les
        échecs tolérés sont loggés en warning.

        Returns:
            Emplacements ordonnés des M pièces

        Raises:
            RedundancyError: Si moins de M - F écritures ont réussi
        """
        total, tolerance = self.redundancy(total_pieces, failure_tolerance)
        pieces = await asyncio.to_thread(self.encode, data, total, tolerance)
        keys = [piece_key(chunk_hash, i) for i in range(total)]

        results = await asyncio.gather(
            *(self._put(i, keys[i], pieces[i]) for i in range(total)),
            return_exceptions=True
        )

        failed = []
        for i, result in enumerate(results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                failed.append(i)
                self.logger.warning(
                    f"Écriture de la pièce {i} de {chunk_hash[:16]} sur "
                    f"{self.backends[i].location()} échouée: {result}"
                )

        written = total - len(failed)
        if written < total - tolerance:
            self.logger.error(f"Chunk {chunk_hash[:16]}: {written}/{total} pièces écrites")
            raise RedundancyError(
                "Not enough pieces written",
                chunk_hash=chunk_hash,
                available_pieces=written,
                required_pieces=total - tolerance,
                missing_indices=failed,
            )

        self.logger.debug(f"Chunk {chunk_hash[:16]} écrit en {total} pièces "
                          f"({len(failed)} échecs tolérés)")
        return [PieceLocation(self.backends[i].location(), keys[i]) for i in range(total)]

    async def _fetch(self, chunk_hash: str, indices: List[int]) -> Dict[int, bytes]:
        indices = [i for i in indices if i < len(self.backends)]
        results = await asyncio.gather(
            *(self._get(i, piece_key(chunk_hash, i)) for i in indices),
            return_exceptions=True
        )
        pieces = {}
        for i, result in zip(indices, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                self.logger.warning(
                    f"Lecture de la pièce {i} de {chunk_hash[:16]} échouée: {result}"
                )
                continue
            pieces[i] = result
        return pieces

    async def load_chunk(self, chunk: Chunk) -> bytes:
        """
        Récupère et reconstruit les données encodées d'un chunk.

        Les pièces de données sont demandées en premier; les autres
        pièces ne sont lues que si certaines manquent.

        Raises:
            RedundancyError: Si trop de pièces sont indisponibles
        """
        required = chunk.required_pieces
        first = list(range(required))
        pieces = await self._fetch(chunk.hash, first)

        if len(pieces) < required:
            rest = [i for i in range(chunk.total_pieces) if i not in first]
            pieces.update(await self._fetch(chunk.hash, rest))

        try:
            return self.decode(pieces, chunk.total_pieces, required, chunk.encoded_size)
        except RedundancyError as e:
            e.chunk_hash = chunk.hash
            self.logger.error(f"Chunk {chunk.hash[:16]} irrécupérable: "
                              f"{len(pieces)}/{required} pièces")
            raise

    async def delete_chunk(self, chunk_hash: str, total_pieces: int) -> List[Exception]:
        """
        Supprime toutes les pièces d'un chunk.

        Returns:
            Erreurs rencontrées (une suppression échouée n'arrête pas les autres)
        """
        indices = [i for i in range(total_pieces) if i < len(self.backends)]
        results = await asyncio.gather(
            *(asyncio.to_thread(self.backends[i].delete, piece_key(chunk_hash, i))
              for i in indices),
            return_exceptions=True
        )
        errors = []
        for i, result in zip(indices, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                self.logger.warning(f"Suppression de la pièce {i} de "
                                    f"{chunk_hash[:16]} échouée: {result}")
                errors.append(result)
        return errors

    def list_pieces(self) -> Dict[int, List[str]]:
        """Clés de pièces présentes sur chaque backend joignable."""
        listing = {}
        for i, backend in enumerate(self.backends):
            try:
                listing[i] = backend.list(CHUNK_PREFIX)
            except Exception as e:
                self.logger.warning(f"Listing impossible sur {backend.location()}: {e}")
        return listing

    # ------------------------------------------------------------------
    # Métadonnées
    # ------------------------------------------------------------------

    def put_blob(self, key: str, data: bytes) -> int:
        """
        Écrit une métadonnée sur tous les backends.

        L'écriture n'est validée que si chaque backend l'accepte: une
        copie ancienne laissée sur un backend pourrait sinon être relue
        plus tard comme la version courante.

        Returns:
            Nombre de backends ayant accepté l'écriture

        Raises:
            BackendError: Si au moins un backend a refusé l'écriture
        """
        written = 0
        failed = []
        last_error = None
        for backend in self.backends:
            try:
                backend.put(key, data)
                written += 1
            except Exception as e:
                last_error = e
                failed.append(backend.location())
                self.logger.warning(f"Écriture de {key} sur {backend.location()} échouée: {e}")
        if failed:
            self.logger.error(f"Métadonnée {key} écrite sur {written}/{len(self.backends)} "
                              f"backends seulement")
            raise BackendError("Metadata write not accepted by every backend",
                               {"failed": failed}, key=key,
                               operation='put') from last_error
        return written

    def blob_copies(self, key: str) -> Dict[int, Optional[bytes]]:
        """
        Lit la copie d'une métadonnée sur chaque backend.

        Returns:
            {index du backend: contenu, ou None si la clé est absente};
            les backends injoignables sont omis
        """
        copies = {}
        for i, backend in enumerate(self.backends):
            try:
                copies[i] = backend.get(key)
            except NotFoundError:
                copies[i] = None
            except Exception as e:
                self.logger.warning(f"Lecture de {key} sur {backend.location()} échouée: {e}")
        return copies

    def get_blob(self, key: str) -> bytes:
        """
        Lit une métadonnée depuis le premier backend qui la possède.

        Raises:
            NotFoundError: Si aucun backend ne possède la clé
            BackendError: Si la clé est introuvable et qu'un backend a échoué
        """
        last_error = None
        for backend in self.backends:
            try:
                return backend.get(key)
            except NotFoundError:
                continue
            except Exception as e:
                last_error = e
                self.logger.warning(f"Lecture de {key} sur {backend.location()} échouée: {e}")
        if last_error is not None:
            raise BackendError("No backend could provide the key", key=key,
                               operation='get') from last_error
        raise NotFoundError("Key not found on any backend", item_id=key, kind='key')

    def delete_blob(self, key: str) -> None:
        for backend in self.backends:
            try:
                backend.delete(key)
            except Exception as e:
                self.logger.warning(f"Suppression de {key} sur {backend.location()} échouée: {e}")
