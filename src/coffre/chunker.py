"""
Découpage des données en chunks définis par le contenu (CDC).

Les frontières sont calculées avec FastCDC: une modification locale
d'un fichier ne perturbe que les chunks voisins, ce qui préserve la
déduplication entre deux versions d'un même fichier.

Example:
    >>> from coffre.chunker import chunk_bytes
    >>> chunks = list(chunk_bytes(b"x" * 5000, min_size=256, avg_size=1024, max_size=4096))
    >>> sum(c.size for c in chunks)
    5000
"""

import os
import logging
from dataclasses import dataclass
from typing import BinaryIO, Iterator, Optional, Dict, Any, Tuple

from fastcdc import fastcdc

from .config import COFFRE_CONFIG
from .exceptions import ConfigurationError
from .models import compute_chunk_hash

logger = logging.getLogger(__name__)

# Bornes acceptées par FastCDC
_FASTCDC_MIN_FLOOR = 64
_FASTCDC_AVG_FLOOR = 256
_FASTCDC_MAX_FLOOR = 1024

# Une fenêtre de lecture couvre plusieurs chunks de taille maximale
_STREAM_WINDOW_FACTOR = 4


@dataclass
class ChunkData:
    """
    Un chunk produit par le chunker, avant stockage.

    Attributes:
        index: Position du chunk dans le fichier
        offset: Décalage du premier octet dans le fichier
        data: Contenu en clair
        hash: SHA-256 du contenu
    """
    index: int
    offset: int
    data: bytes
    hash: str

    @property
    def size(self) -> int:
        return len(self.data)


def chunk_sizes(config: Optional[Dict[str, Any]] = None,
                min_size: Optional[int] = None,
                avg_size: Optional[int] = None,
                max_size: Optional[int] = None) -> Tuple[int, int, int]:
    """
    Résout et valide les tailles (min, avg, max) du chunker.

    Raises:
        ConfigurationError: Si min <= avg <= max n'est pas respecté
    """
    chunker = (config or COFFRE_CONFIG)['CHUNKER']
    min_size = min_size if min_size is not None else chunker['MIN_SIZE']
    avg_size = avg_size if avg_size is not None else chunker['AVG_SIZE']
    max_size = max_size if max_size is not None else chunker['MAX_SIZE']

    if not (min_size <= avg_size <= max_size):
        raise ConfigurationError(
            "Chunk sizes must satisfy min <= avg <= max",
            {"min": min_size, "avg": avg_size, "max": max_size}
        )
    if (min_size < _FASTCDC_MIN_FLOOR or avg_size < _FASTCDC_AVG_FLOOR
            or max_size < _FASTCDC_MAX_FLOOR):
        raise ConfigurationError(
            "Chunk sizes below FastCDC limits",
            {"min": min_size, "avg": avg_size, "max": max_size}
        )
    return min_size, avg_size, max_size


def _iter_chunks(source, min_size: int, avg_size: int, max_size: int) -> Iterator[ChunkData]:
    for index, cdc_chunk in enumerate(
        fastcdc(source, min_size=min_size, avg_size=avg_size, max_size=max_size, fat=True)
    ):
        data = bytes(cdc_chunk.data)
        yield ChunkData(
            index=index,
            offset=cdc_chunk.offset,
            data=data,
            hash=compute_chunk_hash(data),
        )


def _empty_chunk() -> ChunkData:
    return ChunkData(index=0, offset=0, data=b"", hash=compute_chunk_hash(b""))


def chunk_bytes(data: bytes,
                min_size: Optional[int] = None,
                avg_size: Optional[int] = None,
                max_size: Optional[int] = None,
                config: Optional[Dict[str, Any]] = None) -> Iterator[ChunkData]:
    """
    Découpe un buffer en chunks.

    Une entrée vide produit exactement un chunk vide.

    Args:
        data: Données à découper
        min_size: Taille minimale (sauf dernier chunk)
        avg_size: Taille moyenne visée
        max_size: Taille maximale

    Yields:
        ChunkData dans l'ordre du flux
    """
    sizes = chunk_sizes(config, min_size, avg_size, max_size)
    if not data:
        yield _empty_chunk()
        return
    yield from _iter_chunks(bytes(data), *sizes)


def chunk_file(path: str,
               min_size: Optional[int] = None,
               avg_size: Optional[int] = None,
               max_size: Optional[int] = None,
               config: Optional[Dict[str, Any]] = None) -> Iterator[ChunkData]:
    """
    Découpe un fichier en chunks, paresseusement.

    Le générateur lit le fichier au fil de l'eau; pour recommencer,
    il suffit de rappeler la fonction.

    Raises:
        FileNotFoundError: Si le fichier n'existe pas
    """
    sizes = chunk_sizes(config, min_size, avg_size, max_size)
    path = os.fspath(path)
    if not os.path.exists(path):
        raise FileNotFoundError(f"File not found: {path}")

    if os.path.getsize(path) == 0:
        yield _empty_chunk()
        return

    logger.debug(f"Découpage de {path} (min={sizes[0]}, avg={sizes[1]}, max={sizes[2]})")
    yield from _iter_chunks(path, *sizes)


def chunk_stream(stream: BinaryIO,
                 min_size: Optional[int] = None,
                 avg_size: Optional[int] = None,
                 max_size: Optional[int] = None,
                 config: Optional[Dict[str, Any]] = None) -> Iterator[ChunkData]:
    """
    Découpe un flux binaire ouvert (fichier, pipe, socket, BytesIO).

    Le flux est lu par fenêtres bornées, sans ``fileno`` ni mmap: seul
    ``read`` est utilisé. Le dernier chunk d'une fenêtre est recalculé
    avec la fenêtre suivante, si bien que les frontières sont les mêmes
    que pour ``chunk_bytes`` sur le contenu complet. Le flux n'est pas
    refermé; un flux vide produit exactement un chunk vide.

    Example:
        >>> import io
        >>> [c.size for c in chunk_stream(io.BytesIO(b""))]
        [0]
    """
    sizes = chunk_sizes(config, min_size, avg_size, max_size)
    window = _STREAM_WINDOW_FACTOR * sizes[2]

    buffer = b""
    base = 0
    index = 0
    eof = False
    while not eof:
        while len(buffer) < window:
            data = stream.read(window - len(buffer))
            if not data:
                eof = True
                break
            buffer += data
        if not buffer:
            break

        chunks = list(_iter_chunks(buffer, *sizes))
        # Le dernier chunk peut avoir été coupé par la fin de fenêtre
        keep = chunks if eof else chunks[:-1]
        for chunk in keep:
            yield ChunkData(index=index, offset=base + chunk.offset,
                            data=chunk.data, hash=chunk.hash)
            index += 1
        consumed = sum(c.size for c in keep)
        buffer = buffer[consumed:]
        base += consumed

    if index == 0:
        yield _empty_chunk()
