"""
Opérations sur les archives: ajout (Add), décodage et lecture partielle.

``add`` parcourt des cibles du système de fichiers et construit les
archives d'un snapshot: chaque fichier est découpé, chaque chunk est
dédupliqué contre l'index, et seuls les nouveaux chunks sont compressés,
chiffrés puis écrits de façon redondante.

``decode_archive_data`` reconstruit le contenu complet d'une archive;
``read_archive`` n'en décode que les chunks qui recouvrent la plage
demandée (accès aléatoire, utilisé par un montage FUSE par exemple).

Example:
    >>> import asyncio
    >>> from coffre.archive import read_archive
    >>> data = asyncio.run(read_archive(repository, archive, 0, 4096))  # doctest: +SKIP
"""

import os
import time
import stat
import fnmatch
import asyncio
import logging
from typing import Iterator, List, Optional, Tuple

from . import crypto
from .chunker import chunk_file, chunk_sizes
from .exceptions import BackendError, CorruptionError, RedundancyError
from .models import (
    ARCHIVE_DIRECTORY, ARCHIVE_FILE, ARCHIVE_SYMLINK,
    Archive, Chunk, ChunkDescriptor, Stats, archive_stats, compute_chunk_hash
)
from .progress import (
    KIND_ARCHIVE, KIND_CHUNK, KIND_ERROR, KIND_ITEM, Progress, ProgressStream
)

logger = logging.getLogger(__name__)


def is_excluded(path: str, rel_path: str, excludes: List[str]) -> bool:
    """
    Teste un chemin contre les motifs d'exclusion (fnmatch).

    Le motif est comparé au chemin complet, au chemin relatif et au nom.

    Example:
        >>> is_excluded("/data/a/cache.tmp", "a/cache.tmp", ["*.tmp"])
        True
        >>> is_excluded("/data/a/notes.txt", "a/notes.txt", ["a/*.tmp"])
        False
    """
    name = os.path.basename(path)
    for pattern in excludes:
        if (fnmatch.fnmatch(path, pattern) or fnmatch.fnmatch(rel_path, pattern)
                or fnmatch.fnmatch(name, pattern)):
            return True
    return False


def _archive_path(path: str, root_dir: str) -> str:
    rel = os.path.relpath(path, root_dir)
    return rel.replace(os.sep, '/')


def walk_targets(root_dir: str, targets: List[str],
                 excludes: List[str]) -> Iterator[Tuple[str, Optional[OSError]]]:
    """
    Parcourt les cibles en profondeur, dans l'ordre des noms.

    Les liens symboliques ne sont pas suivis. Un répertoire illisible
    est produit avec son erreur et n'est pas parcouru.

    Yields:
        (chemin absolu, erreur éventuelle de listing)
    """
    for target in targets:
        path = target if os.path.isabs(target) else os.path.join(root_dir, target)
        path = os.path.normpath(path)
        stack = [path]
        while stack:
            current = stack.pop()
            if is_excluded(current, _archive_path(current, root_dir), excludes):
                logger.debug(f"Exclu: {current}")
                continue
            if os.path.isdir(current) and not os.path.islink(current):
                try:
                    names = sorted(os.listdir(current))
                except OSError as e:
                    yield current, e
                    continue
                yield current, None
                stack.extend(os.path.join(current, n) for n in reversed(names))
            else:
                yield current, None


def _read_entry(path: str, root_dir: str) -> Optional[Archive]:
    st = os.lstat(path)
    archive = Archive(
        path=_archive_path(path, root_dir),
        mode=st.st_mode,
        uid=st.st_uid,
        gid=st.st_gid,
        mod_time=int(st.st_mtime),
    )
    if stat.S_ISLNK(st.st_mode):
        archive.type = ARCHIVE_SYMLINK
        archive.points_to = os.readlink(path)
    elif stat.S_ISDIR(st.st_mode):
        archive.type = ARCHIVE_DIRECTORY
    elif stat.S_ISREG(st.st_mode):
        archive.type = ARCHIVE_FILE
        archive.size = st.st_size
    else:
        return None
    return archive


def add(snapshot, root_dir: str, targets: List[str], excludes: Optional[List[str]],
        repository, chunk_index, compression: Optional[str] = None,
        encryption: Optional[str] = None, total_pieces: Optional[int] = None,
        failure_tolerance: Optional[int] = None,
        cancel: Optional[asyncio.Event] = None) -> ProgressStream:
    """
    Ajoute des fichiers à un snapshot.

    Les erreurs de configuration (tolérance, algorithmes, tailles du
    chunker) sont levées immédiatement, avant le démarrage du flux.

    Une erreur de lecture d'une archive (permission refusée, fichier
    disparu) est publiée comme événement d'erreur et le parcours
    continue. Un échec d'écriture d'un chunk (RedundancyError,
    BackendError) est publié puis arrête l'opération.

    Args:
        snapshot: Snapshot en construction
        root_dir: Répertoire de référence des chemins d'archive
        targets: Fichiers ou répertoires à sauvegarder
        excludes: Motifs fnmatch à ignorer
        repository: Dépôt ouvert (backends, clé, configuration)
        chunk_index: Index de déduplication partagé
        compression: Algorithme de compression (défaut: configuration)
        encryption: Algorithme de chiffrement (défaut: configuration)
        total_pieces: Nombre de pièces M (défaut: nombre de backends)
        failure_tolerance: Nombre de backends perdables F
        cancel: Événement d'annulation optionnel

    Returns:
        ProgressStream dont ``result`` est le Stats de l'opération

    Raises:
        ConfigurationError: Si les paramètres sont incohérents
    """
    store_config = repository.config['STORE']
    compression = compression or store_config['COMPRESSION']
    encryption = encryption or store_config['ENCRYPTION']
    if failure_tolerance is None:
        failure_tolerance = store_config['TOLERANCE']
    excludes = list(store_config['EXCLUDES']) + list(excludes or [])

    crypto.check_algorithms(compression, encryption)
    manager = repository.backend_manager
    total, tolerance = manager.redundancy(total_pieces, failure_tolerance)
    sizes = chunk_sizes(repository.config)
    root_dir = os.path.abspath(root_dir)
    log = repository.logger

    async def write_chunk(data: bytes, chunk_hash: str) -> ChunkDescriptor:
        encoded = await asyncio.to_thread(
            crypto.encode, data, compression, encryption, repository.data_key
        )
        locations = await manager.store_chunk(chunk_hash, encoded, total, tolerance)
        chunk = Chunk(
            hash=chunk_hash,
            plain_size=len(data),
            encoded_size=len(encoded),
            total_pieces=total,
            required_pieces=total - tolerance,
            compression=compression,
            encryption=encryption,
        )
        return ChunkDescriptor(chunk=chunk, piece_locations=locations)

    async def store_file(stream: ProgressStream, path: str, archive: Archive,
                         item: Stats, totals: Stats, started: float) -> None:
        chunks = chunk_file(path, *sizes)
        while True:
            stream.check_cancelled()
            cdata = await asyncio.to_thread(next, chunks, None)
            if cdata is None:
                break

            async def write(cdata=cdata):
                return await write_chunk(cdata.data, cdata.hash)

            descriptor, is_new = await chunk_index.store(snapshot.id, cdata.hash, write)
            archive.chunks.append(descriptor.chunk)

            item.transferred += cdata.size
            totals.transferred += cdata.size
            if is_new:
                item.storage_size += descriptor.chunk.encoded_size
                totals.storage_size += descriptor.chunk.encoded_size

            await stream.emit(Progress(
                kind=KIND_CHUNK, path=archive.path,
                current_item_stats=item.copy(), total_statistics=totals.copy(),
                item_started=started,
            ))

        archive.size = item.transferred

    async def producer(stream: ProgressStream) -> Stats:
        totals = Stats()
        stream.result = totals
        log.info(f"Ajout au snapshot {snapshot.id}: {len(targets)} cible(s), "
                 f"compression={compression}, encryption={encryption}, "
                 f"pièces={total}, tolérance={tolerance}")
        try:
            for path, walk_error in walk_targets(root_dir, targets, excludes):
                stream.check_cancelled()
                rel_path = _archive_path(path, root_dir)
                started = time.monotonic()
                item = None

                try:
                    if walk_error is not None:
                        raise walk_error
                    archive = await asyncio.to_thread(_read_entry, path, root_dir)
                    if archive is None:
                        log.debug(f"Type de fichier non supporté ignoré: {path}")
                        continue

                    item = archive_stats(archive)
                    totals.add(item)
                    await stream.emit(Progress(
                        kind=KIND_ITEM, path=archive.path,
                        current_item_stats=item.copy(), total_statistics=totals.copy(),
                        item_started=started,
                    ))

                    if archive.type == ARCHIVE_FILE:
                        await store_file(stream, path, archive, item, totals, started)
                except OSError as e:
                    if item is not None:
                        totals.subtract(item)
                    totals.errors += 1
                    log.warning(f"Archive {rel_path} ignorée: {e}")
                    await stream.emit(Progress(
                        kind=KIND_ERROR, path=rel_path,
                        total_statistics=totals.copy(), error=e,
                    ))
                    continue
                except (RedundancyError, BackendError) as e:
                    totals.errors += 1
                    log.error(f"Écriture impossible pour {rel_path}: {e}")
                    await stream.emit(Progress(
                        kind=KIND_ERROR, path=rel_path,
                        total_statistics=totals.copy(), error=e,
                    ))
                    return totals

                snapshot.add_archive(archive, storage_size=item.storage_size)
                await stream.emit(Progress(
                    kind=KIND_ARCHIVE, path=archive.path,
                    current_item_stats=item.copy(), total_statistics=totals.copy(),
                    item_started=started,
                ))
        finally:
            chunk_index.reconcile_snapshot(snapshot)

        log.info(f"Snapshot {snapshot.id}: {totals}")
        return totals

    return ProgressStream(producer, cancel=cancel, logger=log, config=repository.config)


async def load_chunk_data(repository, chunk: Chunk) -> bytes:
    """
    Récupère, décode et vérifie un chunk.

    Raises:
        RedundancyError: Si trop de pièces sont indisponibles
        AuthenticationError: Si le déchiffrement échoue
        CorruptionError: Si le hash du contenu ne correspond pas
    """
    encoded = await repository.backend_manager.load_chunk(chunk)
    data = await asyncio.to_thread(
        crypto.decode, encoded, chunk.compression, chunk.encryption, repository.data_key
    )
    actual = compute_chunk_hash(data)
    if actual != chunk.hash:
        raise CorruptionError("Chunk hash mismatch", expected_hash=chunk.hash,
                              actual_hash=actual)
    return data


async def decode_archive_data(repository, archive: Archive) -> bytes:
    """
    Reconstruit le contenu complet d'une archive.

    Les répertoires et liens symboliques n'ont pas de contenu.

    Raises:
        CorruptionError: Si un chunk ou la taille totale est incohérent
    """
    if archive.type != ARCHIVE_FILE:
        return b""
    parts = []
    for chunk in archive.chunks:
        parts.append(await load_chunk_data(repository, chunk))
    data = b"".join(parts)
    if len(data) != archive.size:
        raise CorruptionError("Archive size mismatch",
                              {"path": archive.path, "expected": archive.size,
                               "actual": len(data)})
    return data


async def read_archive(repository, archive: Archive, offset: int, size: int) -> bytes:
    """
    Lit ``size`` octets à partir de ``offset``.

    Seuls les chunks qui recouvrent la plage sont récupérés et décodés.
    Une lecture à partir de la fin (ou au-delà) retourne ``b""``.

    Raises:
        ValueError: Si offset ou size est négatif
    """
    if offset < 0 or size < 0:
        raise ValueError(f"Invalid range: offset={offset}, size={size}")
    if archive.type != ARCHIVE_FILE or offset >= archive.size or size == 0:
        return b""

    end = min(offset + size, archive.size)
    parts = []
    chunk_start = 0
    for chunk in archive.chunks:
        chunk_end = chunk_start + chunk.plain_size
        if chunk_end > offset and chunk.plain_size:
            if chunk_start >= end:
                break
            data = await load_chunk_data(repository, chunk)
            parts.append(data[max(offset - chunk_start, 0):end - chunk_start])
        chunk_start = chunk_end
    return b"".join(parts)


async def cat(repository, snapshot, path: str) -> bytes:
    """Contenu d'une archive d'un snapshot, par chemin."""
    return await decode_archive_data(repository, snapshot.get_archive(path))
