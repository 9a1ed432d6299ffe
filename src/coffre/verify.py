"""
Vérification de l'intégrité des données sauvegardées.

Un échantillon des archives (fichiers) est entièrement reconstruit:
récupération des pièces, décodage de la redondance, déchiffrement,
décompression puis contrôle du hash de chaque chunk et de la taille
totale. Aucune réparation n'est tentée.

L'échantillon est tiré avec un générateur pseudo-aléatoire initialisé
à partir des identités des archives: pour un même ensemble d'archives,
la même vérification porte sur les mêmes fichiers.

Example:
    >>> from coffre.verify import sample_size
    >>> sample_size(10, 70)
    7
    >>> sample_size(3, 50)
    2
"""

import math
import random
import asyncio
import hashlib
import logging
from typing import List, Optional, Tuple

from .archive import decode_archive_data
from .exceptions import CoffreException, ConfigurationError
from .models import ARCHIVE_FILE, Archive, Stats
from .progress import KIND_ARCHIVE, KIND_ERROR, KIND_ITEM, Progress, ProgressStream
from .snapshot import Snapshot

logger = logging.getLogger(__name__)


def check_percentage(percentage: Optional[int], config) -> int:
    if percentage is None:
        percentage = config['VERIFY']['PERCENTAGE']
    if not 0 <= percentage <= 100:
        raise ConfigurationError("Percentage must be between 0 and 100",
                                 {"percentage": percentage})
    return percentage


def sample_size(total: int, percentage: int) -> int:
    return math.ceil(total * percentage / 100)


def sample_archives(snapshots: List[Snapshot],
                    percentage: int) -> List[Tuple[Snapshot, Archive]]:
    """
    Tire ``ceil(n * percentage / 100)`` archives de fichiers.

    Returns:
        Couples (snapshot, archive) triés par identité
    """
    candidates = []
    for snapshot in snapshots:
        for archive in snapshot.list_archives():
            if archive.type == ARCHIVE_FILE:
                candidates.append((snapshot, archive))
    candidates.sort(key=lambda item: (item[0].id, item[1].path))

    identities = "\n".join(f"{s.id}:{a.path}" for s, a in candidates)
    seed = int(hashlib.sha256(identities.encode('utf-8')).hexdigest()[:16], 16)
    rng = random.Random(seed)

    chosen = rng.sample(range(len(candidates)), sample_size(len(candidates), percentage))
    return [candidates[i] for i in sorted(chosen)]


def _verify(repository, snapshots: List[Snapshot], percentage: int,
            cancel: Optional[asyncio.Event] = None) -> ProgressStream:
    log = repository.logger
    sample = sample_archives(snapshots, percentage)

    async def producer(stream: ProgressStream) -> Stats:
        totals = Stats()
        stream.result = totals
        log.info(f"Vérification de {len(sample)} archive(s) ({percentage}%)")

        for snapshot, archive in sample:
            stream.check_cancelled()
            path = f"{snapshot.id}:{archive.path}"
            item = Stats(size=archive.size, files=1)
            totals.size += archive.size
            await stream.emit(Progress(kind=KIND_ITEM, path=path,
                                       current_item_stats=item.copy(),
                                       total_statistics=totals.copy()))
            try:
                data = await decode_archive_data(repository, archive)
            except CoffreException as e:
                totals.errors += 1
                log.error(f"Vérification échouée pour {path}: {e}")
                await stream.emit(Progress(kind=KIND_ERROR, path=path,
                                           current_item_stats=item.copy(),
                                           total_statistics=totals.copy(), error=e))
                continue

            item.transferred = len(data)
            totals.transferred += len(data)
            totals.files += 1
            await stream.emit(Progress(kind=KIND_ARCHIVE, path=path,
                                       current_item_stats=item.copy(),
                                       total_statistics=totals.copy()))

        log.info(f"Vérification terminée: {stream.error_count} erreur(s)")
        return totals

    return ProgressStream(producer, cancel=cancel, logger=log, config=repository.config)


def verify_repo(repository, percentage: Optional[int] = None,
                cancel: Optional[asyncio.Event] = None) -> ProgressStream:
    """Vérifie un échantillon des archives de tout le dépôt."""
    percentage = check_percentage(percentage, repository.config)
    snapshots = [
        volume.load_snapshot(snapshot_id, repository)
        for volume in repository.volumes
        for snapshot_id in volume.snapshots
    ]
    return _verify(repository, snapshots, percentage, cancel)


def verify_volume(repository, volume_id: str, percentage: Optional[int] = None,
                  cancel: Optional[asyncio.Event] = None) -> ProgressStream:
    """
    Vérifie un échantillon des archives d'un volume.

    Raises:
        NotFoundError: Si le volume est introuvable
    """
    percentage = check_percentage(percentage, repository.config)
    volume = repository.find_volume(volume_id)
    snapshots = [volume.load_snapshot(sid, repository) for sid in volume.snapshots]
    return _verify(repository, snapshots, percentage, cancel)


def verify_snapshot(repository, snapshot_id: str, percentage: Optional[int] = None,
                    cancel: Optional[asyncio.Event] = None) -> ProgressStream:
    """
    Vérifie un échantillon des archives d'un snapshot.

    Raises:
        NotFoundError: Si le snapshot est introuvable
    """
    percentage = check_percentage(percentage, repository.config)
    _volume, snapshot = repository.find_snapshot(snapshot_id)
    return _verify(repository, [snapshot], percentage, cancel)
