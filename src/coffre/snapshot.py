"""
Snapshots: ensemble d'archives à un instant donné.

Un snapshot est construit par ``add`` ou par ``clone``, modifié
uniquement pendant sa construction, puis sauvegardé chiffré sous la clé
``snapshots/<id>``.

Example:
    >>> from coffre.snapshot import Snapshot
    >>> from coffre.models import Archive, ARCHIVE_DIRECTORY
    >>> snap = Snapshot.create("nightly")
    >>> snap.add_archive(Archive(path="docs", type=ARCHIVE_DIRECTORY))
    >>> snap.stats.dirs
    1
"""

import copy
import stat
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from . import archive as archive_ops
from .crypto import decode_json, encode_json
from .exceptions import NotFoundError
from .models import Archive, Stats, archive_stats, new_id, parse_date, size_to_string
from .progress import ProgressStream

SNAPSHOT_PREFIX = 'snapshots/'

logger = logging.getLogger(__name__)


def snapshot_key(snapshot_id: str) -> str:
    return f"{SNAPSHOT_PREFIX}{snapshot_id}"


@dataclass
class Snapshot:
    """
    Snapshot d'un volume.

    Attributes:
        id: Identifiant court
        description: Description libre
        date: Date de création (UTC)
        stats: Statistiques cumulées des archives
        archives: Archives par chemin
    """
    id: str = field(default_factory=new_id)
    description: str = ""
    date: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    stats: Stats = field(default_factory=Stats)
    archives: Dict[str, Archive] = field(default_factory=dict)

    @classmethod
    def create(cls, description: str = "") -> 'Snapshot':
        return cls(description=description)

    def add_archive(self, archive: Archive, storage_size: int = 0) -> None:
        """
        Ajoute (ou remplace) une archive et met à jour les statistiques.

        Une archive remplacée voit sa contribution retirée des stats.
        """
        previous = self.archives.get(archive.path)
        if previous is not None:
            self.stats.subtract(archive_stats(previous))
        self.archives[archive.path] = archive
        self.stats.add(archive_stats(archive))
        self.stats.storage_size += storage_size

    def add(self, root_dir: str, targets: List[str], excludes: Optional[List[str]],
            repository, chunk_index, compression: Optional[str] = None,
            encryption: Optional[str] = None, total_pieces: Optional[int] = None,
            failure_tolerance: Optional[int] = None,
            cancel: Optional[asyncio.Event] = None) -> ProgressStream:
        """Ajoute des fichiers au snapshot (voir ``coffre.archive.add``)."""
        return archive_ops.add(
            self, root_dir, targets, excludes, repository, chunk_index,
            compression=compression, encryption=encryption,
            total_pieces=total_pieces, failure_tolerance=failure_tolerance,
            cancel=cancel,
        )

    def clone(self, chunk_index=None) -> 'Snapshot':
        """
        Copie indépendante du snapshot, avec un nouvel identifiant.

        Les références de l'index sont incrémentées pour tous les chunks
        du clone; aucune donnée n'est relue ni réécrite.
        """
        cloned = Snapshot(
            description=self.description,
            stats=self.stats.copy(),
            archives=copy.deepcopy(self.archives),
        )
        if chunk_index is not None:
            chunk_index.add_snapshot(cloned)
        logger.info(f"Snapshot {self.id} cloné en {cloned.id}")
        return cloned

    def get_archive(self, path: str) -> Archive:
        archive = self.archives.get(path)
        if archive is None:
            raise NotFoundError("Archive not found", item_id=path, kind='archive')
        return archive

    def list_archives(self) -> List[Archive]:
        return [self.archives[p] for p in sorted(self.archives)]

    def chunk_hashes(self) -> List[str]:
        """Hashes distincts référencés par le snapshot, dans l'ordre des archives."""
        seen = {}
        for archive in self.list_archives():
            for chunk_hash in archive.chunk_hashes():
                seen.setdefault(chunk_hash, None)
        return list(seen)

    def listing(self) -> List[Dict[str, Any]]:
        """Lignes de type ``ls`` (permissions, propriétaire, taille, date, chemin)."""
        rows = []
        for archive in self.list_archives():
            mod_time = datetime.fromtimestamp(archive.mod_time, timezone.utc)
            rows.append({
                'mode': stat.filemode(archive.mode) if archive.mode else '----------',
                'uid': archive.uid,
                'gid': archive.gid,
                'size': size_to_string(archive.size),
                'mod_time': mod_time.strftime('%Y-%m-%d %H:%M:%S'),
                'path': archive.path,
            })
        return rows

    def __str__(self) -> str:
        return f"Snapshot {self.id} ({self.description}): {self.stats}"

    # ------------------------------------------------------------------
    # Persistance
    # ------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'description': self.description,
            'date': self.date.isoformat(),
            'stats': self.stats.to_dict(),
            'archives': [a.to_dict() for a in self.list_archives()],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Snapshot':
        archives = [Archive.from_dict(a) for a in data.get('archives', [])]
        return cls(
            id=data['id'],
            description=data.get('description', ''),
            date=parse_date(data.get('date')),
            stats=Stats.from_dict(data.get('stats', {})),
            archives={a.path: a for a in archives},
        )

    def save(self, repository) -> None:
        blob = encode_json(self.to_dict(), repository.data_key)
        repository.backend_manager.put_blob(snapshot_key(self.id), blob)
        repository.logger.debug(f"Snapshot {self.id} sauvegardé ({len(self.archives)} archives)")

    @classmethod
    def load(cls, repository, snapshot_id: str) -> 'Snapshot':
        """
        Charge un snapshot.

        Raises:
            NotFoundError: Si le snapshot n'existe sur aucun backend
        """
        try:
            blob = repository.backend_manager.get_blob(snapshot_key(snapshot_id))
        except NotFoundError as e:
            raise NotFoundError("Snapshot not found", item_id=snapshot_id,
                                kind='snapshot') from e
        return cls.from_dict(decode_json(blob, repository.data_key))

    @staticmethod
    def delete(repository, snapshot_id: str) -> None:
        repository.backend_manager.delete_blob(snapshot_key(snapshot_id))
