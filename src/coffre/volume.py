"""
Volumes: séries nommées de snapshots.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .exceptions import NotFoundError
from .models import new_id, size_to_string
from .snapshot import Snapshot

logger = logging.getLogger(__name__)


@dataclass
class Volume:
    """
    Volume d'un dépôt.

    Attributes:
        id: Identifiant court
        name: Nom du volume
        description: Description libre
        snapshots: Identifiants des snapshots, dans l'ordre de création
    """
    id: str = field(default_factory=new_id)
    name: str = ""
    description: str = ""
    snapshots: List[str] = field(default_factory=list)

    @classmethod
    def create(cls, name: str, description: str = "") -> 'Volume':
        return cls(name=name, description=description)

    def add_snapshot(self, snapshot_id: str) -> None:
        if snapshot_id not in self.snapshots:
            self.snapshots.append(snapshot_id)

    def remove_snapshot(self, snapshot_id: str, chunk_index=None) -> int:
        """
        Retire un snapshot du volume et ses références de l'index.

        Les chunks libérés restent stockés jusqu'au prochain pack.

        Returns:
            Nombre de chunks devenus sans référence

        Raises:
            NotFoundError: Si le snapshot n'appartient pas au volume
        """
        if snapshot_id not in self.snapshots:
            raise NotFoundError("Snapshot not found in volume", item_id=snapshot_id,
                                kind='snapshot')
        self.snapshots.remove(snapshot_id)
        released = 0
        if chunk_index is not None:
            released = chunk_index.remove_snapshot(snapshot_id)
        logger.info(f"Snapshot {snapshot_id} retiré du volume {self.id}")
        return released

    def load_snapshot(self, snapshot_id: str, repository) -> Snapshot:
        if snapshot_id not in self.snapshots:
            raise NotFoundError("Snapshot not found in volume", item_id=snapshot_id,
                                kind='snapshot')
        return Snapshot.load(repository, snapshot_id)

    def list_snapshots(self, repository) -> List[Dict[str, Any]]:
        """Lignes (id, date, tailles, description), dans l'ordre du volume."""
        rows = []
        for snapshot_id in self.snapshots:
            snapshot = self.load_snapshot(snapshot_id, repository)
            rows.append({
                'id': snapshot.id,
                'date': snapshot.date.strftime('%Y-%m-%d %H:%M:%S'),
                'size': size_to_string(snapshot.stats.size),
                'storage_size': size_to_string(snapshot.stats.storage_size),
                'description': snapshot.description,
            })
        return rows

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'snapshots': list(self.snapshots),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Volume':
        return cls(
            id=data['id'],
            name=data.get('name', ''),
            description=data.get('description', ''),
            snapshots=list(data.get('snapshots', [])),
        )
