"""
Dépôt de sauvegarde.

Le dépôt regroupe les volumes, la liste ordonnée des backends et la clé
de données aléatoire qui chiffre l'index, les snapshots et les chunks.
Ce document est scellé avec une clé dérivée du mot de passe (PBKDF2)
et écrit sous la clé ``repository`` de chaque backend. Changer le mot
de passe ne re-scelle que ce document: les données restent lisibles.

Example:
    >>> from coffre.repository import Repository
    >>> repo = Repository.create("mem://doctest-repo", "secret")  # doctest: +SKIP
    >>> repo = Repository.open("mem://doctest-repo", "secret")  # doctest: +SKIP
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from . import keyring
from .backend_mgr import BackendManager
from .backends import backend_from_url
from .chunk_index import ChunkIndex
from .config import COFFRE_CONFIG
from .exceptions import AmbiguousIdError, ConfigurationError, NotFoundError
from .models import size_to_string
from .snapshot import Snapshot
from .volume import Volume

REPOSITORY_KEY = 'repository'
REPOSITORY_VERSION = 1


def find_by_prefix(ids: List[str], wanted: str, kind: str) -> str:
    """
    Résout un identifiant exact ou un préfixe non ambigu.

    Raises:
        NotFoundError: Aucun identifiant ne correspond
        AmbiguousIdError: Plusieurs identifiants correspondent au préfixe

    Example:
        >>> find_by_prefix(["1a2b3c4d", "9f8e7d6c"], "1a", "volume")
        '1a2b3c4d'
    """
    if wanted in ids:
        return wanted
    matches = [i for i in ids if wanted and i.startswith(wanted)]
    if not matches:
        raise NotFoundError(f"{kind.capitalize()} not found", item_id=wanted, kind=kind)
    if len(matches) > 1:
        raise AmbiguousIdError(f"Ambiguous {kind} id", item_id=wanted, kind=kind,
                               candidates=sorted(matches))
    return matches[0]


class Repository:
    """
    Dépôt ouvert.

    Attributes:
        volumes: Volumes du dépôt
        backend_manager: Backends ordonnés et politique de redondance
        data_key: Clé de données (AES-256)
        version: Version du format
        logger: Logger pour le debug
        config: Configuration du moteur
    """

    def __init__(self, backend_manager: BackendManager, data_key: bytes, password: str,
                 volumes: Optional[List[Volume]] = None,
                 logger: Optional[logging.Logger] = None,
                 config: Optional[Dict[str, Any]] = None,
                 version: int = REPOSITORY_VERSION):
        self.backend_manager = backend_manager
        self.data_key = data_key
        self.volumes: List[Volume] = list(volumes or [])
        self.version = version
        self.logger = logger or logging.getLogger(__name__)
        self.config = config or COFFRE_CONFIG
        self._password = password
        self._removed_snapshots: List[str] = []

    # ------------------------------------------------------------------
    # Création / ouverture
    # ------------------------------------------------------------------

    @classmethod
    def create(cls, url: str, password: str,
               logger: Optional[logging.Logger] = None,
               config: Optional[Dict[str, Any]] = None) -> 'Repository':
        """
        Crée un dépôt sur un premier backend.

        Raises:
            ConfigurationError: Si un dépôt existe déjà à cette URL
        """
        logger = logger or logging.getLogger(__name__)
        backend = backend_from_url(url)
        backend.init_repository()
        try:
            backend.get(REPOSITORY_KEY)
        except NotFoundError:
            pass
        else:
            raise ConfigurationError("Repository already exists", {"url": url})

        manager = BackendManager([backend], logger=logger)
        repository = cls(manager, keyring.generate_data_key(), password,
                         logger=logger, config=config)
        repository.save()
        logger.info(f"Dépôt créé sur {backend.location()}")
        return repository

    @classmethod
    def open(cls, url: str, password: str,
             logger: Optional[logging.Logger] = None,
             config: Optional[Dict[str, Any]] = None) -> 'Repository':
        """
        Ouvre un dépôt existant.

        Raises:
            NotFoundError: Si aucun dépôt n'existe à cette URL
            AuthenticationError: Si le mot de passe est incorrect
        """
        logger = logger or logging.getLogger(__name__)
        backend = backend_from_url(url)
        try:
            blob = backend.get(REPOSITORY_KEY)
        except NotFoundError as e:
            raise NotFoundError("Repository not found", item_id=url,
                                kind='repository') from e

        document = keyring.unseal(blob, password, config=config)
        urls = document.get('backends') or [backend.location()]
        manager = BackendManager.from_urls(urls, logger=logger)

        repository = cls(
            manager,
            bytes.fromhex(document['key']),
            password,
            volumes=[Volume.from_dict(v) for v in document.get('volumes', [])],
            logger=logger,
            config=config,
            version=document.get('version', REPOSITORY_VERSION),
        )
        logger.info(f"Dépôt ouvert: {len(repository.volumes)} volume(s), "
                    f"{len(manager.backends)} backend(s)")
        return repository

    def _document(self) -> Dict[str, Any]:
        document = self.to_dict()
        document['key'] = self.data_key.hex()
        return document

    def save(self) -> None:
        """
        Scelle et écrit le document du dépôt sur tous les backends.

        Les documents des snapshots retirés depuis la dernière
        sauvegarde sont effacés après l'écriture.

        Raises:
            BackendError: Si un backend refuse l'écriture
        """
        blob = keyring.seal(self._document(), self._password,
                            iterations=self.config['KDF']['ITERATIONS'], config=self.config)
        self.backend_manager.put_blob(REPOSITORY_KEY, blob)
        while self._removed_snapshots:
            Snapshot.delete(self, self._removed_snapshots.pop())
        self.logger.debug("Dépôt sauvegardé")

    def change_password(self, new_password: str) -> None:
        """Re-scelle le dépôt avec un nouveau mot de passe."""
        previous = self._password
        self._password = new_password
        try:
            self.save()
        except Exception:
            self._password = previous
            raise
        self.logger.info("Mot de passe du dépôt changé")

    def open_index(self) -> ChunkIndex:
        return ChunkIndex.open(self, logger=self.logger)

    # ------------------------------------------------------------------
    # Volumes, snapshots, backends
    # ------------------------------------------------------------------

    def add_volume(self, volume: Volume) -> Volume:
        self.volumes.append(volume)
        self.logger.info(f"Volume {volume.id} ({volume.name}) ajouté")
        return volume

    def add_backend(self, url: str):
        """Ajoute un backend; les chunks existants ne sont pas ré-encodés."""
        return self.backend_manager.add_backend(url)

    def find_volume(self, volume_id: str) -> Volume:
        wanted = find_by_prefix([v.id for v in self.volumes], volume_id, 'volume')
        return next(v for v in self.volumes if v.id == wanted)

    def find_snapshot(self, snapshot_id: str) -> Tuple[Volume, Snapshot]:
        owners = {}
        for volume in self.volumes:
            for sid in volume.snapshots:
                owners[sid] = volume
        wanted = find_by_prefix(list(owners), snapshot_id, 'snapshot')
        volume = owners[wanted]
        return volume, volume.load_snapshot(wanted, self)

    def remove_snapshot(self, snapshot_id: str, chunk_index: ChunkIndex) -> Snapshot:
        """
        Retire un snapshot de son volume et de l'index.

        Aucune donnée n'est libérée: il faut lancer ``pack`` ensuite.
        L'appelant sauvegarde l'index et le dépôt; le document chiffré
        du snapshot n'est effacé qu'une fois le dépôt sauvegardé.
        """
        volume, snapshot = self.find_snapshot(snapshot_id)
        volume.remove_snapshot(snapshot.id, chunk_index)
        self._removed_snapshots.append(snapshot.id)
        self.logger.info(f"Snapshot {snapshot.id} supprimé: {snapshot.stats}")
        return snapshot

    # ------------------------------------------------------------------
    # Rapports
    # ------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        """Document du dépôt, sans la clé de données."""
        return {
            'version': self.version,
            'volumes': [v.to_dict() for v in self.volumes],
            'backends': self.backend_manager.locations(),
        }

    def info(self) -> List[Dict[str, Any]]:
        """Localisation et espace disponible de chaque backend."""
        rows = []
        for location, space in self.backend_manager.available_space().items():
            rows.append({
                'location': location,
                'available_space': space,
                'available': size_to_string(space) if space is not None else 'unknown',
            })
        return rows
