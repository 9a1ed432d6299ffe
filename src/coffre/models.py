"""
Modèles de données du moteur de sauvegarde.

Ce module définit les dataclasses utilisées pour représenter les
chunks, leurs descripteurs dans l'index, les archives (entrées du
système de fichiers), les statistiques et les volumes.

Example:
    >>> from coffre.models import Chunk, Archive, ARCHIVE_FILE
    >>> chunk = Chunk(hash="ab" * 32, plain_size=10, encoded_size=38)
    >>> archive = Archive(path="notes.txt", type=ARCHIVE_FILE, size=10, chunks=[chunk])
    >>> archive.chunk_hashes() == ["ab" * 32]
    True
"""

import copy
import uuid
import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Dict, Any, Set


# Types d'archives
ARCHIVE_FILE = 'file'
ARCHIVE_DIRECTORY = 'directory'
ARCHIVE_SYMLINK = 'symlink'
ARCHIVE_TYPES = (ARCHIVE_FILE, ARCHIVE_DIRECTORY, ARCHIVE_SYMLINK)

_SIZE_UNITS = ['B', 'KiB', 'MiB', 'GiB', 'TiB', 'PiB']


def compute_chunk_hash(data: bytes) -> str:
    """
    Calcule le hash SHA-256 d'un chunk en clair.

    Args:
        data: Données du chunk

    Returns:
        Hash hexadécimal (64 caractères)

    Example:
        >>> compute_chunk_hash(b"hello")[:16]
        '2cf24dba5fb0a30e'
    """
    return hashlib.sha256(data).hexdigest()


def new_id() -> str:
    """Génère un identifiant court (8 caractères hexadécimaux)."""
    return uuid.uuid4().hex[:8]


def size_to_string(size: int) -> str:
    """
    Formate une taille en octets de façon lisible.

    Example:
        >>> size_to_string(512)
        '512 B'
        >>> size_to_string(10 * 1024 * 1024)
        '10.0 MiB'
    """
    value = float(size)
    for unit in _SIZE_UNITS:
        if value < 1024 or unit == _SIZE_UNITS[-1]:
            if unit == 'B':
                return f"{int(value)} B"
            return f"{value:.1f} {unit}"
        value /= 1024
    return f"{size} B"


@dataclass(frozen=True)
class Chunk:
    """
    Référence immuable vers un chunk stocké.

    L'identité d'un chunk est le hash de son contenu en clair: la
    déduplication est donc indépendante des algorithmes de compression
    et de chiffrement. Les algorithmes et le nombre de pièces sont
    enregistrés par chunk pour que les anciens chunks restent décodables
    après un changement de schéma.

    Attributes:
        hash: SHA-256 du contenu en clair
        plain_size: Taille en clair
        encoded_size: Taille après compression et chiffrement
        total_pieces: Nombre de pièces de redondance (M)
        required_pieces: Pièces nécessaires à la reconstruction (M - F)
        compression: Identifiant de compression
        encryption: Identifiant de chiffrement
    """
    hash: str
    plain_size: int
    encoded_size: int
    total_pieces: int = 1
    required_pieces: int = 1
    compression: str = 'none'
    encryption: str = 'none'

    def to_dict(self) -> Dict[str, Any]:
        """Convertit en dictionnaire pour sérialisation JSON."""
        return {
            'hash': self.hash,
            'plain_size': self.plain_size,
            'encoded_size': self.encoded_size,
            'total_pieces': self.total_pieces,
            'required_pieces': self.required_pieces,
            'compression': self.compression,
            'encryption': self.encryption,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Chunk':
        """Crée une instance depuis un dictionnaire."""
        return cls(
            hash=data['hash'],
            plain_size=data['plain_size'],
            encoded_size=data['encoded_size'],
            total_pieces=data.get('total_pieces', 1),
            required_pieces=data.get('required_pieces', 1),
            compression=data.get('compression', 'none'),
            encryption=data.get('encryption', 'none'),
        )


@dataclass(frozen=True)
class PieceLocation:
    """Emplacement d'une pièce: backend (localisation) et clé distante."""
    backend: str
    key: str

    def to_dict(self) -> Dict[str, Any]:
        return {'backend': self.backend, 'key': self.key}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PieceLocation':
        return cls(backend=data['backend'], key=data['key'])


@dataclass
class ChunkDescriptor:
    """
    Entrée de l'index de déduplication.

    Le compteur de références est le nombre de snapshots distincts
    qui utilisent ce chunk. Un descripteur sans référence est éligible
    à la suppression physique lors du pack.

    Attributes:
        chunk: Référence du chunk (hash, tailles, algorithmes, pièces)
        piece_locations: Emplacements ordonnés des pièces (une par backend)
        snapshots: Identifiants des snapshots qui référencent ce chunk

    Example:
        >>> desc = ChunkDescriptor(
        ...     chunk=Chunk(hash="ab" * 32, plain_size=4, encoded_size=4),
        ...     piece_locations=[PieceLocation("mem://a", "chunks/x.0")],
        ... )
        >>> desc.ref_count
        0
        >>> desc.snapshots.add("1a2b3c4d")
        >>> desc.ref_count
        1
    """
    chunk: Chunk
    piece_locations: List[PieceLocation] = field(default_factory=list)
    snapshots: Set[str] = field(default_factory=set)

    def __post_init__(self):
        """Vérifie la cohérence pièces / emplacements."""
        if self.piece_locations and len(self.piece_locations) != self.chunk.total_pieces:
            raise ValueError(
                f"Descriptor for {self.chunk.hash[:16]} has "
                f"{len(self.piece_locations)} locations for "
                f"{self.chunk.total_pieces} pieces"
            )

    @property
    def hash(self) -> str:
        return self.chunk.hash

    @property
    def total_pieces(self) -> int:
        return self.chunk.total_pieces

    @property
    def required_pieces(self) -> int:
        return self.chunk.required_pieces

    @property
    def ref_count(self) -> int:
        return len(self.snapshots)

    def to_dict(self) -> Dict[str, Any]:
        """Convertit en dictionnaire pour sérialisation JSON."""
        return {
            'chunk': self.chunk.to_dict(),
            'piece_locations': [p.to_dict() for p in self.piece_locations],
            'snapshots': sorted(self.snapshots),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ChunkDescriptor':
        """Crée une instance depuis un dictionnaire."""
        return cls(
            chunk=Chunk.from_dict(data['chunk']),
            piece_locations=[
                PieceLocation.from_dict(p) for p in data.get('piece_locations', [])
            ],
            snapshots=set(data.get('snapshots', [])),
        )


@dataclass
class Archive:
    """
    Une entrée du système de fichiers dans un snapshot.

    Pour un fichier, la somme des tailles en clair des chunks est égale
    à ``size``. Les répertoires et liens symboliques n'ont pas de chunks;
    un lien stocke sa cible dans ``points_to``.

    Attributes:
        path: Chemin relatif au répertoire racine du store
        type: 'file', 'directory' ou 'symlink'
        mode: Permissions (st_mode)
        uid: Propriétaire
        gid: Groupe
        size: Taille logique en octets
        mod_time: Date de modification (timestamp Unix)
        points_to: Cible d'un lien symbolique
        chunks: Chunks ordonnés composant le contenu
    """
    path: str
    type: str = ARCHIVE_FILE
    mode: int = 0
    uid: int = 0
    gid: int = 0
    size: int = 0
    mod_time: int = 0
    points_to: str = ""
    chunks: List[Chunk] = field(default_factory=list)

    def chunk_hashes(self) -> List[str]:
        """Retourne les hashes ordonnés des chunks."""
        return [c.hash for c in self.chunks]

    def is_consistent(self) -> bool:
        """Vérifie l'invariant taille == somme des chunks (fichiers)."""
        if self.type != ARCHIVE_FILE:
            return not self.chunks
        return sum(c.plain_size for c in self.chunks) == self.size

    def to_dict(self) -> Dict[str, Any]:
        """Convertit en dictionnaire pour sérialisation JSON."""
        return {
            'path': self.path,
            'type': self.type,
            'mode': self.mode,
            'uid': self.uid,
            'gid': self.gid,
            'size': self.size,
            'mod_time': self.mod_time,
            'points_to': self.points_to,
            'chunks': [c.to_dict() for c in self.chunks],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Archive':
        """Crée une instance depuis un dictionnaire."""
        return cls(
            path=data['path'],
            type=data.get('type', ARCHIVE_FILE),
            mode=data.get('mode', 0),
            uid=data.get('uid', 0),
            gid=data.get('gid', 0),
            size=data.get('size', 0),
            mod_time=data.get('mod_time', 0),
            points_to=data.get('points_to', ''),
            chunks=[Chunk.from_dict(c) for c in data.get('chunks', [])],
        )


@dataclass
class Stats:
    """
    Statistiques d'un snapshot ou d'une opération.

    ``size`` est la taille logique, ``storage_size`` la taille réellement
    écrite après déduplication et compression. Leur ratio est le gain
    affiché à l'utilisateur.
    """
    size: int = 0
    storage_size: int = 0
    files: int = 0
    dirs: int = 0
    symlinks: int = 0
    transferred: int = 0
    errors: int = 0

    def add(self, other: 'Stats') -> None:
        """Additionne les compteurs d'un autre objet Stats."""
        self.size += other.size
        self.storage_size += other.storage_size
        self.files += other.files
        self.dirs += other.dirs
        self.symlinks += other.symlinks
        self.transferred += other.transferred
        self.errors += other.errors

    def subtract(self, other: 'Stats') -> None:
        """Retire la contribution d'une archive remplacée."""
        self.size = max(0, self.size - other.size)
        self.storage_size = max(0, self.storage_size - other.storage_size)
        self.files = max(0, self.files - other.files)
        self.dirs = max(0, self.dirs - other.dirs)
        self.symlinks = max(0, self.symlinks - other.symlinks)

    def copy(self) -> 'Stats':
        return copy.copy(self)

    def __str__(self) -> str:
        return (
            f"{self.files} files, {self.dirs} dirs, {self.symlinks} symlinks, "
            f"{size_to_string(self.size)} original size, "
            f"{size_to_string(self.storage_size)} storage size"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'size': self.size,
            'storage_size': self.storage_size,
            'files': self.files,
            'dirs': self.dirs,
            'symlinks': self.symlinks,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Stats':
        return cls(
            size=data.get('size', 0),
            storage_size=data.get('storage_size', 0),
            files=data.get('files', 0),
            dirs=data.get('dirs', 0),
            symlinks=data.get('symlinks', 0),
        )


def archive_stats(archive: Archive) -> Stats:
    """
    Contribution d'une archive aux statistiques d'un snapshot.

    Example:
        >>> stats = archive_stats(Archive(path="d", type=ARCHIVE_DIRECTORY))
        >>> (stats.dirs, stats.files)
        (1, 0)
    """
    stats = Stats()
    if archive.type == ARCHIVE_FILE:
        stats.files = 1
        stats.size = archive.size
    elif archive.type == ARCHIVE_DIRECTORY:
        stats.dirs = 1
    elif archive.type == ARCHIVE_SYMLINK:
        stats.symlinks = 1
    return stats


def parse_date(value: Optional[str]) -> datetime:
    """Parse une date ISO 8601, ou retourne maintenant si absente."""
    if isinstance(value, str):
        return datetime.fromisoformat(value)
    return datetime.now(timezone.utc)
