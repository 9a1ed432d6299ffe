"""
Encodeur et décodeur Reed-Solomon systématique.

Ce module implémente un code d'effacement: les données sont divisées en
K shards de données auxquels on ajoute F shards de parité. N'importe
quels K shards parmi les K + F suffisent à reconstruire les données
d'origine.

Le calcul est délégué à ``reedsolo.RSCodec``: pour chaque position
d'octet, la colonne formée des K shards de données est encodée en un
mot de code de K + F octets. Au décodage, les shards absents sont
déclarés comme effacements (``erase_pos``).

Example:
    >>> from coffre.reed_solomon import ReedSolomonEncoder
    >>> encoder = ReedSolomonEncoder(data_shards=2, parity_shards=1)
    >>> shards = encoder.encode(b'Hello World!' * 100)
    >>> len(shards)
    3
    >>> encoder.decode({0: shards[0], 2: shards[2]}, 1200) == b'Hello World!' * 100
    True
"""

import logging
from typing import List, Dict, Optional

from reedsolo import RSCodec, ReedSolomonError

from .exceptions import ConfigurationError, CorruptionError, RedundancyError

# Taille maximale d'un mot de code dans GF(2^8)
GF_ORDER = 255


class ReedSolomonEncoder:
    """
    Code d'effacement systématique (K données + F parité).

    Les K premiers shards sont les données elles-mêmes (découpées et
    complétées par des zéros); les F suivants contiennent les octets de
    parité calculés colonne par colonne. La taille d'origine n'est pas
    stockée dans les shards: l'appelant la fournit au décodage.

    Avec F = 0, l'encodeur se contente de découper les données.

    Attributes:
        data_shards: Nombre de shards de données (K)
        parity_shards: Nombre de shards de parité (F)
        total_shards: K + F
        codec: Instance RSCodec de reedsolo (None si F = 0)
        logger: Logger pour le debug

    Example:
        >>> encoder = ReedSolomonEncoder(data_shards=4, parity_shards=2)
        >>> encoder.total_shards
        6
    """

    def __init__(self, data_shards: int, parity_shards: int,
                 logger: Optional[logging.Logger] = None):
        """
        Initialise l'encodeur.

        Args:
            data_shards: Nombre de shards de données (>= 1)
            parity_shards: Nombre de shards de parité (>= 0)
            logger: Logger optionnel

        Raises:
            ConfigurationError: Si les paramètres sont invalides
        """
        if data_shards < 1:
            raise ConfigurationError("Data shards must be at least 1", {"k": data_shards})
        if parity_shards < 0:
            raise ConfigurationError("Parity shards cannot be negative", {"f": parity_shards})
        if data_shards + parity_shards > GF_ORDER:
            raise ConfigurationError(
                "K + F cannot exceed 255 (Galois Field GF(2^8) limit)",
                {"k": data_shards, "f": parity_shards}
            )

        self.data_shards = data_shards
        self.parity_shards = parity_shards
        self.total_shards = data_shards + parity_shards
        self.logger = logger or logging.getLogger(__name__)

        # RSCodec(0) n'a pas de sens: F = 0 est un simple découpage
        self.codec = RSCodec(parity_shards) if parity_shards else None

    def shard_size(self, size: int) -> int:
        return (size + self.data_shards - 1) // self.data_shards

    def encode(self, data: bytes) -> List[bytes]:
        """
        Encode des données en K + F shards de même taille.

        Args:
            data: Données à encoder (peuvent être vides)

        Returns:
            Liste ordonnée des shards (données puis parité)
        """
        k = self.data_shards
        shard_size = self.shard_size(len(data))
        padded = bytes(data) + bytes(shard_size * k - len(data))

        shards = [padded[i * shard_size:(i + 1) * shard_size] for i in range(k)]
        if not self.parity_shards:
            return shards

        parity = [bytearray() for _ in range(self.parity_shards)]
        for column in zip(*shards):
            codeword = self.codec.encode(bytes(column))
            for j, byte in enumerate(codeword[k:]):
                parity[j].append(byte)

        self.logger.debug(
            f"Encodage RS: {k} data + {self.parity_shards} parity shards "
            f"de {shard_size} bytes"
        )
        return shards + [bytes(p) for p in parity]

    def decode(self, shards: Dict[int, bytes], size: int) -> bytes:
        """
        Reconstruit les données à partir d'au moins K shards.

        Args:
            shards: Dictionnaire {index: shard} des shards disponibles
            size: Taille d'origine des données

        Returns:
            Données d'origine (tronquées à ``size``)

        Raises:
            RedundancyError: Si moins de K shards sont disponibles
            CorruptionError: Si les shards sont incohérents
        """
        k = self.data_shards
        available = sorted(i for i in shards if 0 <= i < self.total_shards)
        if len(available) < k:
            raise RedundancyError(
                "Not enough shards to reconstruct data",
                available_pieces=len(available),
                required_pieces=k,
                missing_indices=[i for i in range(self.total_shards) if i not in shards],
            )

        shard_size = self.shard_size(size)
        if any(len(shards[i]) != shard_size for i in available):
            raise CorruptionError(
                "Shard size mismatch",
                {"expected": shard_size, "sizes": sorted({len(shards[i]) for i in available})}
            )

        # Cas rapide: tous les shards de données sont présents
        if all(i in shards for i in range(k)):
            return b"".join(shards[i] for i in range(k))[:size]

        erasures = [i for i in range(self.total_shards) if i not in available]
        self.logger.debug(f"Reconstruction RS, shards effacés: {erasures}")

        empty = bytes(shard_size)
        columns = zip(*(shards[i] if i in available else empty
                        for i in range(self.total_shards)))

        data = [bytearray() for _ in range(k)]
        try:
            for column in columns:
                decoded, _, _ = self.codec.decode(bytes(column), erase_pos=erasures,
                                                 only_erasures=True)
                for i, byte in enumerate(decoded):
                    data[i].append(byte)
        except ReedSolomonError as e:
            raise CorruptionError("Reed-Solomon decoding failed",
                                  {"erasures": erasures, "error": str(e)}) from e

        return b"".join(bytes(d) for d in data)[:size]
