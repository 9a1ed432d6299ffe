"""
Exceptions personnalisées pour le moteur de sauvegarde coffre.

Ce module définit la hiérarchie d'exceptions du moteur: erreurs de
configuration, éléments introuvables, échecs d'authentification,
corruption, redondance insuffisante et erreurs de transport.

Example:
    >>> from coffre.exceptions import RedundancyError
    >>> raise RedundancyError("Not enough pieces", available_pieces=1, required_pieces=2)
    Traceback (most recent call last):
    ...
    coffre.exceptions.RedundancyError: Not enough pieces [available=1, required=2]
"""

from typing import Optional, List, Dict, Any


class CoffreException(Exception):
    """
    Exception de base pour toutes les erreurs du moteur.

    Toutes les exceptions spécifiques héritent de cette classe,
    permettant de capturer toutes les erreurs du moteur avec un seul except.

    Attributes:
        message: Message d'erreur descriptif
        details: Dictionnaire avec des informations supplémentaires

    Example:
        >>> try:
        ...     raise CoffreException("Something went wrong", {"volume": "abc"})
        ... except CoffreException as e:
        ...     print(e.message)
        Something went wrong
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        """
        Initialise l'exception.

        Args:
            message: Message d'erreur
            details: Informations supplémentaires optionnelles
        """
        self.message = message
        self.details = details or {}
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        """Formate le message avec les détails."""
        if self.details:
            details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} [{details_str}]"
        return self.message


class ConfigurationError(CoffreException):
    """
    Erreur de configuration.

    Levée quand les paramètres demandés sont incohérents: tolérance
    supérieure ou égale au nombre de backends, tailles de chunker
    invalides, schéma d'URL inconnu.

    Example:
        >>> raise ConfigurationError(
        ...     "Failure tolerance must be lower than the number of backends",
        ...     {"backends": 2, "tolerance": 2}
        ... )  # doctest: +IGNORE_EXCEPTION_DETAIL
        Traceback (most recent call last):
        ...
        ConfigurationError: Failure tolerance must be lower than the number of backends [...]
    """
    pass


class UnsupportedAlgorithmError(ConfigurationError):
    """
    Identifiant d'algorithme inconnu (compression ou chiffrement).

    Le pipeline échoue immédiatement plutôt que de laisser passer
    les données sans transformation.

    Attributes:
        algorithm: Identifiant rejeté
        kind: 'compression' ou 'encryption'
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None,
                 algorithm: Optional[str] = None, kind: Optional[str] = None):
        self.algorithm = algorithm
        self.kind = kind
        details = details or {}
        if algorithm is not None and 'algorithm' not in details:
            details['algorithm'] = algorithm
        if kind and 'kind' not in details:
            details['kind'] = kind
        super().__init__(message, details)


class NotFoundError(CoffreException):
    """
    Élément introuvable: volume, snapshot, archive, chunk ou clé backend.

    Attributes:
        item_id: Identifiant recherché
        kind: Type d'élément ('volume', 'snapshot', 'chunk', ...)

    Example:
        >>> raise NotFoundError(
        ...     "Snapshot not found", item_id="1a2b", kind="snapshot"
        ... )  # doctest: +IGNORE_EXCEPTION_DETAIL
        Traceback (most recent call last):
        ...
        NotFoundError: Snapshot not found [kind=snapshot, id=1a2b]
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None,
                 item_id: Optional[str] = None, kind: Optional[str] = None):
        self.item_id = item_id
        self.kind = kind
        details = details or {}
        if kind and 'kind' not in details:
            details['kind'] = kind
        if item_id is not None and 'id' not in details:
            details['id'] = item_id
        super().__init__(message, details)


class AmbiguousIdError(NotFoundError):
    """
    Préfixe d'identifiant correspondant à plusieurs éléments.

    Attributes:
        candidates: Identifiants correspondant au préfixe
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None,
                 item_id: Optional[str] = None, kind: Optional[str] = None,
                 candidates: Optional[List[str]] = None):
        self.candidates = candidates or []
        details = details or {}
        details['matches'] = len(self.candidates)
        super().__init__(message, details, item_id=item_id, kind=kind)


class AuthenticationError(CoffreException):
    """
    Échec d'authentification: mot de passe incorrect ou données chiffrées
    altérées (tag AES-GCM invalide).

    Fatal pour l'archive ou le dépôt concerné.
    """
    pass


class CorruptionError(CoffreException):
    """
    Données reconstruites incohérentes.

    Levée quand le hash d'un chunk décodé ne correspond pas au hash
    attendu, ou quand un payload compressé ne peut pas être décodé.

    Attributes:
        expected_hash: Hash attendu
        actual_hash: Hash calculé

    Example:
        >>> raise CorruptionError(
        ...     "Hash mismatch",
        ...     expected_hash="abc", actual_hash="def"
        ... )  # doctest: +IGNORE_EXCEPTION_DETAIL
        Traceback (most recent call last):
        ...
        CorruptionError: Hash mismatch [expected=abc, actual=def]
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None,
                 expected_hash: Optional[str] = None, actual_hash: Optional[str] = None):
        self.expected_hash = expected_hash
        self.actual_hash = actual_hash
        details = details or {}
        if expected_hash and 'expected' not in details:
            details['expected'] = expected_hash
        if actual_hash and 'actual' not in details:
            details['actual'] = actual_hash
        super().__init__(message, details)


class RedundancyError(CoffreException):
    """
    Pas assez de pièces pour écrire ou reconstruire un chunk.

    Levée quand moins de M - F pièces sont confirmées à l'écriture
    ou récupérables à la lecture.

    Attributes:
        chunk_hash: Hash du chunk concerné
        available_pieces: Nombre de pièces disponibles
        required_pieces: Nombre minimum requis (M - F)
        missing_indices: Indices des pièces manquantes
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None,
                 chunk_hash: Optional[str] = None, available_pieces: int = 0,
                 required_pieces: int = 0, missing_indices: Optional[List[int]] = None):
        self.chunk_hash = chunk_hash
        self.available_pieces = available_pieces
        self.required_pieces = required_pieces
        self.missing_indices = missing_indices or []
        details = details or {}
        details['available'] = available_pieces
        details['required'] = required_pieces
        if chunk_hash and 'chunk' not in details:
            details['chunk'] = chunk_hash[:16]
        super().__init__(message, details)


class BackendError(CoffreException):
    """
    Erreur de transport d'un backend (put/get/delete/list).

    Attributes:
        location: Localisation du backend
        key: Clé distante concernée
        operation: Opération tentée ('put', 'get', 'delete', 'list')
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None,
                 location: Optional[str] = None, key: Optional[str] = None,
                 operation: Optional[str] = None):
        self.location = location
        self.key = key
        self.operation = operation
        details = details or {}
        if location and 'location' not in details:
            details['location'] = location
        if key and 'key' not in details:
            details['key'] = key
        if operation and 'operation' not in details:
            details['operation'] = operation
        super().__init__(message, details)


class CancellationSignal(CoffreException):
    """
    Interruption coopérative d'une opération longue.

    Ce n'est pas un échec: les chunks déjà persistés restent valides
    et l'état en cours n'est simplement pas sauvegardé.
    """
    pass
