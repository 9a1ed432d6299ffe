"""
Configuration globale du moteur de sauvegarde coffre.

Ce module contient toutes les constantes et paramètres configurables
pour le découpage (content-defined chunking), la redondance entre
backends, la dérivation de clé et les flux de progression.

Example:
    >>> from coffre.config import COFFRE_CONFIG
    >>> COFFRE_CONFIG['STORE']['COMPRESSION']
    'none'
    >>> COFFRE_CONFIG['VERIFY']['PERCENTAGE']
    70
"""

import os
import sys
import logging
from typing import Dict, Any, Optional

# Logger pour ce module
logger = logging.getLogger(__name__)


def _get_env_int(key: str, default: int) -> int:
    """
    Récupère une variable d'environnement comme entier.

    Args:
        key: Nom de la variable d'environnement
        default: Valeur par défaut si non définie

    Returns:
        Valeur entière de la variable ou default

    Example:
        >>> import os
        >>> os.environ['TEST_VAR'] = '42'
        >>> _get_env_int('TEST_VAR', 10)
        42
        >>> _get_env_int('NONEXISTENT', 10)
        10
    """
    value = os.environ.get(key)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning(f"Variable d'environnement {key}={value} n'est pas un entier, "
                       f"utilisation de la valeur par défaut {default}")
        return default


def _get_env_str(key: str, default: str) -> str:
    """Récupère une variable d'environnement comme string."""
    return os.environ.get(key, default)


def _get_env_list(key: str, default: Optional[list] = None) -> list:
    """
    Récupère une liste séparée par des virgules.

    Example:
        >>> import os
        >>> os.environ['TEST_LIST'] = '*.tmp, .cache'
        >>> _get_env_list('TEST_LIST')
        ['*.tmp', '.cache']
    """
    value = os.environ.get(key)
    if not value:
        return list(default or [])
    return [item.strip() for item in value.split(',') if item.strip()]


# ============================================================================
# CONFIGURATION PRINCIPALE
# ============================================================================

# Paramètres du chunker (FastCDC)
_CHUNK_MIN_SIZE = _get_env_int('COFFRE_CHUNK_MIN_SIZE', 256 * 1024)
_CHUNK_AVG_SIZE = _get_env_int('COFFRE_CHUNK_AVG_SIZE', 1024 * 1024)
_CHUNK_MAX_SIZE = _get_env_int('COFFRE_CHUNK_MAX_SIZE', 4 * 1024 * 1024)

# Options par défaut de la commande store
_STORE_COMPRESSION = _get_env_str('COFFRE_COMPRESSION', 'none')
_STORE_ENCRYPTION = _get_env_str('COFFRE_ENCRYPTION', 'aes')
_STORE_TOLERANCE = _get_env_int('COFFRE_TOLERANCE', 0)
_STORE_EXCLUDES = _get_env_list('COFFRE_EXCLUDES')

# Dérivation de clé
_KDF_ITERATIONS = _get_env_int('COFFRE_KDF_ITERATIONS', 200000)

# Flux de progression
_PROGRESS_QUEUE_SIZE = _get_env_int('COFFRE_PROGRESS_QUEUE_SIZE', 64)

# Vérification
_VERIFY_PERCENTAGE = _get_env_int('COFFRE_VERIFY_PERCENTAGE', 70)


# Configuration complète exportée
COFFRE_CONFIG: Dict[str, Any] = {
    # === Chunker ===
    'CHUNKER': {
        'MIN_SIZE': _CHUNK_MIN_SIZE,
        'AVG_SIZE': _CHUNK_AVG_SIZE,
        'MAX_SIZE': _CHUNK_MAX_SIZE,
    },

    # === Store ===
    'STORE': {
        'COMPRESSION': _STORE_COMPRESSION,
        'ENCRYPTION': _STORE_ENCRYPTION,
        'TOLERANCE': _STORE_TOLERANCE,
        'EXCLUDES': _STORE_EXCLUDES,
    },

    # === Dérivation de clé ===
    'KDF': {
        'ALGORITHM': 'pbkdf2',
        'ITERATIONS': _KDF_ITERATIONS,
        'SALT_BYTES': 16,
        'KEY_BYTES': 32,
    },

    # === Index de chunks ===
    'INDEX': {
        'LOCK_SHARDS': 64,
    },

    # === Progression ===
    'PROGRESS': {
        'QUEUE_SIZE': _PROGRESS_QUEUE_SIZE,
    },

    # === Vérification ===
    'VERIFY': {
        'PERCENTAGE': _VERIFY_PERCENTAGE,
    },

    # === Algorithmes ===
    'ALGORITHMS': {
        'COMPRESSION': ['none', 'flate', 'gzip', 'lzma', 'zlib', 'zstd'],
        'ENCRYPTION': ['none', 'aes'],
        'HASH': 'sha256',
    },
}


def get_config() -> Dict[str, Any]:
    """
    Retourne la configuration complète du moteur.

    Returns:
        Dictionnaire de configuration

    Example:
        >>> config = get_config()
        >>> config['KDF']['ALGORITHM']
        'pbkdf2'
    """
    return COFFRE_CONFIG.copy()


# Niveaux de verbosité hérités de la CLI (debug, info, warning)
VERBOSITY_LEVELS = {
    'debug': logging.DEBUG,
    'info': logging.INFO,
    'warning': logging.WARNING,
}


def setup_logging(verbosity: str = 'warning',
                  stream=None) -> logging.Logger:
    """
    Configure le logger racine du package ``coffre``.

    Args:
        verbosity: 'debug', 'info' ou 'warning'
        stream: Flux de sortie (défaut: sys.stderr)

    Returns:
        Logger ``coffre`` configuré

    Example:
        >>> log = setup_logging('info')
        >>> log.level == logging.INFO
        True
    """
    level = VERBOSITY_LEVELS.get(verbosity.lower())
    if level is None:
        raise ValueError(f"Unknown verbosity: {verbosity}")

    root = logging.getLogger('coffre')
    root.setLevel(level)

    if not root.handlers:
        handler = logging.StreamHandler(stream or sys.stderr)
        handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        ))
        root.addHandler(handler)

    for handler in root.handlers:
        handler.setLevel(level)

    return root


def log_config(config: Optional[Dict[str, Any]] = None) -> None:
    """
    Log la configuration active pour le debug.
    """
    config = config or COFFRE_CONFIG
    chunker = config['CHUNKER']
    store = config['STORE']
    logger.info("=== Configuration coffre ===")
    logger.info(f"Chunker: min={chunker['MIN_SIZE']} avg={chunker['AVG_SIZE']} "
                f"max={chunker['MAX_SIZE']}")
    logger.info(f"Store: compression={store['COMPRESSION']}, "
                f"encryption={store['ENCRYPTION']}, tolerance={store['TOLERANCE']}")
    logger.info(f"KDF: {config['KDF']['ALGORITHM']} "
                f"({config['KDF']['ITERATIONS']} itérations)")
    logger.info(f"Vérification: {config['VERIFY']['PERCENTAGE']}% des archives")
    logger.info("============================")
