import os
import json
import gzip
import lzma
import zlib

import zstandard
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .exceptions import AuthenticationError, CorruptionError, UnsupportedAlgorithmError

COMPRESSION_NONE = 'none'
COMPRESSION_FLATE = 'flate'
COMPRESSION_GZIP = 'gzip'
COMPRESSION_LZMA = 'lzma'
COMPRESSION_ZLIB = 'zlib'
COMPRESSION_ZSTD = 'zstd'

ENCRYPTION_NONE = 'none'
ENCRYPTION_AES = 'aes'

COMPRESSIONS = (COMPRESSION_NONE, COMPRESSION_FLATE, COMPRESSION_GZIP,
                COMPRESSION_LZMA, COMPRESSION_ZLIB, COMPRESSION_ZSTD)
ENCRYPTIONS = (ENCRYPTION_NONE, ENCRYPTION_AES)

NONCE_SIZE = 12
KEY_SIZE = 32


def check_algorithms(compression: str, encryption: str) -> None:
    """Rejette un identifiant inconnu avant tout traitement."""
    if compression not in COMPRESSIONS:
        raise UnsupportedAlgorithmError('Unknown compression algorithm',
                                        algorithm=compression, kind='compression')
    if encryption not in ENCRYPTIONS:
        raise UnsupportedAlgorithmError('Unknown encryption algorithm',
                                        algorithm=encryption, kind='encryption')


def _ensure_key_bytes(key: bytes) -> bytes:
    if not key:
        raise AuthenticationError('Missing encryption key')
    if len(key) != KEY_SIZE:
        raise AuthenticationError(f'Key has wrong length ({len(key)} bytes), expected {KEY_SIZE} bytes')
    return key


def compress(data: bytes, algorithm: str) -> bytes:
    if algorithm == COMPRESSION_NONE:
        return data
    if algorithm == COMPRESSION_FLATE:
        c = zlib.compressobj(wbits=-15)
        return c.compress(data) + c.flush()
    if algorithm == COMPRESSION_GZIP:
        return gzip.compress(data, mtime=0)
    if algorithm == COMPRESSION_LZMA:
        return lzma.compress(data)
    if algorithm == COMPRESSION_ZLIB:
        return zlib.compress(data)
    if algorithm == COMPRESSION_ZSTD:
        return zstandard.ZstdCompressor(level=3).compress(data)
    raise UnsupportedAlgorithmError('Unknown compression algorithm',
                                    algorithm=algorithm, kind='compression')


def decompress(data: bytes, algorithm: str) -> bytes:
    if algorithm not in COMPRESSIONS:
        raise UnsupportedAlgorithmError('Unknown compression algorithm',
                                        algorithm=algorithm, kind='compression')
    try:
        if algorithm == COMPRESSION_NONE:
            return data
        if algorithm == COMPRESSION_FLATE:
            return zlib.decompress(data, wbits=-15)
        if algorithm == COMPRESSION_GZIP:
            return gzip.decompress(data)
        if algorithm == COMPRESSION_LZMA:
            return lzma.decompress(data)
        if algorithm == COMPRESSION_ZLIB:
            return zlib.decompress(data)
        # zstd: le frame contient la taille d'origine
        return zstandard.ZstdDecompressor().decompress(data)
    except (zlib.error, lzma.LZMAError, OSError, EOFError, zstandard.ZstdError) as e:
        raise CorruptionError(f'Failed to decompress payload: {e}', {'compression': algorithm}) from e


def encrypt(data: bytes, algorithm: str, key: bytes) -> bytes:
    """Chiffre un bloc.

    Format: nonce (12 bytes) + ciphertext (tag GCM inclus)
    """
    if algorithm == ENCRYPTION_NONE:
        return data
    if algorithm == ENCRYPTION_AES:
        aesgcm = AESGCM(_ensure_key_bytes(key))
        nonce = os.urandom(NONCE_SIZE)
        return nonce + aesgcm.encrypt(nonce, data, None)
    raise UnsupportedAlgorithmError('Unknown encryption algorithm',
                                    algorithm=algorithm, kind='encryption')


def decrypt(blob: bytes, algorithm: str, key: bytes) -> bytes:
    """Déchiffre un bloc créé par encrypt.

    Attend les 12 premiers octets comme nonce.
    """
    if algorithm == ENCRYPTION_NONE:
        return blob
    if algorithm != ENCRYPTION_AES:
        raise UnsupportedAlgorithmError('Unknown encryption algorithm',
                                        algorithm=algorithm, kind='encryption')
    if len(blob) < NONCE_SIZE:
        raise AuthenticationError('Invalid encrypted blob')
    aesgcm = AESGCM(_ensure_key_bytes(key))
    try:
        return aesgcm.decrypt(blob[:NONCE_SIZE], blob[NONCE_SIZE:], None)
    except InvalidTag as e:
        raise AuthenticationError('Decryption failed: wrong password or tampered data') from e


def encode(plaintext: bytes, compression: str, encryption: str, key: bytes = b'') -> bytes:
    """encode(pt) = encrypt(compress(pt))"""
    check_algorithms(compression, encryption)
    return encrypt(compress(plaintext, compression), encryption, key)


def decode(ciphertext: bytes, compression: str, encryption: str, key: bytes = b'') -> bytes:
    """decode(ct) = decompress(decrypt(ct))"""
    check_algorithms(compression, encryption)
    return decompress(decrypt(ciphertext, encryption, key), compression)


# Métadonnées (index, snapshots): toujours compressées et chiffrées
METADATA_COMPRESSION = COMPRESSION_ZLIB
METADATA_ENCRYPTION = ENCRYPTION_AES


def encode_json(document: dict, key: bytes) -> bytes:
    raw = json.dumps(document).encode('utf-8')
    return encode(raw, METADATA_COMPRESSION, METADATA_ENCRYPTION, key)


def decode_json(blob: bytes, key: bytes) -> dict:
    raw = decode(blob, METADATA_COMPRESSION, METADATA_ENCRYPTION, key)
    try:
        return json.loads(raw.decode('utf-8'))
    except (UnicodeDecodeError, ValueError) as e:
        raise CorruptionError(f'Invalid metadata document: {e}') from e
