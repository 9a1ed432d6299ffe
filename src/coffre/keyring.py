import os
import json
from typing import Dict, Any, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .config import COFFRE_CONFIG
from .exceptions import AuthenticationError, CorruptionError

ENVELOPE_VERSION = 1
ENVELOPE_ALGORITHM = 'AES-256-GCM'


def _kdf_config(config: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return (config or COFFRE_CONFIG)['KDF']


def generate_salt(size: Optional[int] = None,
                  config: Optional[Dict[str, Any]] = None) -> bytes:
    return os.urandom(size or _kdf_config(config)['SALT_BYTES'])


def generate_data_key() -> bytes:
    """Clé aléatoire qui chiffre l'index, les snapshots et les chunks."""
    return AESGCM.generate_key(bit_length=256)


def derive_key(password: str, salt: bytes, iterations: Optional[int] = None,
               config: Optional[Dict[str, Any]] = None) -> bytes:
    kdf_config = _kdf_config(config)
    iterations = iterations or kdf_config['ITERATIONS']
    kdf = PBKDF2HMAC(algorithm=hashes.SHA256(),
                     length=kdf_config['KEY_BYTES'],
                     salt=salt, iterations=iterations)
    return kdf.derive(password.encode('utf-8'))


def seal(payload: Dict[str, Any], password: str, iterations: Optional[int] = None,
         config: Optional[Dict[str, Any]] = None) -> bytes:
    """Scelle un document JSON avec une clé dérivée du mot de passe.

    L'enveloppe ne contient jamais le mot de passe: seulement le sel,
    le nombre d'itérations et le document chiffré (nonce + ciphertext).
    Le tag GCM sert de vérification du mot de passe à l'ouverture.
    """
    kdf_config = _kdf_config(config)
    iterations = iterations or kdf_config['ITERATIONS']
    salt = generate_salt(config=config)
    key = derive_key(password, salt, iterations, config=config)

    aesgcm = AESGCM(key)
    nonce = os.urandom(12)
    ct = aesgcm.encrypt(nonce, json.dumps(payload).encode('utf-8'), None)

    envelope = {
        'version': ENVELOPE_VERSION,
        'kdf': kdf_config['ALGORITHM'],
        'salt': salt.hex(),
        'iterations': iterations,
        'algorithm': ENVELOPE_ALGORITHM,
        'payload': (nonce + ct).hex(),
    }
    return json.dumps(envelope).encode('utf-8')


def read_envelope(blob: bytes) -> Dict[str, Any]:
    try:
        envelope = json.loads(blob.decode('utf-8'))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise CorruptionError(f'Invalid repository envelope: {e}') from e
    for field in ('salt', 'iterations', 'payload'):
        if field not in envelope:
            raise CorruptionError('Invalid repository envelope', {'missing': field})
    return envelope


def unseal(blob: bytes, password: str,
           config: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    envelope = read_envelope(blob)
    key = derive_key(password, bytes.fromhex(envelope['salt']), int(envelope['iterations']),
                     config=config)

    raw = bytes.fromhex(envelope['payload'])
    aesgcm = AESGCM(key)
    try:
        pt = aesgcm.decrypt(raw[:12], raw[12:], None)
    except InvalidTag as e:
        raise AuthenticationError('Wrong password') from e
    return json.loads(pt.decode('utf-8'))
