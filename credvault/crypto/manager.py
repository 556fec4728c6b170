import os
import logging

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from credvault.core.exceptions import CryptoError

logger = logging.getLogger(__name__)

NONCE_SIZE = 12
TAG_SIZE = 16


class EncryptionManager:
    """
    Cifrado simétrico AES-256-GCM del cuerpo de la credencial.
    El blob almacenado tiene el layout `nonce(12) || ciphertext || tag(16)`.
    La llave es de solo lectura durante la vida del proceso.
    """

    def __init__(self, key: bytes):
        if len(key) != 32:
            raise CryptoError("Encryption key must be 32 bytes")
        self._key = key

    def seal(self, plaintext: bytes) -> bytes:
        # 1. Nonce aleatorio por mensaje (GCM recomienda 12 bytes)
        nonce = os.urandom(NONCE_SIZE)
        try:
            encryptor = Cipher(algorithms.AES(self._key), modes.GCM(nonce)).encryptor()
            ciphertext = encryptor.update(plaintext) + encryptor.finalize()
        except Exception as e:
            logger.error(f"❌ Fallo de cifrado: {type(e).__name__}")
            raise CryptoError("Encryption failed") from e

        # 2. Empaquetar: nonce || ciphertext || tag
        return nonce + ciphertext + encryptor.tag

    def unseal(self, blob: bytes) -> bytes:
        if len(blob) < NONCE_SIZE + TAG_SIZE:
            raise CryptoError("Encrypted blob is truncated")

        nonce = blob[:NONCE_SIZE]
        tag = blob[-TAG_SIZE:]
        ciphertext = blob[NONCE_SIZE:-TAG_SIZE]
        try:
            decryptor = Cipher(algorithms.AES(self._key), modes.GCM(nonce, tag)).decryptor()
            return decryptor.update(ciphertext) + decryptor.finalize()
        except InvalidTag as e:
            logger.critical("🛡️ Tag GCM inválido: blob alterado o llave incorrecta")
            raise CryptoError("Encrypted blob failed authentication") from e
