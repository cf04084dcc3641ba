import base64
import logging
import os
from typing import NewType

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

logger = logging.getLogger("utils")

EncryptionKey = NewType("EncryptionKey", str)
Ciphertext = NewType("Ciphertext", str)


def encrypt(key: EncryptionKey, plaintext: str) -> Ciphertext:
    cipher, pkcs7 = _encryption_cipher(key)
    encryptor, padder = cipher.encryptor(), pkcs7.padder()
    plainbytes = plaintext.encode()
    padded_data = padder.update(plainbytes) + padder.finalize()
    cipherbytes = encryptor.update(padded_data) + encryptor.finalize()
    return Ciphertext(base64.b64encode(cipherbytes).decode("utf-8"))


def decrypt(key: EncryptionKey, ciphertext: Ciphertext) -> str:
    cipher, pkcs7 = _encryption_cipher(key)
    decryptor, unpadder = cipher.decryptor(), pkcs7.unpadder()
    cipherbytes = base64.b64decode(ciphertext)
    decrypted_padded = decryptor.update(cipherbytes) + decryptor.finalize()
    plainbytes = unpadder.update(decrypted_padded) + unpadder.finalize()
    return plainbytes.decode()


def generate_encryption_key() -> EncryptionKey:
    return EncryptionKey(base64.b64encode(os.urandom(32 + 16)).decode())


def is_valid_encryption_key(key: str) -> bool:
    if len(key) != 64:
        return False
    try:
        return len(base64.b64decode(key, validate=True)) == 48
    except ValueError:
        return False


def _encryption_cipher(key: EncryptionKey) -> tuple[Cipher[modes.CBC], padding.PKCS7]:
    # 32 bytes of AES-256 key followed by a 16 byte IV
    assert len(key) == 64
    key_data: bytes = base64.b64decode(key)
    assert len(key_data) == 48
    algorithm = algorithms.AES(key_data[0:32])
    mode = modes.CBC(key_data[32:48])
    padder = padding.PKCS7(algorithms.AES.block_size)
    cipher = Cipher(algorithm, mode)
    return cipher, padder
