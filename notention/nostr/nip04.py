"""NIP-04 payload encryption.

The shared key is the raw x coordinate of the ECDH point between the local
secret and the counterparty's x-only public key. Payloads are AES-256-CBC
with PKCS7 padding, written as ``base64(ciphertext)?iv=base64(iv)``.
"""

import base64
import binascii
import os

from coincurve import PublicKey
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from ..errors import EncryptDecryptFailure


def shared_secret(private_key: str, public_key: str) -> bytes:
    """Compute the 32-byte NIP-04 conversation key."""
    try:
        point = PublicKey(b"\x02" + bytes.fromhex(public_key))
        shared = point.multiply(bytes.fromhex(private_key))
    except (ValueError, TypeError) as e:
        raise EncryptDecryptFailure(f"Cannot derive shared secret: {e}") from e
    return shared.format(compressed=True)[1:]


def encrypt(private_key: str, public_key: str, plaintext: str) -> str:
    """Encrypt text for the owner of ``public_key``."""
    key = shared_secret(private_key, public_key)
    iv = os.urandom(16)

    padder = padding.PKCS7(128).padder()
    padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()

    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    ciphertext = encryptor.update(padded) + encryptor.finalize()

    return (
        base64.b64encode(ciphertext).decode("ascii")
        + "?iv="
        + base64.b64encode(iv).decode("ascii")
    )


def decrypt(private_key: str, public_key: str, payload: str) -> str:
    """Decrypt a payload exchanged with the owner of ``public_key``.

    Raises:
        EncryptDecryptFailure: If the payload is malformed or the key is wrong.
    """
    ciphertext_b64, sep, iv_b64 = payload.partition("?iv=")
    if not sep:
        raise EncryptDecryptFailure("Payload has no iv")

    try:
        ciphertext = base64.b64decode(ciphertext_b64, validate=True)
        iv = base64.b64decode(iv_b64, validate=True)
    except (binascii.Error, ValueError) as e:
        raise EncryptDecryptFailure(f"Payload is not valid base64: {e}") from e

    if len(iv) != 16 or not ciphertext or len(ciphertext) % 16:
        raise EncryptDecryptFailure("Payload has invalid block sizes")

    key = shared_secret(private_key, public_key)
    decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
    padded = decryptor.update(ciphertext) + decryptor.finalize()

    try:
        unpadder = padding.PKCS7(128).unpadder()
        plaintext = unpadder.update(padded) + unpadder.finalize()
        return plaintext.decode("utf-8")
    except (ValueError, UnicodeDecodeError) as e:
        raise EncryptDecryptFailure(f"Decryption failed: {e}") from e
