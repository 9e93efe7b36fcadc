"""Identity keypair lifecycle.

The identity is a secp256k1 keypair in Nostr form: a 32-byte secret and the
32-byte x-only public key, both hex encoded. A ``KeyStore`` is constructed
explicitly and handed to whatever needs to sign or decrypt.
"""

import logging

from coincurve import PrivateKey

from .errors import InvalidKey
from .store import LocalStore, Partition

logger = logging.getLogger(__name__)

PRIVATE_KEY = "private_key"
PUBLIC_KEY = "public_key"


def derive_public_key(private_key: str) -> str:
    """Derive the x-only public key for a hex private key.

    Raises:
        InvalidKey: If the private key is not a valid 32-byte secp256k1 secret.
    """
    try:
        secret = bytes.fromhex(private_key)
        if len(secret) != 32:
            raise ValueError(f"expected 32 bytes, got {len(secret)}")
        key = PrivateKey(secret)
    except (ValueError, TypeError) as e:
        raise InvalidKey(f"Invalid private key: {e}") from e

    return key.public_key.format(compressed=True)[1:].hex()


def validate_public_key(public_key: str) -> str:
    """Normalize a hex x-only public key.

    Raises:
        InvalidKey: If the value is not 64 hex characters.
    """
    try:
        raw = bytes.fromhex(public_key)
    except (ValueError, TypeError) as e:
        raise InvalidKey(f"Invalid public key: {e}") from e
    if len(raw) != 32:
        raise InvalidKey(f"Invalid public key: expected 32 bytes, got {len(raw)}")
    return raw.hex()


class KeyStore:
    """Holds the identity keypair in memory with one durable copy."""

    def __init__(self, store: LocalStore):
        self._store = store
        self._private_key: str | None = None
        self._public_key: str | None = None

    @staticmethod
    def generate() -> tuple[str, str]:
        """Create a fresh random keypair. Nothing is persisted.

        Returns:
            Tuple of (private_key, public_key) as hex strings.
        """
        key = PrivateKey()
        private_key = key.secret.hex()
        return private_key, derive_public_key(private_key)

    async def store(self, private_key: str, public_key: str) -> None:
        """Persist both keys in one write and make them current.

        Raises:
            InvalidKey: If the public key does not belong to the private key.
        """
        if derive_public_key(private_key) != validate_public_key(public_key):
            raise InvalidKey("Public key does not match private key")

        await self._store.set_many(
            Partition.IDENTITY,
            {PRIVATE_KEY: private_key, PUBLIC_KEY: public_key},
        )
        self._private_key = private_key
        self._public_key = public_key
        logger.info(f"Stored identity {public_key[:12]}...")

    async def load(self) -> bool:
        """Load the keypair from the store.

        Returns:
            True if both keys were found. Otherwise both in-memory fields
            are cleared and False is returned.
        """
        private_key = await self._store.get(Partition.IDENTITY, PRIVATE_KEY)
        public_key = await self._store.get(Partition.IDENTITY, PUBLIC_KEY)

        if private_key and public_key:
            self._private_key = private_key
            self._public_key = public_key
            logger.debug(f"Loaded identity {public_key[:12]}...")
            return True

        self._private_key = None
        self._public_key = None
        return False

    async def clear(self) -> None:
        """Remove the persisted keypair and forget it in memory."""
        await self._store.delete_many(Partition.IDENTITY, [PRIVATE_KEY, PUBLIC_KEY])
        self._private_key = None
        self._public_key = None
        logger.info("Identity cleared")

    def is_logged_in(self) -> bool:
        return self._private_key is not None and self._public_key is not None

    @property
    def private_key(self) -> str | None:
        return self._private_key

    @property
    def public_key(self) -> str | None:
        return self._public_key
