"""Signed Nostr events ("envelopes")."""

import hashlib
import json
from dataclasses import dataclass
from enum import IntEnum
from typing import Any

from coincurve import PrivateKey, PublicKeyXOnly

from ..errors import ParseFailure
from ..identity import derive_public_key


class EnvelopeKind(IntEnum):
    """Envelope kinds produced and understood by Notention."""

    TEXT_NOTE = 1
    ENCRYPTED_DIRECT_MESSAGE = 4
    DELETION = 5
    CATEGORIZED_LIST = 30001  # parameterized replaceable


Tags = tuple[tuple[str, ...], ...]


def compute_event_id(
    pubkey: str, created_at: int, kind: int, tags: Tags | list, content: str
) -> str:
    """SHA-256 over the canonical serialization of the event."""
    serialized = json.dumps(
        [0, pubkey, created_at, kind, [list(t) for t in tags], content],
        separators=(",", ":"),
        ensure_ascii=False,
    )
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class Envelope:
    """An immutable signed event as it travels through relays."""

    id: str
    pubkey: str
    created_at: int
    kind: int
    tags: Tags
    content: str
    sig: str

    def tag_values(self, name: str) -> list[str]:
        """First values of every tag called ``name``."""
        return [t[1] for t in self.tags if len(t) > 1 and t[0] == name]

    def tag_value(self, name: str) -> str | None:
        """First value of the first tag called ``name``."""
        values = self.tag_values(name)
        return values[0] if values else None

    def find_tags(self, name: str) -> list[tuple[str, ...]]:
        return [t for t in self.tags if t and t[0] == name]

    def verify(self) -> bool:
        """Check that the id matches the content and the signature is valid."""
        expected = compute_event_id(
            self.pubkey, self.created_at, self.kind, self.tags, self.content
        )
        if expected != self.id:
            return False
        try:
            key = PublicKeyXOnly(bytes.fromhex(self.pubkey))
            return key.verify(bytes.fromhex(self.sig), bytes.fromhex(self.id))
        except (ValueError, TypeError):
            return False

    def to_dict(self) -> dict[str, Any]:
        """Wire form."""
        return {
            "id": self.id,
            "pubkey": self.pubkey,
            "created_at": self.created_at,
            "kind": self.kind,
            "tags": [list(t) for t in self.tags],
            "content": self.content,
            "sig": self.sig,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "Envelope":
        """Parse the wire form.

        Raises:
            ParseFailure: If the data does not have the shape of an event.
        """
        if not isinstance(data, dict):
            raise ParseFailure("Event is not an object")
        try:
            tags = tuple(tuple(str(v) for v in tag) for tag in data["tags"])
            envelope = cls(
                id=str(data["id"]),
                pubkey=str(data["pubkey"]),
                created_at=int(data["created_at"]),
                kind=int(data["kind"]),
                tags=tags,
                content=str(data["content"]),
                sig=str(data["sig"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ParseFailure(f"Malformed event: {e}", data.get("id")) from e
        return envelope


def sign_envelope(
    private_key: str,
    kind: int,
    content: str,
    tags: list[list[str]],
    created_at: int,
) -> Envelope:
    """Build, hash and Schnorr-sign an event."""
    pubkey = derive_public_key(private_key)
    frozen_tags: Tags = tuple(tuple(str(v) for v in tag) for tag in tags)
    event_id = compute_event_id(pubkey, created_at, int(kind), frozen_tags, content)
    signature = PrivateKey(bytes.fromhex(private_key)).sign_schnorr(bytes.fromhex(event_id))
    return Envelope(
        id=event_id,
        pubkey=pubkey,
        created_at=created_at,
        kind=int(kind),
        tags=frozen_tags,
        content=content,
        sig=signature.hex(),
    )
