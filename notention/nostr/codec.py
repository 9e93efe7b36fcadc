"""Conversion between domain entities and signed envelopes.

Five logical messages travel over relays:

=====================  ======  ==========================================
Message                Kind    Content
=====================  ======  ==========================================
Public note            1       plaintext body, metadata in tags
Direct message         4       NIP-04 ciphertext to the recipient
Self-sync note         4       NIP-04 ciphertext to self of the note JSON
Self-sync taxonomy     30001   JSON of the ontology tree
Deletion tombstone     5       human-readable reason
=====================  ======  ==========================================

``EventCodec.decode`` resolves the kind once and returns one of the typed
message classes below, so callers match on the class instead of re-reading
``kind`` and tags.
"""

import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone

from ..config import PrivacyConfig
from ..errors import EncryptDecryptFailure, NotLoggedIn, ParseFailure
from ..identity import KeyStore
from ..models import DirectMessage, Note, OntologyTree, to_unix_seconds
from . import nip04
from .event import Envelope, EnvelopeKind, sign_envelope

logger = logging.getLogger(__name__)

NOTE_NAMESPACE = "notention"
ONTOLOGY_D_TAG = "notention-ontology"
DELETION_REASON = "Note deleted by user"


@dataclass
class PublicNote:
    """A kind-1 note shared in the clear."""

    envelope: Envelope
    author: str
    note_id: str | None
    title: str | None
    content: str
    tags: list[str] = field(default_factory=list)
    values: dict[str, str] = field(default_factory=dict)
    published_at: datetime | None = None


@dataclass
class IncomingDirectMessage:
    envelope: Envelope
    message: DirectMessage


@dataclass
class SelfSyncNote:
    envelope: Envelope
    note: Note


@dataclass
class SelfSyncOntology:
    envelope: Envelope
    tree: OntologyTree


@dataclass
class DeletionRequest:
    envelope: Envelope
    event_ids: list[str]
    reason: str


DecodedMessage = (
    PublicNote | IncomingDirectMessage | SelfSyncNote | SelfSyncOntology | DeletionRequest
)


def note_d_tag(note_id: str) -> str:
    return f"{NOTE_NAMESPACE}:{note_id}"


def _strip_tag_prefix(tag: str) -> str:
    return tag[1:] if tag.startswith(("#", "@")) else tag


class EventCodec:
    """Builds and parses envelopes for the loaded identity."""

    def __init__(
        self,
        keystore: KeyStore,
        privacy: PrivacyConfig | None = None,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the codec.

        Args:
            keystore: Identity used to sign, encrypt and decrypt.
            privacy: Flags controlling metadata on public notes.
            clock: Wall-clock source for envelopes not tied to an edit time.
        """
        self._keys = keystore
        self.privacy = privacy or PrivacyConfig()
        self._clock = clock

    def _identity(self) -> tuple[str, str]:
        if not self._keys.is_logged_in():
            raise NotLoggedIn("No identity loaded")
        return self._keys.private_key, self._keys.public_key

    def _now(self) -> int:
        return int(self._clock())

    # ==================== Encoding ====================

    def encode_public_note(self, note: Note) -> Envelope:
        """Kind-1 envelope; tags and values only if the privacy flags allow."""
        private_key, _ = self._identity()

        tags: list[list[str]] = [
            ["d", note.id],
            ["title", note.title],
            ["published_at", str(to_unix_seconds(note.created_at))],
        ]
        if self.privacy.share_tags_with_public_notes:
            for tag in note.tags:
                name = _strip_tag_prefix(tag)
                if name:
                    tags.append(["t", name])
        if self.privacy.share_values_with_public_notes:
            for key, value in note.values.items():
                tags.append(["param", key, value])

        return sign_envelope(
            private_key, EnvelopeKind.TEXT_NOTE, note.content, tags, self._now()
        )

    def encode_direct_message(self, recipient: str, text: str) -> Envelope:
        private_key, _ = self._identity()
        content = nip04.encrypt(private_key, recipient, text)
        return sign_envelope(
            private_key,
            EnvelopeKind.ENCRYPTED_DIRECT_MESSAGE,
            content,
            [["p", recipient]],
            self._now(),
        )

    def encode_self_sync_note(self, note: Note) -> Envelope:
        """Full note JSON encrypted to self, dated by the note's last edit."""
        private_key, public_key = self._identity()
        payload = json.dumps(note.to_dict(), ensure_ascii=False)
        content = nip04.encrypt(private_key, public_key, payload)
        return sign_envelope(
            private_key,
            EnvelopeKind.ENCRYPTED_DIRECT_MESSAGE,
            content,
            [["p", public_key], ["d", note_d_tag(note.id)]],
            to_unix_seconds(note.updated_at),
        )

    def encode_ontology(self, tree: OntologyTree) -> Envelope:
        private_key, _ = self._identity()
        return sign_envelope(
            private_key,
            EnvelopeKind.CATEGORIZED_LIST,
            json.dumps(tree.to_dict(), ensure_ascii=False),
            [["d", ONTOLOGY_D_TAG]],
            to_unix_seconds(tree.updated_at),
        )

    def encode_deletion(self, event_ids: list[str], reason: str = DELETION_REASON) -> Envelope:
        private_key, _ = self._identity()
        tags = [["e", event_id] for event_id in event_ids]
        tags.append(["reason", reason])
        return sign_envelope(private_key, EnvelopeKind.DELETION, reason, tags, self._now())

    # ==================== Decoding ====================

    def decode(self, envelope: Envelope) -> DecodedMessage:
        """Turn an envelope into a typed message.

        Raises:
            ParseFailure: Bad signature, unknown kind or malformed content.
            EncryptDecryptFailure: The encrypted content could not be decrypted.
        """
        if not envelope.verify():
            raise ParseFailure("Invalid id or signature", envelope.id)

        if envelope.kind == EnvelopeKind.TEXT_NOTE:
            return self._decode_public_note(envelope)
        if envelope.kind == EnvelopeKind.ENCRYPTED_DIRECT_MESSAGE:
            if self._is_self_sync_note(envelope):
                return self._decode_self_sync_note(envelope)
            return self._decode_direct_message(envelope)
        if envelope.kind == EnvelopeKind.CATEGORIZED_LIST:
            return self._decode_ontology(envelope)
        if envelope.kind == EnvelopeKind.DELETION:
            return DeletionRequest(
                envelope=envelope,
                event_ids=envelope.tag_values("e"),
                reason=envelope.tag_value("reason") or envelope.content,
            )

        raise ParseFailure(f"Unsupported envelope kind {envelope.kind}", envelope.id)

    def _is_self_sync_note(self, envelope: Envelope) -> bool:
        d_tag = envelope.tag_value("d")
        public_key = self._keys.public_key
        return (
            d_tag is not None
            and d_tag.startswith(f"{NOTE_NAMESPACE}:")
            and envelope.pubkey == public_key
            and envelope.tag_value("p") == public_key
        )

    def _decode_public_note(self, envelope: Envelope) -> PublicNote:
        published = envelope.tag_value("published_at")
        published_at = None
        if published is not None:
            try:
                published_at = datetime.fromtimestamp(int(published), tz=timezone.utc)
            except ValueError:
                logger.debug(f"Ignoring bad published_at on {envelope.id}")

        return PublicNote(
            envelope=envelope,
            author=envelope.pubkey,
            note_id=envelope.tag_value("d"),
            title=envelope.tag_value("title"),
            content=envelope.content,
            tags=envelope.tag_values("t"),
            values={t[1]: t[2] for t in envelope.find_tags("param") if len(t) > 2},
            published_at=published_at,
        )

    def _decode_direct_message(self, envelope: Envelope) -> IncomingDirectMessage:
        private_key, public_key = self._identity()
        recipient = envelope.tag_value("p")

        if envelope.pubkey == public_key:
            counterparty = recipient
        elif recipient == public_key:
            counterparty = envelope.pubkey
        else:
            raise ParseFailure("Direct message is not addressed to this identity", envelope.id)
        if not counterparty:
            raise ParseFailure("Direct message has no recipient", envelope.id)

        try:
            text = nip04.decrypt(private_key, counterparty, envelope.content)
        except EncryptDecryptFailure as e:
            raise EncryptDecryptFailure(str(e), envelope.id) from e

        return IncomingDirectMessage(
            envelope=envelope,
            message=DirectMessage(
                id=envelope.id,
                sender=envelope.pubkey,
                recipient=recipient,
                content=text,
                timestamp=datetime.fromtimestamp(envelope.created_at, tz=timezone.utc),
                encrypted=True,
            ),
        )

    def _decode_self_sync_note(self, envelope: Envelope) -> SelfSyncNote:
        private_key, public_key = self._identity()
        try:
            payload = nip04.decrypt(private_key, public_key, envelope.content)
        except EncryptDecryptFailure as e:
            raise EncryptDecryptFailure(str(e), envelope.id) from e

        try:
            note = Note.from_dict(json.loads(payload))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError, AttributeError) as e:
            raise ParseFailure(f"Invalid note payload: {e}", envelope.id) from e

        if envelope.tag_value("d") != note_d_tag(note.id):
            raise ParseFailure("Note id does not match its d tag", envelope.id)

        return SelfSyncNote(envelope=envelope, note=note)

    def _decode_ontology(self, envelope: Envelope) -> SelfSyncOntology:
        if envelope.tag_value("d") != ONTOLOGY_D_TAG:
            raise ParseFailure("Not a Notention ontology list", envelope.id)

        try:
            data = json.loads(envelope.content)
            if "updatedAt" not in data:
                data["updatedAt"] = envelope.created_at * 1000
            tree = OntologyTree.from_dict(data)
        except (json.JSONDecodeError, KeyError, TypeError, ValueError, AttributeError) as e:
            raise ParseFailure(f"Invalid ontology payload: {e}", envelope.id) from e

        return SelfSyncOntology(envelope=envelope, tree=tree)
