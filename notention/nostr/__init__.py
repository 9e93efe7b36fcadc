"""Nostr wire layer: signed envelopes, NIP-04 encryption, codec and relay pool."""

from .codec import (
    DecodedMessage,
    DeletionRequest,
    EventCodec,
    IncomingDirectMessage,
    PublicNote,
    SelfSyncNote,
    SelfSyncOntology,
)
from .event import Envelope, EnvelopeKind, sign_envelope
from .relay import PublishOutcome, RelayPool, Subscription

__all__ = [
    "DecodedMessage",
    "DeletionRequest",
    "Envelope",
    "EnvelopeKind",
    "EventCodec",
    "IncomingDirectMessage",
    "PublicNote",
    "PublishOutcome",
    "RelayPool",
    "SelfSyncNote",
    "SelfSyncOntology",
    "Subscription",
    "sign_envelope",
]
