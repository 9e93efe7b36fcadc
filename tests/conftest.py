"""Shared fixtures: in-memory store, identities and a fake relay network."""

from typing import Any

import pytest
import pytest_asyncio

from notention.errors import RelayError
from notention.identity import KeyStore
from notention.nostr.codec import EventCodec
from notention.nostr.event import Envelope, EnvelopeKind
from notention.nostr.relay import PublishOutcome
from notention.store import LocalStore
from notention.sync.mutation_queue import MutationQueue
from notention.sync.orchestrator import SyncOrchestrator

RELAYS = ["wss://relay.test"]


def matches(envelope: Envelope, filt: dict[str, Any]) -> bool:
    """Relay-side filter semantics for the fields the engine uses."""
    if "ids" in filt and envelope.id not in filt["ids"]:
        return False
    if "kinds" in filt and envelope.kind not in filt["kinds"]:
        return False
    if "authors" in filt and envelope.pubkey not in filt["authors"]:
        return False
    if "since" in filt and envelope.created_at < filt["since"]:
        return False
    for key, wanted in filt.items():
        if key.startswith("#") and not set(envelope.tag_values(key[1:])) & set(wanted):
            return False
    return True


class FakeRelayNetwork:
    """Stands in for RelayPool; one shared event set for every relay URL."""

    def __init__(self):
        self.events: dict[str, Envelope] = {}
        self.published: list[Envelope] = []
        self.queries: list[list[dict[str, Any]]] = []
        self.subscriptions: dict[str, Any] = {}
        self.reachable = True
        self.accept = True
        self.fail_queries = False

    def add(self, envelope: Envelope) -> None:
        """Store an envelope the way a relay would."""
        if envelope.kind == EnvelopeKind.DELETION:
            targets = set(envelope.tag_values("e"))
            for event_id in list(self.events):
                existing = self.events[event_id]
                if event_id in targets and existing.pubkey == envelope.pubkey:
                    del self.events[event_id]
        elif envelope.kind == EnvelopeKind.CATEGORIZED_LIST:
            d_tag = envelope.tag_value("d")
            for event_id, existing in list(self.events.items()):
                if (
                    existing.kind == envelope.kind
                    and existing.pubkey == envelope.pubkey
                    and existing.tag_value("d") == d_tag
                ):
                    if existing.created_at > envelope.created_at:
                        return
                    del self.events[event_id]
        self.events[envelope.id] = envelope

    async def publish(self, relays: list[str], envelope: Envelope) -> list[PublishOutcome]:
        self.published.append(envelope)
        if not self.accept:
            return [PublishOutcome(relay=url, accepted=False, message="blocked: test") for url in relays]
        self.add(envelope)
        return [PublishOutcome(relay=url, accepted=True) for url in relays]

    async def query(self, relays: list[str], filters: list[dict[str, Any]]) -> list[Envelope]:
        self.queries.append(filters)
        if self.fail_queries:
            raise RelayError("No relay answered the query")
        return [
            envelope
            for envelope in self.events.values()
            if any(matches(envelope, f) for f in filters)
        ]

    async def is_reachable(self, relays: list[str]) -> bool:
        return self.reachable

    def subscribe(self, relays, filters, on_envelope, on_end_of_stream=None, subscription_id=None):
        subscription = FakeSubscription(subscription_id or f"sub-{len(self.subscriptions)}", filters, on_envelope, self)
        self.subscriptions[subscription.id] = subscription
        return subscription

    def unsubscribe(self, subscription_id: str) -> bool:
        subscription = self.subscriptions.get(subscription_id)
        if subscription is None:
            return False
        subscription.cancel()
        return True

    async def deliver(self, envelope: Envelope) -> None:
        """Push an envelope to every live subscription whose filters match."""
        for subscription in list(self.subscriptions.values()):
            if any(matches(envelope, f) for f in subscription.filters):
                await subscription.on_envelope(envelope)

    async def close(self) -> None:
        for subscription in list(self.subscriptions.values()):
            subscription.cancel()

    def published_kinds(self) -> list[int]:
        return [e.kind for e in self.published]


class FakeSubscription:
    def __init__(self, subscription_id, filters, on_envelope, network):
        self.id = subscription_id
        self.filters = filters
        self.on_envelope = on_envelope
        self._network = network
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True
        self._network.subscriptions.pop(self.id, None)


@pytest.fixture
def store():
    """Create an in-memory local store."""
    s = LocalStore(":memory:")
    s.connect()
    yield s
    s.close()


@pytest_asyncio.fixture
async def keystore(store):
    """A keystore with a freshly generated identity."""
    ks = KeyStore(store)
    await ks.store(*KeyStore.generate())
    return ks


@pytest.fixture
def codec(keystore):
    return EventCodec(keystore)


@pytest.fixture
def queue(store):
    return MutationQueue(store)


@pytest.fixture
def network():
    return FakeRelayNetwork()


@pytest.fixture
def orchestrator(store, keystore, codec, network, queue):
    return SyncOrchestrator(
        store=store,
        keystore=keystore,
        codec=codec,
        transport=network,
        queue=queue,
        relays=RELAYS,
    )
