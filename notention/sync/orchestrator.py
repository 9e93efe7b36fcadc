"""Sync orchestrator: reconciles local notes and the ontology with relays.

One cycle runs four steps in order:

1. Ontology: compare the local tree with the replaceable remote copy and
   publish or adopt whichever is newer.
2. Notes: fetch self-encrypted note envelopes since the watermark, keep the
   newest revision per note and apply it where it beats the local copy.
3. Queue: publish pending saves and tombstones; failures stay queued.
4. Watermark: record the cycle start time once everything above completed.

Conflicts are resolved by ``updated_at`` alone (last write wins, ties keep
the local copy).
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from ..errors import EnvelopeError, NotLoggedIn, Offline, PublishFailure, SyncInProgress
from ..identity import KeyStore
from ..models import (
    MutationAction,
    MutationEntry,
    Note,
    OntologyTree,
    default_ontology,
    format_datetime,
    parse_datetime,
    to_unix_seconds,
    utc_now,
)
from ..nostr.codec import NOTE_NAMESPACE, ONTOLOGY_D_TAG, EventCodec, SelfSyncNote, SelfSyncOntology
from ..nostr.event import Envelope, EnvelopeKind
from ..nostr.relay import PublishOutcome, RelayPool
from ..store import LocalStore, Partition
from .mutation_queue import MutationQueue
from .sanitize import sanitize_html

logger = logging.getLogger(__name__)

ONTOLOGY_KEY = "tree"
ONTOLOGY_NEEDS_SYNC = "ontology_needs_sync"
LAST_SYNCED_AT = "last_synced_at"


async def load_ontology(store: LocalStore) -> OntologyTree:
    """Stored ontology, seeding the default tree if none is stored."""
    data = await store.get(Partition.ONTOLOGY, ONTOLOGY_KEY)
    if data is not None:
        return OntologyTree.from_dict(data)

    tree = default_ontology()
    await store.set(Partition.ONTOLOGY, ONTOLOGY_KEY, tree.to_dict())
    return tree


class SyncStatus(Enum):
    """Outcome of a sync cycle."""

    SUCCESS = "success"
    PARTIAL = "partial"  # completed, but some items failed


@dataclass
class SyncResult:
    """Counters and per-item failures of one cycle."""

    started_at: datetime
    status: SyncStatus = SyncStatus.SUCCESS
    finished_at: datetime | None = None
    ontology_published: bool = False
    ontology_pulled: bool = False
    notes_pulled: int = 0
    notes_suppressed: int = 0
    notes_pushed: int = 0
    tombstones_published: int = 0
    queue_dropped: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def publish_count(self) -> int:
        return int(self.ontology_published) + self.notes_pushed + self.tombstones_published


class SyncOrchestrator:
    """Runs sync cycles for one identity. Not reentrant."""

    def __init__(
        self,
        store: LocalStore,
        keystore: KeyStore,
        codec: EventCodec,
        transport: RelayPool,
        queue: MutationQueue,
        relays: list[str],
        on_ontology_updated: Callable[[OntologyTree], None] | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        """Initialize the orchestrator.

        Args:
            store: Local durable store.
            keystore: Identity whose data is synced.
            codec: Envelope codec bound to the same identity.
            transport: Relay transport.
            queue: Pending mutations to drain.
            relays: Relay URLs used for every request.
            on_ontology_updated: Called with the new tree when a remote
                ontology replaces the local one.
            clock: Source of the cycle start time.
        """
        self._store = store
        self._keys = keystore
        self._codec = codec
        self._transport = transport
        self._queue = queue
        self.relays = list(relays)
        self._on_ontology_updated = on_ontology_updated
        self._clock = clock
        self._in_flight = False

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    async def last_synced_at(self) -> datetime | None:
        value = await self._store.get(Partition.SYNC_STATE, LAST_SYNCED_AT)
        return parse_datetime(value) if value else None

    async def run_cycle(self, force_full_resync: bool = False) -> SyncResult:
        """Run one full sync cycle.

        Args:
            force_full_resync: Ignore the watermark and fetch every note
                revision ever published.

        Raises:
            SyncInProgress: Another cycle is running.
            NotLoggedIn: No identity is loaded.
            Offline: No relay is configured or reachable.
            RelayError: A query got no answer from any relay.
        """
        if self._in_flight:
            raise SyncInProgress("A sync cycle is already running")

        self._in_flight = True
        try:
            return await self._run_cycle(force_full_resync)
        finally:
            self._in_flight = False

    async def _run_cycle(self, force_full_resync: bool) -> SyncResult:
        if not self._keys.is_logged_in():
            raise NotLoggedIn("Cannot sync without an identity")
        if not self.relays:
            raise Offline("No relays configured")
        if not await self._transport.is_reachable(self.relays):
            raise Offline("No relay is reachable")

        result = SyncResult(started_at=self._clock())
        logger.info(
            f"Sync cycle started ({'full resync' if force_full_resync else 'incremental'})"
        )

        await self._sync_ontology(result)
        await self._sync_notes(result, force_full_resync)
        await self._drain_queue(result)

        await self._store.set(
            Partition.SYNC_STATE, LAST_SYNCED_AT, format_datetime(result.started_at)
        )

        result.finished_at = self._clock()
        result.status = SyncStatus.PARTIAL if result.errors else SyncStatus.SUCCESS
        logger.info(
            f"Sync: {result.status.value}, "
            f"pulled={result.notes_pulled}, pushed={result.notes_pushed}, "
            f"tombstones={result.tombstones_published}, errors={len(result.errors)}"
        )
        return result

    # ==================== Helpers ====================

    async def publish(self, envelope: Envelope) -> list[PublishOutcome]:
        """Publish to all relays; raise unless at least one accepted."""
        outcomes = await self._transport.publish(self.relays, envelope)
        if not any(o.accepted for o in outcomes):
            raise PublishFailure(
                envelope.id,
                [f"{o.relay}: {o.error or o.message or 'rejected'}" for o in outcomes],
            )
        return outcomes

    def _record_failure(self, result: SyncResult, error: Exception) -> None:
        logger.warning(f"Sync item failed: {error}")
        result.errors.append(f"{type(error).__name__}: {error}")

    # ==================== Step 1: ontology ====================

    async def _sync_ontology(self, result: SyncResult) -> None:
        me = self._keys.public_key
        envelopes = await self._transport.query(
            self.relays,
            [{"kinds": [int(EnvelopeKind.CATEGORIZED_LIST)], "authors": [me], "#d": [ONTOLOGY_D_TAG]}],
        )

        remote: OntologyTree | None = None
        for envelope in envelopes:
            if envelope.pubkey != me:
                continue
            try:
                decoded = self._codec.decode(envelope)
            except EnvelopeError as e:
                self._record_failure(result, e)
                continue
            if isinstance(decoded, SelfSyncOntology):
                if remote is None or decoded.tree.updated_at > remote.updated_at:
                    remote = decoded.tree

        local = await load_ontology(self._store)

        if remote is None or local.updated_at > remote.updated_at:
            try:
                await self.publish(self._codec.encode_ontology(local))
            except PublishFailure as e:
                self._record_failure(result, e)
                return
            await self._store.delete(Partition.FLAGS, ONTOLOGY_NEEDS_SYNC)
            result.ontology_published = True
            logger.info("Published local ontology")
        elif remote.updated_at > local.updated_at:
            await self._store.set(Partition.ONTOLOGY, ONTOLOGY_KEY, remote.to_dict())
            await self._store.delete(Partition.FLAGS, ONTOLOGY_NEEDS_SYNC)
            if self._on_ontology_updated is not None:
                self._on_ontology_updated(remote)
            result.ontology_pulled = True
            logger.info("Adopted newer remote ontology")

    # ==================== Step 2: notes ====================

    async def _sync_notes(self, result: SyncResult, force_full_resync: bool) -> None:
        me = self._keys.public_key
        note_filter: dict[str, Any] = {
            "kinds": [int(EnvelopeKind.ENCRYPTED_DIRECT_MESSAGE)],
            "authors": [me],
            "#p": [me],
        }
        since = None if force_full_resync else await self.last_synced_at()
        if since is not None:
            note_filter["since"] = to_unix_seconds(since)

        envelopes = await self._transport.query(self.relays, [note_filter])

        revisions: dict[str, list[Envelope]] = {}
        for envelope in envelopes:
            d_tag = envelope.tag_value("d")
            if envelope.pubkey != me or not d_tag or not d_tag.startswith(f"{NOTE_NAMESPACE}:"):
                continue
            revisions.setdefault(d_tag, []).append(envelope)

        for candidates in revisions.values():
            newest = self._newest_decodable(candidates, result)
            if newest is not None:
                await self._merge_note(newest, result)

    def _newest_decodable(
        self, candidates: list[Envelope], result: SyncResult
    ) -> SelfSyncNote | None:
        seen: set[str] = set()
        for envelope in sorted(candidates, key=lambda e: e.created_at, reverse=True):
            if envelope.id in seen:
                continue
            seen.add(envelope.id)
            try:
                decoded = self._codec.decode(envelope)
            except EnvelopeError as e:
                self._record_failure(result, e)
                continue
            if isinstance(decoded, SelfSyncNote):
                return decoded
        return None

    async def _merge_note(self, decoded: SelfSyncNote, result: SyncResult) -> None:
        remote = decoded.note
        local_data = await self._store.get(Partition.NOTES, remote.id)

        if local_data is None:
            tombstone = await self._store.get(Partition.TOMBSTONES, remote.id)
            if tombstone and remote.updated_at <= parse_datetime(tombstone["deletedAt"]):
                logger.debug(f"Ignoring stale remote copy of deleted note {remote.id}")
                result.notes_suppressed += 1
                return
        else:
            local = Note.from_dict(local_data)
            if remote.updated_at <= local.updated_at:
                return

        remote.content = sanitize_html(remote.content)
        remote.sync_event_id = decoded.envelope.id
        await self._store.set(Partition.NOTES, remote.id, remote.to_dict())
        await self._store.delete(Partition.TOMBSTONES, remote.id)

        pending = await self._queue.get(remote.id)
        if pending is not None:
            logger.info(f"Dropping queued {pending.action.value} for {remote.id}: remote copy is newer")
            await self._queue.remove(remote.id)

        result.notes_pulled += 1
        logger.debug(f"Applied remote revision of {remote.id}")

    # ==================== Step 3: queue ====================

    async def _drain_queue(self, result: SyncResult) -> None:
        for entry in await self._queue.pending():
            if entry.action == MutationAction.SAVE:
                await self._drain_save(entry, result)
            else:
                await self._drain_delete(entry, result)

    async def _drain_save(self, entry: MutationEntry, result: SyncResult) -> None:
        data = await self._store.get(Partition.NOTES, entry.entity_id)
        if data is None:
            logger.info(f"Dropping queued save for missing note {entry.entity_id}")
            await self._queue.remove(entry.entity_id)
            result.queue_dropped += 1
            return

        note = Note.from_dict(data)
        envelope = self._codec.encode_self_sync_note(note)
        try:
            await self.publish(envelope)
        except PublishFailure as e:
            self._record_failure(result, e)
            return

        # the note may have been edited while the publish was in flight
        latest = await self._store.get(Partition.NOTES, entry.entity_id)
        if latest is not None:
            stored = Note.from_dict(latest)
            stored.sync_event_id = envelope.id
            await self._store.set(Partition.NOTES, stored.id, stored.to_dict())

        current = await self._queue.get(entry.entity_id)
        if current is not None and current.queued_at == entry.queued_at:
            await self._queue.remove(entry.entity_id)

        result.notes_pushed += 1

    async def _drain_delete(self, entry: MutationEntry, result: SyncResult) -> None:
        if entry.remote_event_id:
            try:
                await self.publish(self._codec.encode_deletion([entry.remote_event_id]))
            except PublishFailure as e:
                self._record_failure(result, e)
                return
            result.tombstones_published += 1
            logger.info(f"Tombstoned {entry.remote_event_id[:12]} for {entry.entity_id}")

        await self._queue.remove(entry.entity_id)

    async def get_status(self) -> dict[str, Any]:
        """Watermark, queue depth and flags."""
        last = await self.last_synced_at()
        return {
            "relays": self.relays,
            "last_synced_at": last.isoformat() if last else None,
            "pending_mutations": await self._queue.count(),
            "ontology_needs_sync": bool(
                await self._store.get(Partition.FLAGS, ONTOLOGY_NEEDS_SYNC)
            ),
            "in_flight": self._in_flight,
        }
