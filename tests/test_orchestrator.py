"""Tests for the sync orchestrator against an in-memory relay network."""

import asyncio
import json
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from notention.errors import NotLoggedIn, Offline, RelayError, SyncInProgress
from notention.identity import KeyStore
from notention.models import Note, OntologyNode, OntologyTree, format_datetime
from notention.nostr import nip04
from notention.nostr.codec import EventCodec
from notention.nostr.event import EnvelopeKind, sign_envelope
from notention.notes import NoteService
from notention.store import LocalStore, Partition
from notention.sync.mutation_queue import MutationQueue
from notention.sync.orchestrator import SyncOrchestrator, SyncStatus

from conftest import RELAYS

T0 = datetime(2024, 3, 1, 10, 0, tzinfo=timezone.utc)


class Clock:
    """Settable clock for note edits."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def notes(store, queue, clock):
    return NoteService(store, queue, clock=clock)


@pytest_asyncio.fixture
async def second_device(keystore, network):
    """Another device signed in with the same identity."""
    s = LocalStore(":memory:")
    s.connect()
    ks = KeyStore(s)
    await ks.store(keystore.private_key, keystore.public_key)
    q = MutationQueue(s)
    device = {
        "store": s,
        "queue": q,
        "notes": NoteService(s, q),
        "orchestrator": SyncOrchestrator(s, ks, EventCodec(ks), network, q, RELAYS),
    }
    yield device
    s.close()


def remote_note(note_id: str, updated_at: datetime, content: str = "remote") -> Note:
    return Note(id=note_id, title=note_id, content=content, created_at=T0, updated_at=updated_at)


class TestPreconditions:
    """Tests for checks made before any network access."""

    @pytest.mark.asyncio
    async def test_not_logged_in(self, orchestrator, keystore, network):
        """Test a missing identity aborts the cycle."""
        await keystore.clear()

        with pytest.raises(NotLoggedIn):
            await orchestrator.run_cycle()
        assert network.queries == []
        assert network.published == []

    @pytest.mark.asyncio
    async def test_unreachable(self, orchestrator, network):
        """Test unreachable relays raise Offline."""
        network.reachable = False

        with pytest.raises(Offline):
            await orchestrator.run_cycle()
        assert network.queries == []

    @pytest.mark.asyncio
    async def test_no_relays(self, orchestrator, network):
        """Test an empty relay list raises Offline."""
        orchestrator.relays = []

        with pytest.raises(Offline):
            await orchestrator.run_cycle()

    @pytest.mark.asyncio
    async def test_overlapping_cycle_rejected(self, orchestrator, network):
        """Test a second cycle while one is in flight raises SyncInProgress."""
        gate = asyncio.Event()
        original_query = network.query

        async def slow_query(relays, filters):
            await gate.wait()
            return await original_query(relays, filters)

        network.query = slow_query
        first = asyncio.create_task(orchestrator.run_cycle())
        while not orchestrator.in_flight:
            await asyncio.sleep(0)

        with pytest.raises(SyncInProgress):
            await orchestrator.run_cycle()

        gate.set()
        result = await first
        assert result.status == SyncStatus.SUCCESS
        assert not orchestrator.in_flight

    @pytest.mark.asyncio
    async def test_guard_released_after_failure(self, orchestrator, network):
        """Test a failed cycle does not leave the guard set."""
        network.fail_queries = True
        with pytest.raises(RelayError):
            await orchestrator.run_cycle()

        network.fail_queries = False
        result = await orchestrator.run_cycle()
        assert result.status == SyncStatus.SUCCESS


class TestCycle:
    """Tests for a full cycle."""

    @pytest.mark.asyncio
    async def test_first_cycle_publishes_everything(self, orchestrator, notes, network, queue, store):
        """Test the ontology and queued notes are published."""
        note = await notes.create_note(title="First", content="body")

        result = await orchestrator.run_cycle()

        assert result.status == SyncStatus.SUCCESS
        assert result.ontology_published is True
        assert result.notes_pushed == 1
        assert network.published_kinds() == [
            EnvelopeKind.CATEGORIZED_LIST,
            EnvelopeKind.ENCRYPTED_DIRECT_MESSAGE,
        ]
        assert await queue.count() == 0

        stored = await notes.get_note(note.id)
        assert stored.sync_event_id == network.published[-1].id
        assert await orchestrator.last_synced_at() == result.started_at
        assert result.finished_at >= result.started_at

    @pytest.mark.asyncio
    async def test_consecutive_cycles_are_idempotent(self, orchestrator, notes, network):
        """Test a second cycle with no changes publishes and applies nothing."""
        await notes.create_note(title="Stable")
        await orchestrator.run_cycle()
        published = len(network.published)

        result = await orchestrator.run_cycle()

        assert result.publish_count == 0
        assert result.notes_pulled == 0
        assert result.ontology_pulled is False
        assert len(network.published) == published

    @pytest.mark.asyncio
    async def test_incremental_and_full_queries(self, orchestrator, network, keystore):
        """Test since is sent after a watermark exists and omitted on full resync."""
        await orchestrator.run_cycle()
        await orchestrator.run_cycle()
        incremental = network.queries[-1][0]

        await orchestrator.run_cycle(force_full_resync=True)
        full = network.queries[-1][0]

        assert "since" in incremental
        assert incremental["authors"] == [keystore.public_key]
        assert incremental["#p"] == [keystore.public_key]
        assert "since" not in full

    @pytest.mark.asyncio
    async def test_repeated_saves_publish_once(self, orchestrator, codec, notes, network):
        """Test two edits before a cycle produce one envelope with the latest body."""
        note = await notes.create_note(title="Draft", content="v1")
        await notes.update_note(note.id, content="v2")

        await orchestrator.run_cycle()

        sent = [e for e in network.published if e.kind == EnvelopeKind.ENCRYPTED_DIRECT_MESSAGE]
        assert len(sent) == 1
        assert codec.decode(sent[0]).note.content == "v2"

    @pytest.mark.asyncio
    async def test_query_failure_keeps_watermark(self, orchestrator, network):
        """Test a failed query propagates and leaves the watermark alone."""
        network.fail_queries = True

        with pytest.raises(RelayError):
            await orchestrator.run_cycle()
        assert await orchestrator.last_synced_at() is None


class TestNoteMerge:
    """Tests for applying remote note revisions."""

    @pytest.mark.asyncio
    async def test_note_reaches_second_device(self, orchestrator, notes, second_device):
        """Test a note created on one device appears on the other."""
        note = await notes.create_note(title="Shared", content="<p>hi</p>", tags=["#AI"])
        await orchestrator.run_cycle()

        result = await second_device["orchestrator"].run_cycle()

        copy = await second_device["notes"].get_note(note.id)
        assert result.notes_pulled == 1
        assert copy.title == "Shared"
        assert copy.content == "<p>hi</p>"
        assert copy.tags == ["#AI"]
        assert copy.sync_event_id == (await notes.get_note(note.id)).sync_event_id
        assert await second_device["queue"].count() == 0

    @pytest.mark.asyncio
    async def test_remote_newer_wins_and_is_sanitized(self, orchestrator, codec, notes, network, queue, clock):
        """Test a newer remote revision replaces the local copy."""
        note = await notes.create_note(title="n1", content="local")
        envelope = codec.encode_self_sync_note(
            remote_note(note.id, T0 + timedelta(minutes=5), "<p>remote</p><script>steal()</script>")
        )
        network.add(envelope)

        result = await orchestrator.run_cycle()

        stored = await notes.get_note(note.id)
        assert result.notes_pulled == 1
        assert stored.content == "<p>remote</p>"
        assert stored.sync_event_id == envelope.id
        # the superseded local save is not published
        assert await queue.count() == 0
        assert EnvelopeKind.ENCRYPTED_DIRECT_MESSAGE not in network.published_kinds()

    @pytest.mark.asyncio
    async def test_tie_keeps_local(self, orchestrator, codec, notes, network):
        """Test equal timestamps keep the local copy and republish it."""
        note = await notes.create_note(title="n1", content="local")
        network.add(codec.encode_self_sync_note(remote_note(note.id, note.updated_at, "remote")))

        result = await orchestrator.run_cycle()

        assert (await notes.get_note(note.id)).content == "local"
        assert result.notes_pulled == 0
        assert result.notes_pushed == 1

    @pytest.mark.asyncio
    async def test_local_newer_kept(self, orchestrator, codec, notes, network, clock):
        """Test an older remote revision does not overwrite a newer local edit."""
        clock.now = T0 + timedelta(minutes=10)
        note = await notes.create_note(title="n1", content="local")
        network.add(codec.encode_self_sync_note(remote_note(note.id, T0, "stale")))

        await orchestrator.run_cycle()

        assert (await notes.get_note(note.id)).content == "local"

    @pytest.mark.asyncio
    async def test_newest_revision_applied(self, orchestrator, codec, notes, network):
        """Test only the latest envelope per note is used."""
        older = codec.encode_self_sync_note(remote_note("note-r", T0, "v1"))
        newer = codec.encode_self_sync_note(remote_note("note-r", T0 + timedelta(minutes=1), "v2"))
        network.add(newer)
        network.add(older)

        await orchestrator.run_cycle()

        stored = await notes.get_note("note-r")
        assert stored.content == "v2"
        assert stored.sync_event_id == newer.id

    @pytest.mark.asyncio
    async def test_bad_envelope_skipped(self, orchestrator, codec, notes, network):
        """Test an undecodable envelope is counted and the rest still applies."""
        good = codec.encode_self_sync_note(remote_note("note-good", T0))
        bad = replace(
            codec.encode_self_sync_note(remote_note("note-bad", T0)), content="garbage"
        )
        network.add(good)
        network.add(bad)

        result = await orchestrator.run_cycle()

        assert result.status == SyncStatus.PARTIAL
        assert len(result.errors) == 1
        assert "ParseFailure" in result.errors[0]
        assert await notes.get_note("note-good") is not None
        assert await notes.get_note("note-bad") is None
        assert await orchestrator.last_synced_at() is not None

    @pytest.mark.asyncio
    async def test_mistyped_payload_skipped(self, orchestrator, codec, keystore, notes, network):
        """Test a payload with a non-string body is dropped without aborting the cycle."""
        good = codec.encode_self_sync_note(remote_note("note-good", T0))
        payload = remote_note("note-null", T0).to_dict()
        payload["content"] = None
        mistyped = sign_envelope(
            keystore.private_key,
            EnvelopeKind.ENCRYPTED_DIRECT_MESSAGE,
            nip04.encrypt(keystore.private_key, keystore.public_key, json.dumps(payload)),
            [["p", keystore.public_key], ["d", "notention:note-null"]],
            int(T0.timestamp()),
        )
        network.add(good)
        network.add(mistyped)
        await notes.create_note(title="local")

        result = await orchestrator.run_cycle()

        assert result.status == SyncStatus.PARTIAL
        assert len(result.errors) == 1
        assert "ParseFailure" in result.errors[0]
        assert await notes.get_note("note-good") is not None
        assert await notes.get_note("note-null") is None
        assert result.notes_pushed == 1
        assert await orchestrator.last_synced_at() is not None

    @pytest.mark.asyncio
    async def test_other_authors_ignored(self, orchestrator, network, notes):
        """Test envelopes signed by someone else never become notes."""
        s = LocalStore(":memory:")
        stranger = KeyStore(s)
        await stranger.store(*KeyStore.generate())
        network.add(EventCodec(stranger).encode_self_sync_note(remote_note("note-x", T0)))

        await orchestrator.run_cycle(force_full_resync=True)

        assert await notes.get_note("note-x") is None
        s.close()


class TestDeletion:
    """Tests for tombstones and local deletion records."""

    @pytest.mark.asyncio
    async def test_edit_then_delete_scenario(self, orchestrator, notes, network, queue, clock):
        """Test an edited note is tombstoned by its latest envelope id."""
        note = await notes.create_note(title="n1")
        await orchestrator.run_cycle()
        e1 = (await notes.get_note(note.id)).sync_event_id

        clock.now = T0 + timedelta(minutes=5)
        await notes.update_note(note.id, content="edited")
        await orchestrator.run_cycle()
        e2 = (await notes.get_note(note.id)).sync_event_id
        assert e2 != e1
        assert await queue.count() == 0

        await notes.delete_note(note.id)
        entry = await queue.get(note.id)
        assert entry.remote_event_id == e2

        result = await orchestrator.run_cycle()

        tombstone = network.published[-1]
        assert result.tombstones_published == 1
        assert tombstone.kind == EnvelopeKind.DELETION
        assert tombstone.tag_values("e") == [e2]
        assert tombstone.tag_value("reason") == "Note deleted by user"
        assert await queue.count() == 0
        assert await notes.get_note(note.id) is None

        # the older revision is still on the relay but must not come back
        result = await orchestrator.run_cycle(force_full_resync=True)
        assert await notes.get_note(note.id) is None
        assert result.notes_suppressed == 1

    @pytest.mark.asyncio
    async def test_later_remote_edit_beats_local_delete(self, orchestrator, codec, store, network, notes):
        """Test a remote edit made after the delete restores the note."""
        await store.set(
            Partition.TOMBSTONES,
            "note-z",
            {"deletedAt": format_datetime(T0), "remoteEventId": None},
        )
        network.add(codec.encode_self_sync_note(remote_note("note-z", T0 + timedelta(seconds=30))))

        result = await orchestrator.run_cycle()

        assert result.notes_pulled == 1
        assert await notes.get_note("note-z") is not None
        assert await store.get(Partition.TOMBSTONES, "note-z") is None

    @pytest.mark.asyncio
    async def test_delete_of_unpublished_note(self, orchestrator, notes, network, queue):
        """Test deleting a never-published note needs no network call."""
        note = await notes.create_note(title="draft")
        await notes.delete_note(note.id)

        result = await orchestrator.run_cycle()

        assert result.tombstones_published == 0
        assert EnvelopeKind.DELETION not in network.published_kinds()
        assert await queue.count() == 0

    @pytest.mark.asyncio
    async def test_save_for_missing_note_dropped(self, orchestrator, queue):
        """Test a queued save whose note is gone is discarded."""
        await queue.queue_save("ghost")

        result = await orchestrator.run_cycle()

        assert result.queue_dropped == 1
        assert await queue.count() == 0


class TestPublishFailures:
    """Tests for relays refusing envelopes."""

    @pytest.mark.asyncio
    async def test_rejected_save_stays_queued(self, orchestrator, notes, network, queue, store):
        """Test failed publishes keep their queue entries and flag."""
        note = await notes.create_note(title="n1")
        network.accept = False

        result = await orchestrator.run_cycle()

        assert result.status == SyncStatus.PARTIAL
        assert result.notes_pushed == 0
        assert result.ontology_published is False
        assert any("PublishFailure" in e for e in result.errors)
        assert (await queue.get(note.id)) is not None
        assert (await notes.get_note(note.id)).sync_event_id is None

        network.accept = True
        result = await orchestrator.run_cycle()
        assert result.notes_pushed == 1
        assert await queue.count() == 0

    @pytest.mark.asyncio
    async def test_rejected_tombstone_stays_queued(self, orchestrator, queue, network):
        """Test a refused tombstone is retried next cycle."""
        await queue.queue_delete("n1", "e-old")
        network.accept = False

        await orchestrator.run_cycle()

        assert (await queue.get("n1")).remote_event_id == "e-old"


class TestOntologySync:
    """Tests for the taxonomy step."""

    @pytest.mark.asyncio
    async def test_local_change_published_and_flag_cleared(self, orchestrator, notes, store, network):
        """Test an edited tree is published and the flag cleared."""
        await orchestrator.run_cycle()
        tree = await notes.get_ontology()
        tree.nodes["idea"] = OntologyNode(id="idea", label="#Idea")
        tree.root_ids.append("idea")
        await notes.set_ontology(tree)
        assert await store.get(Partition.FLAGS, "ontology_needs_sync") is True

        result = await orchestrator.run_cycle()

        assert result.ontology_published is True
        assert await store.get(Partition.FLAGS, "ontology_needs_sync") is None
        assert len([e for e in network.events.values() if e.kind == EnvelopeKind.CATEGORIZED_LIST]) == 1

    @pytest.mark.asyncio
    async def test_remote_tree_adopted_on_new_device(self, orchestrator, notes, second_device):
        """Test a published tree replaces the default on another device."""
        tree = OntologyTree(
            nodes={"work": OntologyNode(id="work", label="#Work")},
            root_ids=["work"],
        )
        await notes.set_ontology(tree)
        await orchestrator.run_cycle()

        updates = []
        second_device["orchestrator"]._on_ontology_updated = updates.append
        result = await second_device["orchestrator"].run_cycle()

        adopted = await second_device["notes"].get_ontology()
        assert result.ontology_pulled is True
        assert result.ontology_published is False
        assert adopted.root_ids == ["work"]
        assert updates and updates[0].root_ids == ["work"]
