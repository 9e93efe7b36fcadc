"""Application facade wiring the store, identity, codec, relays and sync."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Any

from .config import Config
from .errors import EnvelopeError, NoteNotFound, NotentionError, NotLoggedIn, SharingDisabled
from .identity import KeyStore, derive_public_key, validate_public_key
from .models import DirectMessage, OntologyTree
from .nostr.codec import EventCodec, IncomingDirectMessage, PublicNote
from .nostr.event import Envelope, EnvelopeKind
from .nostr.relay import RelayPool, Subscription, invoke_callback
from .notes import NoteService
from .store import LocalStore, Partition
from .sync.mutation_queue import MutationQueue
from .sync.orchestrator import SyncOrchestrator, SyncResult
from .sync.sanitize import sanitize_html

logger = logging.getLogger(__name__)

MessageCallback = Callable[[DirectMessage], Awaitable[None] | None]
PublicNoteCallback = Callable[[PublicNote], Awaitable[None] | None]


class NotentionApp:
    """One local identity with its notes, messages and relay connections."""

    def __init__(
        self,
        config: Config,
        store: LocalStore | None = None,
        transport: RelayPool | None = None,
    ):
        """Initialize the application.

        Args:
            config: Loaded configuration.
            store: Local store to use instead of the configured database.
            transport: Relay transport to use instead of a new pool.
        """
        self.config = config
        self.store = store or LocalStore(config.store.db_path)
        self.transport = transport or RelayPool(config.relays)

        self.keystore = KeyStore(self.store)
        self.codec = EventCodec(self.keystore, config.privacy)
        self.queue = MutationQueue(self.store)
        self.notes = NoteService(self.store, self.queue)
        self.orchestrator = SyncOrchestrator(
            store=self.store,
            keystore=self.keystore,
            codec=self.codec,
            transport=self.transport,
            queue=self.queue,
            relays=config.relays.urls,
            on_ontology_updated=self._on_ontology_updated,
        )

        self.ontology: OntologyTree | None = None
        self._stop_event = asyncio.Event()
        self._started = False

    async def start(self) -> None:
        """Open the store and load the identity, if one is saved."""
        if self._started:
            return
        self.store.connect()
        if await self.keystore.load():
            logger.info(f"Logged in as {self.keystore.public_key}")
        else:
            logger.info("No identity stored")
        self.ontology = await self.notes.get_ontology()
        self._started = True

    async def close(self) -> None:
        """Stop the sync loop, drop subscriptions and close the store."""
        self._stop_event.set()
        await self.transport.close()
        self.store.close()
        self._started = False

    def _on_ontology_updated(self, tree: OntologyTree) -> None:
        self.ontology = tree

    def _require_identity(self) -> str:
        if not self.keystore.is_logged_in():
            raise NotLoggedIn("Generate or import a key first")
        return self.keystore.public_key

    # ==================== Identity ====================

    async def generate_or_import_identity(self, private_key: str | None = None) -> str:
        """Create a new keypair, or adopt an existing private key.

        Switching to a different identity resets the sync watermark so the
        next cycle fetches that identity's full history.

        Returns:
            The public key now in use.

        Raises:
            InvalidKey: If ``private_key`` is not a valid secp256k1 secret.
        """
        if private_key:
            private_key = private_key.strip().lower()
            public_key = derive_public_key(private_key)
        else:
            private_key, public_key = KeyStore.generate()

        previous = self.keystore.public_key
        await self.keystore.store(private_key, public_key)
        if previous != public_key:
            await self.store.clear(Partition.SYNC_STATE)
        return public_key

    async def logout(self) -> None:
        """Forget the identity and close its live subscriptions.

        Notes stay in the local store.
        """
        for subscription in list(self.transport.subscriptions.values()):
            subscription.cancel()
        await self.keystore.clear()
        await self.store.clear(Partition.SYNC_STATE)

    # ==================== Sync ====================

    async def run_sync_cycle(self, force_full_resync: bool = False) -> SyncResult:
        return await self.orchestrator.run_cycle(force_full_resync=force_full_resync)

    async def sync_loop(
        self,
        interval_seconds: int | None = None,
        stop_event: asyncio.Event | None = None,
    ) -> None:
        """Run sync cycles at a fixed cadence until stopped.

        Args:
            interval_seconds: Seconds between cycle starts. Defaults to the
                configured interval.
            stop_event: Event to signal the loop should stop. Defaults to the
                one set by :meth:`close`.
        """
        if interval_seconds is None:
            interval_seconds = self.config.sync.interval_minutes * 60
        stop_event = stop_event or self._stop_event

        logger.info(f"Starting sync loop with {interval_seconds}s interval")

        while not stop_event.is_set():
            try:
                await self.run_sync_cycle()
            except NotentionError as e:
                logger.warning(f"Sync skipped: {e}")
            except Exception:
                logger.exception("Sync loop error")

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
            except asyncio.TimeoutError:
                pass

        logger.info("Sync loop stopped")

    # ==================== Ontology ====================

    async def set_ontology(self, tree: OntologyTree) -> OntologyTree:
        self.ontology = await self.notes.set_ontology(tree)
        return self.ontology

    # ==================== Publishing ====================

    async def publish_public_note(self, note_id: str) -> Envelope:
        """Publish a note in the clear as a kind-1 envelope.

        Raises:
            SharingDisabled: If public sharing is turned off.
            NoteNotFound: If the note does not exist.
            PublishFailure: If no relay accepted the envelope.
        """
        if not self.config.privacy.share_public_notes_globally:
            raise SharingDisabled("Public sharing is disabled in the privacy settings")
        self._require_identity()

        note = await self.notes.get_note(note_id)
        if note is None:
            raise NoteNotFound(f"Note not found: {note_id}")

        envelope = self.codec.encode_public_note(note)
        await self.orchestrator.publish(envelope)

        if not note.is_shared_publicly:
            await self.notes.update_note(note_id, is_shared_publicly=True)
        logger.info(f"Published note {note_id} publicly as {envelope.id[:12]}")
        return envelope

    async def send_direct_message(self, recipient: str, text: str) -> DirectMessage:
        """Encrypt and publish a direct message, keeping a local copy.

        Raises:
            InvalidKey: If the recipient is not a valid public key.
            PublishFailure: If no relay accepted the envelope.
        """
        me = self._require_identity()
        recipient = validate_public_key(recipient)

        envelope = self.codec.encode_direct_message(recipient, text)
        await self.orchestrator.publish(envelope)

        message = DirectMessage(
            id=envelope.id,
            sender=me,
            recipient=recipient,
            content=text,
            timestamp=datetime.fromtimestamp(envelope.created_at, tz=timezone.utc),
        )
        await self.store.set(Partition.MESSAGES, message.id, message.to_dict())
        return message

    # ==================== Live subscriptions ====================

    def subscribe_direct_messages(self, on_message: MessageCallback) -> Subscription:
        """Deliver incoming direct messages as they arrive.

        Messages are stored locally once and delivered once. Envelopes that
        fail to decode are logged and skipped.

        Raises:
            NotLoggedIn: If no identity is loaded.
        """
        me = self._require_identity()

        async def handle(envelope: Envelope) -> None:
            try:
                decoded = self.codec.decode(envelope)
            except EnvelopeError as e:
                logger.warning(f"Skipping direct message {envelope.id[:12]}: {e}")
                return
            if not isinstance(decoded, IncomingDirectMessage):
                return
            if await self.store.get(Partition.MESSAGES, decoded.message.id) is not None:
                return

            await self.store.set(Partition.MESSAGES, decoded.message.id, decoded.message.to_dict())
            await invoke_callback(on_message, decoded.message)

        return self.transport.subscribe(
            self.config.relays.urls,
            [{"kinds": [int(EnvelopeKind.ENCRYPTED_DIRECT_MESSAGE)], "#p": [me]}],
            handle,
            subscription_id=f"dm-{me[:12]}",
        )

    def subscribe_to_topic(self, tag: str, on_note: PublicNoteCallback) -> Subscription:
        """Deliver public notes carrying a topic tag.

        Note bodies are sanitized before delivery.
        """
        topic = tag.lstrip("#").strip()
        if not topic:
            raise ValueError("Topic tag must not be empty")

        seen: set[str] = set()

        async def handle(envelope: Envelope) -> None:
            if envelope.id in seen:
                return
            try:
                decoded = self.codec.decode(envelope)
            except EnvelopeError as e:
                logger.warning(f"Skipping public note {envelope.id[:12]}: {e}")
                return
            if not isinstance(decoded, PublicNote):
                return

            seen.add(envelope.id)
            decoded.content = sanitize_html(decoded.content)
            await invoke_callback(on_note, decoded)

        return self.transport.subscribe(
            self.config.relays.urls,
            [{"kinds": [int(EnvelopeKind.TEXT_NOTE)], "#t": [topic]}],
            handle,
            subscription_id=f"topic-{topic}",
        )

    def unsubscribe(self, handle_or_id: Subscription | str) -> bool:
        """Cancel a live subscription by handle or id."""
        if not isinstance(handle_or_id, str):
            handle_or_id = handle_or_id.id
        return self.transport.unsubscribe(handle_or_id)

    async def run(self) -> None:
        """Log incoming direct messages and sync periodically until closed.

        Raises:
            NotLoggedIn: If no identity is loaded.
        """
        self._require_identity()

        def log_message(message: DirectMessage) -> None:
            logger.info(f"Direct message from {message.sender[:12]}: {message.content}")

        self.subscribe_direct_messages(log_message)

        if self.config.sync.enabled:
            await self.sync_loop()
        else:
            logger.info("Sync disabled; listening for direct messages only")
            await self._stop_event.wait()

    # ==================== Status ====================

    async def status(self) -> dict[str, Any]:
        """Identity, sync bookkeeping and store statistics."""
        notes = await self.store.items(Partition.NOTES)
        return {
            "logged_in": self.keystore.is_logged_in(),
            "public_key": self.keystore.public_key,
            "notes": len(notes),
            "sync": await self.orchestrator.get_status(),
            "subscriptions": sorted(self.transport.subscriptions),
            "store": self.store.get_stats(),
        }


async def run_app(config: Config) -> None:
    """Run the application until interrupted.

    Args:
        config: Loaded configuration.
    """
    app = NotentionApp(config)
    await app.start()

    try:
        await app.run()
    finally:
        await app.close()
