"""Durable queue of pending note publishes and tombstones.

Holds at most one entry per entity. Queuing a save replaces whatever was
pending for that entity; queuing a delete keeps the most recent known remote
event id so the tombstone can still target it.
"""

import logging

from ..models import MutationAction, MutationEntry
from ..store import LocalStore, Partition

logger = logging.getLogger(__name__)


class MutationQueue:
    """Per-entity pending operations stored in the local store."""

    def __init__(self, store: LocalStore):
        self._store = store

    async def get(self, entity_id: str) -> MutationEntry | None:
        data = await self._store.get(Partition.MUTATION_QUEUE, entity_id)
        return MutationEntry.from_dict(data) if data else None

    async def queue_save(self, entity_id: str) -> MutationEntry:
        """Record that the entity must be (re)published."""
        existing = await self.get(entity_id)
        entry = MutationEntry(
            entity_id=entity_id,
            action=MutationAction.SAVE,
            remote_event_id=existing.remote_event_id if existing else None,
        )
        await self._store.set(Partition.MUTATION_QUEUE, entity_id, entry.to_dict())
        logger.debug(f"Queued save for {entity_id}")
        return entry

    async def queue_delete(
        self, entity_id: str, remote_event_id: str | None = None
    ) -> MutationEntry:
        """Record that the entity must be tombstoned.

        Args:
            entity_id: The deleted entity.
            remote_event_id: Id of the latest envelope published for it, if
                known. Falls back to the id held by an existing entry.
        """
        existing = await self.get(entity_id)
        if remote_event_id is None and existing is not None:
            remote_event_id = existing.remote_event_id

        entry = MutationEntry(
            entity_id=entity_id,
            action=MutationAction.DELETE,
            remote_event_id=remote_event_id,
        )
        await self._store.set(Partition.MUTATION_QUEUE, entity_id, entry.to_dict())
        logger.debug(f"Queued delete for {entity_id} (remote={remote_event_id})")
        return entry

    async def remove(self, entity_id: str) -> bool:
        return await self._store.delete(Partition.MUTATION_QUEUE, entity_id)

    async def pending(self) -> list[MutationEntry]:
        """All entries, oldest first."""
        entries = [
            MutationEntry.from_dict(data)
            for _, data in await self._store.items(Partition.MUTATION_QUEUE)
        ]
        entries.sort(key=lambda e: e.queued_at)
        return entries

    async def count(self) -> int:
        return len(await self._store.items(Partition.MUTATION_QUEUE))
