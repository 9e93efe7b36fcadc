"""Local note, folder and ontology operations.

Every change is written to the store first and then recorded in the
mutation queue, so edits made offline are published by the next sync cycle.
"""

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from .errors import FolderNotFound, NoteNotFound
from .models import (
    DirectMessage,
    Folder,
    Note,
    OntologyTree,
    format_datetime,
    new_folder_id,
    new_note_id,
    utc_now,
)
from .store import LocalStore, Partition
from .sync.mutation_queue import MutationQueue
from .sync.orchestrator import ONTOLOGY_KEY, ONTOLOGY_NEEDS_SYNC, load_ontology

logger = logging.getLogger(__name__)

EXPORT_VERSION = 1

# Fields a caller may change through update_note
UPDATABLE_FIELDS = {
    "title",
    "content",
    "tags",
    "values",
    "fields",
    "status",
    "folder_id",
    "pinned",
    "archived",
    "is_shared_publicly",
}


class NoteService:
    """CRUD over notes and the ontology, feeding the mutation queue."""

    def __init__(
        self,
        store: LocalStore,
        queue: MutationQueue,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._store = store
        self._queue = queue
        self._clock = clock

    def _next_timestamp(self, previous: datetime | None = None) -> datetime:
        """Current time, nudged past ``previous`` so an edit always wins locally."""
        now = self._clock()
        if previous is not None and now <= previous:
            now = previous + timedelta(microseconds=1)
        return now

    # ==================== Notes ====================

    async def create_note(
        self,
        title: str = "Untitled Note",
        content: str = "",
        tags: list[str] | None = None,
        values: dict[str, str] | None = None,
        fields: dict[str, str] | None = None,
        status: str = "draft",
        folder_id: str | None = None,
    ) -> Note:
        now = self._next_timestamp()
        note = Note(
            id=new_note_id(),
            title=title,
            content=content,
            tags=list(tags or []),
            values=dict(values or {}),
            fields=dict(fields or {}),
            status=status,
            created_at=now,
            updated_at=now,
            folder_id=folder_id,
        )
        await self._store.set(Partition.NOTES, note.id, note.to_dict())
        await self._queue.queue_save(note.id)
        logger.info(f"Created note {note.id}")
        return note

    async def get_note(self, note_id: str) -> Note | None:
        data = await self._store.get(Partition.NOTES, note_id)
        return Note.from_dict(data) if data else None

    async def list_notes(self, include_archived: bool = True) -> list[Note]:
        """All notes, most recently edited first."""
        notes = [Note.from_dict(data) for _, data in await self._store.items(Partition.NOTES)]
        if not include_archived:
            notes = [n for n in notes if not n.archived]
        notes.sort(key=lambda n: n.updated_at, reverse=True)
        return notes

    async def update_note(self, note_id: str, **updates: Any) -> Note:
        """Apply field updates and queue the note for publishing.

        Args:
            note_id: Note to change.
            **updates: New values keyed by ``Note`` attribute name.

        Returns:
            The updated note.

        Raises:
            NoteNotFound: If the note does not exist.
            ValueError: If an update names a field that cannot be changed.
        """
        unknown = set(updates) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update fields: {', '.join(sorted(unknown))}")

        note = await self.get_note(note_id)
        if note is None:
            raise NoteNotFound(f"Note not found: {note_id}")

        for name, value in updates.items():
            setattr(note, name, value)
        note.updated_at = self._next_timestamp(note.updated_at)

        await self._store.set(Partition.NOTES, note.id, note.to_dict())
        await self._queue.queue_save(note.id)
        logger.debug(f"Updated note {note.id}: {', '.join(updates)}")
        return note

    async def delete_note(self, note_id: str) -> bool:
        """Delete a note locally and queue a tombstone for its last envelope.

        A local tombstone keeps stale remote copies from bringing the note
        back on the next pull.

        Returns:
            True if the note existed.
        """
        note = await self.get_note(note_id)
        if note is None:
            return False

        await self._store.delete(Partition.NOTES, note_id)
        await self._store.set(
            Partition.TOMBSTONES,
            note_id,
            {
                "deletedAt": format_datetime(self._next_timestamp(note.updated_at)),
                "remoteEventId": note.sync_event_id,
            },
        )
        await self._queue.queue_delete(note_id, note.sync_event_id)
        logger.info(f"Deleted note {note_id}")
        return True

    async def search_notes(self, query: str) -> list[Note]:
        """Notes whose title, body or a tag contains ``query``, ignoring case.

        The body is matched as stored, markup included. An empty query
        matches every note.
        """
        needle = query.strip().casefold()
        return [
            note
            for note in await self.list_notes()
            if needle in note.title.casefold()
            or needle in note.content.casefold()
            or any(needle in tag.casefold() for tag in note.tags)
        ]

    # ==================== Folders ====================

    async def create_folder(self, name: str, parent_id: str | None = None) -> Folder:
        """Create a folder, optionally nested under another.

        Raises:
            ValueError: If the name is blank.
            FolderNotFound: If ``parent_id`` names no folder.
        """
        name = name.strip()
        if not name:
            raise ValueError("Folder name must not be empty")
        if parent_id is not None and await self.get_folder(parent_id) is None:
            raise FolderNotFound(f"Folder not found: {parent_id}")

        now = self._clock()
        folder = Folder(id=new_folder_id(), name=name, parent_id=parent_id, created_at=now, updated_at=now)
        await self._store.set(Partition.FOLDERS, folder.id, folder.to_dict())
        logger.info(f"Created folder {folder.id} ({name})")
        return folder

    async def get_folder(self, folder_id: str) -> Folder | None:
        data = await self._store.get(Partition.FOLDERS, folder_id)
        return Folder.from_dict(data) if data else None

    async def list_folders(self) -> list[Folder]:
        """All folders, sorted by name."""
        folders = [Folder.from_dict(data) for _, data in await self._store.items(Partition.FOLDERS)]
        folders.sort(key=lambda f: f.name.casefold())
        return folders

    async def rename_folder(self, folder_id: str, name: str) -> Folder:
        name = name.strip()
        if not name:
            raise ValueError("Folder name must not be empty")
        folder = await self.get_folder(folder_id)
        if folder is None:
            raise FolderNotFound(f"Folder not found: {folder_id}")

        folder.name = name
        folder.updated_at = self._next_timestamp(folder.updated_at)
        await self._store.set(Partition.FOLDERS, folder.id, folder.to_dict())
        return folder

    async def move_note(self, note_id: str, folder_id: str | None) -> Note:
        """Put a note in a folder, or take it out with ``None``.

        Raises:
            NoteNotFound: If the note does not exist.
            FolderNotFound: If ``folder_id`` names no folder.
        """
        if folder_id is not None and await self.get_folder(folder_id) is None:
            raise FolderNotFound(f"Folder not found: {folder_id}")
        return await self.update_note(note_id, folder_id=folder_id)

    async def delete_folder(self, folder_id: str) -> bool:
        """Delete a folder and its subfolders.

        Notes filed in any of them are kept, moved out of the folder and
        queued for publishing.

        Returns:
            True if the folder existed.
        """
        folders = {f.id: f for f in await self.list_folders()}
        if folder_id not in folders:
            return False

        doomed = {folder_id}
        pending = [folder_id]
        while pending:
            parent = pending.pop()
            for folder in folders.values():
                if folder.parent_id == parent and folder.id not in doomed:
                    doomed.add(folder.id)
                    pending.append(folder.id)

        for note in await self.list_notes():
            if note.folder_id in doomed:
                await self.update_note(note.id, folder_id=None)

        await self._store.delete_many(Partition.FOLDERS, list(doomed))
        logger.info(f"Deleted folder {folder_id} ({len(doomed) - 1} subfolders)")
        return True

    # ==================== Ontology ====================

    async def get_ontology(self) -> OntologyTree:
        """The stored ontology, seeding the default tree on first use."""
        return await load_ontology(self._store)

    async def set_ontology(self, tree: OntologyTree) -> OntologyTree:
        """Replace the ontology and flag it for publishing."""
        previous = await self._store.get(Partition.ONTOLOGY, ONTOLOGY_KEY)
        previous_at = OntologyTree.from_dict(previous).updated_at if previous else None
        tree.updated_at = self._next_timestamp(previous_at)

        await self._store.set(Partition.ONTOLOGY, ONTOLOGY_KEY, tree.to_dict())
        await self._store.set(Partition.FLAGS, ONTOLOGY_NEEDS_SYNC, True)
        logger.info(f"Ontology updated ({len(tree.nodes)} nodes)")
        return tree

    # ==================== Messages ====================

    async def list_messages(self, counterparty: str | None = None) -> list[DirectMessage]:
        """Stored direct messages, newest first."""
        messages = [
            DirectMessage.from_dict(data)
            for _, data in await self._store.items(Partition.MESSAGES)
        ]
        if counterparty is not None:
            messages = [
                m for m in messages if counterparty in (m.sender, m.recipient)
            ]
        messages.sort(key=lambda m: m.timestamp, reverse=True)
        return messages

    # ==================== Import / export ====================

    async def export_data(self) -> dict[str, Any]:
        """Notes, folders and ontology as one JSON-compatible document. Keys are not included."""
        ontology = await self.get_ontology()
        return {
            "version": EXPORT_VERSION,
            "exportedAt": format_datetime(self._clock()),
            "notes": [note.to_dict() for note in await self.list_notes()],
            "folders": [folder.to_dict() for folder in await self.list_folders()],
            "ontology": ontology.to_dict(),
        }

    async def import_data(self, data: dict[str, Any]) -> int:
        """Merge an export document into the local store.

        Each note is kept only if it is newer than the local copy and is then
        queued for publishing. Folders are added or replaced when newer and
        the ontology is adopted if it is newer.

        Returns:
            Number of notes written.

        Raises:
            KeyError, TypeError, ValueError: If the document is malformed.
        """
        imported = 0
        for raw in data.get("notes") or []:
            note = Note.from_dict(raw)
            note.sync_event_id = None
            existing = await self.get_note(note.id)
            if existing is not None and existing.updated_at >= note.updated_at:
                continue
            if existing is not None:
                note.sync_event_id = existing.sync_event_id

            await self._store.set(Partition.NOTES, note.id, note.to_dict())
            await self._store.delete(Partition.TOMBSTONES, note.id)
            await self._queue.queue_save(note.id)
            imported += 1

        for raw in data.get("folders") or []:
            folder = Folder.from_dict(raw)
            existing_folder = await self.get_folder(folder.id)
            if existing_folder is None or folder.updated_at > existing_folder.updated_at:
                await self._store.set(Partition.FOLDERS, folder.id, folder.to_dict())

        if data.get("ontology"):
            tree = OntologyTree.from_dict(data["ontology"])
            current = await self.get_ontology()
            if tree.updated_at > current.updated_at:
                await self._store.set(Partition.ONTOLOGY, ONTOLOGY_KEY, tree.to_dict())
                await self._store.set(Partition.FLAGS, ONTOLOGY_NEEDS_SYNC, True)

        logger.info(f"Imported {imported} notes")
        return imported
