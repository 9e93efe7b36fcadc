"""Domain models for notes, folders, the ontology tree, messages and queued mutations.

All timestamps are timezone-aware UTC datetimes. The JSON form of each model
uses camelCase keys and ISO-8601 strings so that payloads written by other
Notention clients decode unchanged.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def parse_datetime(value: Any) -> datetime:
    """Reconstruct a datetime from its serialized form.

    Accepts ISO-8601 strings (including a trailing ``Z``), epoch
    milliseconds as produced by JavaScript clients, or datetimes.
    Naive values are taken to be UTC.
    """
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)):
        dt = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)
    else:
        raise ValueError(f"Cannot parse datetime from {value!r}")

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_datetime(value: datetime) -> str:
    """Serialize a datetime as ISO-8601 in UTC."""
    return value.astimezone(timezone.utc).isoformat()


def to_unix_seconds(value: datetime) -> int:
    """Whole seconds since the epoch, as used in envelope ``created_at``."""
    return int(value.timestamp())


def _text(data: dict[str, Any], key: str, default: str) -> str:
    value = data.get(key, default)
    if not isinstance(value, str):
        raise TypeError(f"{key} must be a string, got {type(value).__name__}")
    return value


def _optional_text(data: dict[str, Any], key: str) -> str | None:
    value = data.get(key)
    if value is not None and not isinstance(value, str):
        raise TypeError(f"{key} must be a string, got {type(value).__name__}")
    return value


def new_note_id() -> str:
    """Generate a note identifier."""
    return f"note-{uuid.uuid4().hex[:16]}"


@dataclass
class Note:
    """A single note. ``updated_at`` decides conflicts."""

    id: str
    title: str = "Untitled Note"
    content: str = ""
    tags: list[str] = field(default_factory=list)
    values: dict[str, str] = field(default_factory=dict)
    fields: dict[str, str] = field(default_factory=dict)
    status: str = "draft"  # "draft" or "published"
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    folder_id: str | None = None
    pinned: bool = False
    archived: bool = False
    is_shared_publicly: bool = False
    sync_event_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-compatible dictionary."""
        data: dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "content": self.content,
            "tags": list(self.tags),
            "values": dict(self.values),
            "fields": dict(self.fields),
            "status": self.status,
            "createdAt": format_datetime(self.created_at),
            "updatedAt": format_datetime(self.updated_at),
            "pinned": self.pinned,
            "archived": self.archived,
            "isSharedPublicly": self.is_shared_publicly,
        }
        if self.folder_id is not None:
            data["folderId"] = self.folder_id
        if self.sync_event_id is not None:
            data["syncEventId"] = self.sync_event_id
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Note":
        """Create from a dictionary produced by :meth:`to_dict`.

        Raises:
            KeyError, TypeError, ValueError: If required fields are missing
                or malformed.
        """
        return cls(
            id=str(data["id"]),
            title=_text(data, "title", ""),
            content=_text(data, "content", ""),
            tags=[str(t) for t in data.get("tags") or []],
            values={str(k): str(v) for k, v in (data.get("values") or {}).items()},
            fields={str(k): str(v) for k, v in (data.get("fields") or {}).items()},
            status=_text(data, "status", "draft"),
            created_at=parse_datetime(data["createdAt"]),
            updated_at=parse_datetime(data["updatedAt"]),
            folder_id=_optional_text(data, "folderId"),
            pinned=bool(data.get("pinned", False)),
            archived=bool(data.get("archived", False)),
            is_shared_publicly=bool(data.get("isSharedPublicly", False)),
            sync_event_id=_optional_text(data, "syncEventId"),
        )


def new_folder_id() -> str:
    return f"folder-{uuid.uuid4().hex[:12]}"


@dataclass
class Folder:
    """A local grouping of notes. Membership lives on ``Note.folder_id``."""

    id: str
    name: str
    parent_id: str | None = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "createdAt": format_datetime(self.created_at),
            "updatedAt": format_datetime(self.updated_at),
        }
        if self.parent_id is not None:
            data["parentId"] = self.parent_id
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Folder":
        return cls(
            id=str(data["id"]),
            name=_text(data, "name", ""),
            parent_id=_optional_text(data, "parentId"),
            created_at=parse_datetime(data["createdAt"]),
            updated_at=parse_datetime(data["updatedAt"]),
        )


@dataclass
class OntologyNode:
    """A node of the tag taxonomy."""

    id: str
    label: str
    attributes: dict[str, str] | None = None
    parent_id: str | None = None
    children: list[str] | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"id": self.id, "label": self.label}
        if self.attributes is not None:
            data["attributes"] = dict(self.attributes)
        if self.parent_id is not None:
            data["parentId"] = self.parent_id
        if self.children is not None:
            data["children"] = list(self.children)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OntologyNode":
        return cls(
            id=str(data["id"]),
            label=str(data["label"]),
            attributes=data.get("attributes"),
            parent_id=data.get("parentId"),
            children=data.get("children"),
        )


@dataclass
class OntologyTree:
    """The per-identity taxonomy singleton."""

    nodes: dict[str, OntologyNode] = field(default_factory=dict)
    root_ids: list[str] = field(default_factory=list)
    updated_at: datetime = EPOCH

    def to_dict(self) -> dict[str, Any]:
        return {
            "nodes": {node_id: node.to_dict() for node_id, node in self.nodes.items()},
            "rootIds": list(self.root_ids),
            "updatedAt": format_datetime(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OntologyTree":
        updated = data.get("updatedAt")
        return cls(
            nodes={
                str(node_id): OntologyNode.from_dict(node)
                for node_id, node in (data.get("nodes") or {}).items()
            },
            root_ids=[str(r) for r in data.get("rootIds") or []],
            updated_at=parse_datetime(updated) if updated is not None else EPOCH,
        )


def default_ontology() -> OntologyTree:
    """The taxonomy seeded on first start.

    It is stamped with the epoch so that any tree already published from
    another device wins the first reconciliation.
    """
    return OntologyTree(
        nodes={
            "ai": OntologyNode(id="ai", label="#AI", children=["ml", "nlp"]),
            "ml": OntologyNode(id="ml", label="#MachineLearning", parent_id="ai"),
            "nlp": OntologyNode(id="nlp", label="#NLP", parent_id="ai"),
            "project": OntologyNode(
                id="project",
                label="#Project",
                attributes={"due": "date", "status": "text"},
            ),
            "person": OntologyNode(id="person", label="@Person"),
        },
        root_ids=["ai", "project", "person"],
        updated_at=EPOCH,
    )


@dataclass
class DirectMessage:
    """A decrypted NIP-04 direct message."""

    id: str
    sender: str
    recipient: str
    content: str
    timestamp: datetime
    encrypted: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "from": self.sender,
            "to": self.recipient,
            "content": self.content,
            "timestamp": format_datetime(self.timestamp),
            "encrypted": self.encrypted,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DirectMessage":
        return cls(
            id=data["id"],
            sender=data["from"],
            recipient=data["to"],
            content=data["content"],
            timestamp=parse_datetime(data["timestamp"]),
            encrypted=bool(data.get("encrypted", True)),
        )


class MutationAction(Enum):
    """Pending operation recorded for an entity."""

    SAVE = "save"
    DELETE = "delete"


@dataclass
class MutationEntry:
    """A queued publish or tombstone for one entity."""

    entity_id: str
    action: MutationAction
    queued_at: datetime = field(default_factory=utc_now)
    remote_event_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "entityId": self.entity_id,
            "action": self.action.value,
            "queuedAt": format_datetime(self.queued_at),
            "remoteEventId": self.remote_event_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MutationEntry":
        return cls(
            entity_id=data["entityId"],
            action=MutationAction(data["action"]),
            queued_at=parse_datetime(data["queuedAt"]),
            remote_event_id=data.get("remoteEventId"),
        )
