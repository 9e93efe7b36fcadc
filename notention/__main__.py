"""CLI entry point for Notention."""

import argparse
import asyncio
import json
import logging
import sys
import traceback
from datetime import datetime
from pathlib import Path

from .app import NotentionApp, run_app
from .config import load_config
from .errors import NotentionError
from .models import DirectMessage, Note
from .nostr.codec import PublicNote


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "component": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_data["exception"] = "".join(traceback.format_exception(*record.exc_info))

        try:
            return json.dumps(log_data)
        except (TypeError, ValueError):
            log_data["message"] = str(log_data["message"])
            return json.dumps(log_data)


def setup_logging(verbose: bool = False, log_level: str | None = None, json_output: bool = False) -> None:
    """Configure logging.

    Args:
        verbose: Enable debug logging (ignored if log_level is set).
        log_level: Explicit log level (warning, info, debug).
        json_output: Output logs as JSON lines for machine parsing.
    """
    if log_level:
        level_map = {
            "warning": logging.WARNING,
            "info": logging.INFO,
            "debug": logging.DEBUG,
        }
        level = level_map.get(log_level, logging.INFO)
    else:
        level = logging.DEBUG if verbose else logging.WARNING

    handler = logging.StreamHandler()
    if json_output:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            logging.Formatter(
                fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )

    logging.basicConfig(level=level, handlers=[handler])


async def _open_app(args: argparse.Namespace) -> NotentionApp:
    app = NotentionApp(load_config(args.config))
    await app.start()
    return app


def _parse_pairs(pairs: list[str] | None) -> dict[str, str]:
    """Turn ``key=value`` arguments into a dict."""
    values = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise ValueError(f"Expected key=value, got {pair!r}")
        values[key] = value
    return values


# ==================== Identity ====================


async def cmd_keygen(args: argparse.Namespace) -> int:
    """Generate and store a new identity."""
    app = await _open_app(args)
    try:
        if app.keystore.is_logged_in() and not args.force:
            print("An identity is already stored; use --force to replace it", file=sys.stderr)
            return 1
        public_key = await app.generate_or_import_identity()
        print(f"Public key: {public_key}")
        if args.show_secret:
            print(f"Private key: {app.keystore.private_key}")
    finally:
        await app.close()
    return 0


async def cmd_import_key(args: argparse.Namespace) -> int:
    """Import an existing private key."""
    app = await _open_app(args)
    try:
        public_key = await app.generate_or_import_identity(args.private_key)
        print(f"Public key: {public_key}")
    finally:
        await app.close()
    return 0


async def cmd_logout(args: argparse.Namespace) -> int:
    """Remove the stored identity."""
    app = await _open_app(args)
    try:
        await app.logout()
        print("Logged out")
    finally:
        await app.close()
    return 0


async def cmd_whoami(args: argparse.Namespace) -> int:
    """Show the current public key."""
    app = await _open_app(args)
    try:
        if not app.keystore.is_logged_in():
            print("Not logged in", file=sys.stderr)
            return 1
        print(app.keystore.public_key)
    finally:
        await app.close()
    return 0


# ==================== Sync ====================


async def cmd_sync(args: argparse.Namespace) -> int:
    """Run a single sync cycle."""
    app = await _open_app(args)
    try:
        result = await app.run_sync_cycle(force_full_resync=args.full)
    finally:
        await app.close()

    print(f"Sync {result.status.value}")
    print(f"  Ontology: {'published' if result.ontology_published else 'pulled' if result.ontology_pulled else 'unchanged'}")
    print(f"  Notes pulled: {result.notes_pulled}")
    print(f"  Notes pushed: {result.notes_pushed}")
    print(f"  Tombstones published: {result.tombstones_published}")
    for error in result.errors:
        print(f"  Error: {error}")
    return 0 if not result.errors else 2


async def cmd_run(args: argparse.Namespace) -> int:
    """Sync periodically and listen for direct messages."""
    config = load_config(args.config)

    print(f"Starting Notention sync every {config.sync.interval_minutes} min")
    print(f"Relays: {', '.join(config.relays.urls)}")

    try:
        await run_app(config)
    except KeyboardInterrupt:
        print("\nShutting down...")

    return 0


# ==================== Notes ====================


async def cmd_note_add(args: argparse.Namespace) -> int:
    """Create a note."""
    app = await _open_app(args)
    try:
        note = await app.notes.create_note(
            title=args.title,
            content=args.content or "",
            tags=args.tag or [],
            values=_parse_pairs(args.value),
        )
        print(note.id)
    finally:
        await app.close()
    return 0


async def cmd_note_edit(args: argparse.Namespace) -> int:
    """Update fields of a note."""
    updates = {}
    if args.title is not None:
        updates["title"] = args.title
    if args.content is not None:
        updates["content"] = args.content
    if args.tag is not None:
        updates["tags"] = args.tag
    if args.value is not None:
        updates["values"] = _parse_pairs(args.value)
    if args.status is not None:
        updates["status"] = args.status

    if not updates:
        print("Nothing to update", file=sys.stderr)
        return 1

    app = await _open_app(args)
    try:
        note = await app.notes.update_note(args.note_id, **updates)
        print(f"Updated {note.id}")
    finally:
        await app.close()
    return 0


async def cmd_note_delete(args: argparse.Namespace) -> int:
    """Delete a note."""
    app = await _open_app(args)
    try:
        deleted = await app.notes.delete_note(args.note_id)
    finally:
        await app.close()

    if not deleted:
        print(f"Note not found: {args.note_id}", file=sys.stderr)
        return 1
    print(f"Deleted {args.note_id}")
    return 0


def _print_notes(notes: list[Note], as_json: bool) -> None:
    if as_json:
        print(json.dumps([n.to_dict() for n in notes], indent=2, ensure_ascii=False))
        return
    if not notes:
        print("No notes")
    for note in notes:
        tags = f" [{', '.join(note.tags)}]" if note.tags else ""
        print(f"{note.id}  {note.updated_at:%Y-%m-%d %H:%M}  {note.title}{tags}")


async def cmd_note_list(args: argparse.Namespace) -> int:
    """List notes."""
    app = await _open_app(args)
    try:
        notes = await app.notes.list_notes(include_archived=args.all)
    finally:
        await app.close()

    _print_notes(notes, args.json)
    return 0


async def cmd_note_search(args: argparse.Namespace) -> int:
    """Search notes by keyword."""
    app = await _open_app(args)
    try:
        notes = await app.notes.search_notes(args.query)
    finally:
        await app.close()

    _print_notes(notes, args.json)
    return 0



async def cmd_share(args: argparse.Namespace) -> int:
    """Publish a note publicly."""
    app = await _open_app(args)
    try:
        envelope = await app.publish_public_note(args.note_id)
        print(f"Published {envelope.id}")
    finally:
        await app.close()
    return 0


# ==================== Folders ====================


async def cmd_folder_add(args: argparse.Namespace) -> int:
    """Create a folder."""
    app = await _open_app(args)
    try:
        folder = await app.notes.create_folder(args.name, parent_id=args.parent)
    finally:
        await app.close()
    print(folder.id)
    return 0


async def cmd_folder_list(args: argparse.Namespace) -> int:
    """List folders with their note counts."""
    app = await _open_app(args)
    try:
        folders = await app.notes.list_folders()
        notes = await app.notes.list_notes()
    finally:
        await app.close()

    if not folders:
        print("No folders")
    for folder in folders:
        count = sum(1 for n in notes if n.folder_id == folder.id)
        parent = f"  (in {folder.parent_id})" if folder.parent_id else ""
        print(f"{folder.id}  {folder.name}  {count} notes{parent}")
    return 0


async def cmd_folder_rename(args: argparse.Namespace) -> int:
    """Rename a folder."""
    app = await _open_app(args)
    try:
        folder = await app.notes.rename_folder(args.folder_id, args.name)
    finally:
        await app.close()
    print(f"Renamed {folder.id} to {folder.name}")
    return 0


async def cmd_folder_delete(args: argparse.Namespace) -> int:
    """Delete a folder; its notes are kept."""
    app = await _open_app(args)
    try:
        deleted = await app.notes.delete_folder(args.folder_id)
    finally:
        await app.close()

    if not deleted:
        print(f"Folder not found: {args.folder_id}", file=sys.stderr)
        return 1
    print(f"Deleted {args.folder_id}")
    return 0


async def cmd_folder_move(args: argparse.Namespace) -> int:
    """File a note into a folder, or out of any folder."""
    app = await _open_app(args)
    try:
        note = await app.notes.move_note(args.note_id, args.folder_id)
    finally:
        await app.close()
    print(f"Moved {note.id} to {note.folder_id or 'no folder'}")
    return 0


# ==================== Messages ====================


async def cmd_dm_send(args: argparse.Namespace) -> int:
    """Send a direct message."""
    app = await _open_app(args)
    try:
        message = await app.send_direct_message(args.pubkey, args.text)
        print(f"Sent {message.id}")
    finally:
        await app.close()
    return 0


async def cmd_dm_listen(args: argparse.Namespace) -> int:
    """Print incoming direct messages."""
    app = await _open_app(args)

    def show(message: DirectMessage) -> None:
        print(f"[{message.timestamp:%H:%M:%S}] {message.sender[:12]}: {message.content}", flush=True)

    try:
        subscription = app.subscribe_direct_messages(show)
        print("Listening for direct messages (Ctrl+C to stop)")
        await subscription.wait_closed()
    finally:
        await app.close()
    return 0


async def cmd_listen(args: argparse.Namespace) -> int:
    """Print public notes for a topic tag."""
    app = await _open_app(args)

    def show(note: PublicNote) -> None:
        title = note.title or "(untitled)"
        print(f"{note.author[:12]}: {title}\n  {note.content}", flush=True)

    try:
        subscription = app.subscribe_to_topic(args.tag, show)
        print(f"Listening for #{args.tag.lstrip('#')} (Ctrl+C to stop)")
        await subscription.wait_closed()
    finally:
        await app.close()
    return 0


# ==================== Status ====================


async def cmd_status(args: argparse.Namespace) -> int:
    """Show identity, sync state and relay reachability."""
    app = await _open_app(args)
    try:
        status_data = await app.status()
        status_data["timestamp"] = datetime.now().isoformat()
        relays = []
        for url in app.config.relays.urls:
            info = await app.transport.fetch_relay_info(url)
            relays.append({"url": url, "reachable": info is not None, "name": (info or {}).get("name")})
        status_data["relays"] = relays
    finally:
        await app.close()

    if args.json:
        print(json.dumps(status_data, indent=2))
        return 0

    sync = status_data["sync"]
    print("Notention Status")
    print("================")
    print(f"Identity: {status_data['public_key'] or 'not logged in'}")
    print(f"Notes: {status_data['notes']}")
    print()
    print("Sync:")
    print(f"  Last synced: {sync['last_synced_at'] or 'never'}")
    print(f"  Pending mutations: {sync['pending_mutations']}")
    print(f"  Ontology needs sync: {'yes' if sync['ontology_needs_sync'] else 'no'}")
    print()
    print("Relays:")
    for relay in relays:
        state = "reachable" if relay["reachable"] else "no NIP-11 response"
        name = f" ({relay['name']})" if relay["name"] else ""
        print(f"  - {relay['url']}{name}: {state}")
    return 0


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="notention",
        description="Local-first notes synced over Nostr relays",
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        default=None,
        help="Path to config file",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["warning", "info", "debug"],
        default=None,
        help="Set log level explicitly (overrides -v/--verbose)",
    )
    parser.add_argument(
        "--log-json",
        action="store_true",
        help="Output logs as JSON for machine parsing",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Identity
    keygen_parser = subparsers.add_parser("keygen", help="Generate a new identity")
    keygen_parser.add_argument("--force", action="store_true", help="Replace an existing identity")
    keygen_parser.add_argument("--show-secret", action="store_true", help="Print the private key")
    keygen_parser.set_defaults(func=cmd_keygen)

    import_parser = subparsers.add_parser("import-key", help="Import a hex private key")
    import_parser.add_argument("private_key", help="64-character hex private key")
    import_parser.set_defaults(func=cmd_import_key)

    logout_parser = subparsers.add_parser("logout", help="Remove the stored identity")
    logout_parser.set_defaults(func=cmd_logout)

    whoami_parser = subparsers.add_parser("whoami", help="Show the current public key")
    whoami_parser.set_defaults(func=cmd_whoami)

    # Sync
    sync_parser = subparsers.add_parser("sync", help="Run one sync cycle")
    sync_parser.add_argument("--full", action="store_true", help="Ignore the watermark and refetch everything")
    sync_parser.set_defaults(func=cmd_sync)

    run_parser = subparsers.add_parser("run", help="Sync periodically and listen for messages")
    run_parser.set_defaults(func=cmd_run)

    # Notes
    note_parser = subparsers.add_parser("note", help="Manage notes")
    note_subparsers = note_parser.add_subparsers(dest="note_command", help="Note commands")

    note_add = note_subparsers.add_parser("add", help="Create a note")
    note_add.add_argument("title", help="Note title")
    note_add.add_argument("content", nargs="?", help="Note body")
    note_add.add_argument("-t", "--tag", action="append", help="Tag (repeatable)")
    note_add.add_argument("--value", action="append", help="key=value pair (repeatable)")
    note_add.set_defaults(func=cmd_note_add)

    note_edit = note_subparsers.add_parser("edit", help="Update a note")
    note_edit.add_argument("note_id", help="Note id")
    note_edit.add_argument("--title", help="New title")
    note_edit.add_argument("--content", help="New body")
    note_edit.add_argument("-t", "--tag", action="append", help="Replace tags (repeatable)")
    note_edit.add_argument("--value", action="append", help="Replace values with key=value pairs")
    note_edit.add_argument("--status", choices=["draft", "published"], help="New status")
    note_edit.set_defaults(func=cmd_note_edit)

    note_delete = note_subparsers.add_parser("delete", help="Delete a note")
    note_delete.add_argument("note_id", help="Note id")
    note_delete.set_defaults(func=cmd_note_delete)

    note_list = note_subparsers.add_parser("list", help="List notes")
    note_list.add_argument("--all", action="store_true", help="Include archived notes")
    note_list.add_argument("--json", action="store_true", help="Output notes as JSON")
    note_list.set_defaults(func=cmd_note_list)

    note_search = note_subparsers.add_parser("search", help="Find notes by keyword")
    note_search.add_argument("query", help="Text to look for in titles, bodies and tags")
    note_search.add_argument("--json", action="store_true", help="Output notes as JSON")
    note_search.set_defaults(func=cmd_note_search)

    share_parser = subparsers.add_parser("share", help="Publish a note publicly")
    share_parser.add_argument("note_id", help="Note id")
    share_parser.set_defaults(func=cmd_share)

    # Folders
    folder_parser = subparsers.add_parser("folder", help="Manage folders")
    folder_subparsers = folder_parser.add_subparsers(dest="folder_command", help="Folder commands")

    folder_add = folder_subparsers.add_parser("add", help="Create a folder")
    folder_add.add_argument("name", help="Folder name")
    folder_add.add_argument("--parent", help="Parent folder id")
    folder_add.set_defaults(func=cmd_folder_add)

    folder_list = folder_subparsers.add_parser("list", help="List folders")
    folder_list.set_defaults(func=cmd_folder_list)

    folder_rename = folder_subparsers.add_parser("rename", help="Rename a folder")
    folder_rename.add_argument("folder_id", help="Folder id")
    folder_rename.add_argument("name", help="New name")
    folder_rename.set_defaults(func=cmd_folder_rename)

    folder_delete = folder_subparsers.add_parser("delete", help="Delete a folder and its subfolders")
    folder_delete.add_argument("folder_id", help="Folder id")
    folder_delete.set_defaults(func=cmd_folder_delete)

    folder_move = folder_subparsers.add_parser("move", help="Move a note into a folder")
    folder_move.add_argument("note_id", help="Note id")
    folder_move.add_argument("folder_id", nargs="?", help="Folder id; omit to take the note out")
    folder_move.set_defaults(func=cmd_folder_move)

    # Messages
    dm_parser = subparsers.add_parser("dm", help="Direct messages")
    dm_subparsers = dm_parser.add_subparsers(dest="dm_command", help="Direct message commands")

    dm_send = dm_subparsers.add_parser("send", help="Send a direct message")
    dm_send.add_argument("pubkey", help="Recipient hex public key")
    dm_send.add_argument("text", help="Message text")
    dm_send.set_defaults(func=cmd_dm_send)

    dm_listen = dm_subparsers.add_parser("listen", help="Print incoming direct messages")
    dm_listen.set_defaults(func=cmd_dm_listen)

    listen_parser = subparsers.add_parser("listen", help="Print public notes for a topic tag")
    listen_parser.add_argument("tag", help="Topic tag, with or without #")
    listen_parser.set_defaults(func=cmd_listen)

    # Status
    status_parser = subparsers.add_parser("status", help="Show sync and relay status")
    status_parser.add_argument(
        "--json",
        action="store_true",
        help="Output status as JSON",
    )
    status_parser.set_defaults(func=cmd_status)

    args = parser.parse_args()

    setup_logging(args.verbose, args.log_level, args.log_json)

    if not args.command:
        parser.print_help()
        return 1

    if args.command == "note" and not args.note_command:
        note_parser.print_help()
        return 1
    if args.command == "dm" and not args.dm_command:
        dm_parser.print_help()
        return 1
    if args.command == "folder" and not args.folder_command:
        folder_parser.print_help()
        return 1

    try:
        return asyncio.run(args.func(args))
    except KeyboardInterrupt:
        return 130
    except (NotentionError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
