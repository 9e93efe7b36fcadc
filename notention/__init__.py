"""Notention: local-first notes synced through Nostr relays."""

__version__ = "0.1.0"
