"""Sync engine: mutation queue, content sanitizer and the cycle orchestrator."""

from .mutation_queue import MutationQueue
from .orchestrator import SyncOrchestrator, SyncResult, SyncStatus
from .sanitize import sanitize_html

__all__ = ["MutationQueue", "SyncOrchestrator", "SyncResult", "SyncStatus", "sanitize_html"]
