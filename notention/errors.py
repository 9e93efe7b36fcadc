"""Exception types raised by the sync engine."""


class NotentionError(Exception):
    """Base class for all Notention errors."""


class NotLoggedIn(NotentionError):
    """No identity keypair is loaded."""


class Offline(NotentionError):
    """No relay is configured or reachable."""


class SyncInProgress(NotentionError):
    """A sync cycle is already running for this identity."""


class InvalidKey(NotentionError):
    """A private or public key is malformed."""


class SharingDisabled(NotentionError):
    """Public note publishing is turned off by the privacy settings."""


class RelayError(NotentionError):
    """No relay answered a request."""


class PublishFailure(NotentionError):
    """No relay acknowledged a published envelope."""

    def __init__(self, event_id: str, errors: list[str] | None = None):
        self.event_id = event_id
        self.errors = errors or []
        detail = "; ".join(self.errors) if self.errors else "no relay accepted"
        super().__init__(f"Publish of {event_id} failed: {detail}")


class EnvelopeError(NotentionError):
    """A single envelope could not be turned into a domain message."""

    def __init__(self, message: str, event_id: str | None = None):
        self.event_id = event_id
        super().__init__(message)


class ParseFailure(EnvelopeError):
    """Envelope is malformed, badly signed or carries unparseable content."""


class EncryptDecryptFailure(EnvelopeError):
    """NIP-04 encryption or decryption failed."""


class NoteNotFound(NotentionError):
    """No note with the given id exists locally."""


class FolderNotFound(NotentionError):
    """No folder with the given id exists locally."""
