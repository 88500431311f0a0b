"""Error taxonomy for the indexing and retrieval engine."""


class PoliragError(Exception):
    """Base class for all polirag errors."""


class ConfigurationError(PoliragError, ValueError):
    """Malformed configuration, e.g. chunk overlap not smaller than chunk size."""


class EmbeddingUnavailable(PoliragError):
    """The embedding model could not be loaded."""


class AuthenticationRequired(PoliragError):
    """No session or credentials allowed the ingestion source to connect."""


class PartialIngestionFailure(PoliragError):
    """A single subject or document could not be ingested."""

    def __init__(self, source: str, reason: str):
        super().__init__(f"{source}: {reason}")
        self.source = source
        self.reason = reason


class DimensionMismatch(PoliragError):
    """A vector's length disagrees with the store's established dimensionality."""

    def __init__(self, expected: int, actual: int):
        super().__init__(
            f"Embedding dimension mismatch: expected {expected}, got {actual}"
        )
        self.expected = expected
        self.actual = actual


class IncompatibleSnapshot(PoliragError):
    """The on-disk snapshot cannot be used with the active embedding model."""


class PersistenceFailure(PoliragError):
    """Writing the snapshot to durable storage failed."""


class SyncCancelled(PoliragError):
    """A sync was cancelled before it completed."""


class SyncAlreadyRunning(PoliragError):
    """A sync was requested while another one is in progress."""
