"""Exception taxonomy shared across the engine and provider adapters."""


class ReconError(Exception):
    """Base class for every error raised by invoice_recon."""


class ConfigurationError(ReconError):
    """Required settings are missing or malformed."""


class ProviderError(ReconError):
    """A provider call failed in a way retrying will not fix."""


class TransientError(ProviderError):
    """Network, timeout or rate-limit failure; safe to retry."""


class NotFoundError(ProviderError):
    """The target vanished between the snapshot and the action."""


class DuplicateKeyError(ProviderError):
    """Unique-constraint violation on insert."""


class ConsistencyGuardError(ReconError):
    """A plan would destroy data wholesale; the run must stop before mutating."""


class AmbiguousMatchError(ReconError):
    """More than one equally plausible counterpart was found."""

    def __init__(self, message: str, candidates=()):
        super().__init__(message)
        self.candidates = list(candidates)


class ArchiveError(ReconError):
    """Archiving one record failed; never fatal to the batch."""


class NotLocatableError(ArchiveError):
    """The original document could not be found in blob storage."""


class ArchiveConflictError(ArchiveError):
    """The destination exists with different content and was left alone."""


class LockHeldError(ReconError):
    """Another run holds the lock."""
