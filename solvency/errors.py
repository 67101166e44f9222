from __future__ import annotations


class SolvencyError(Exception):
    """Base class for every error raised by the solvency pipeline."""


class InputError(SolvencyError, ValueError):
    """Malformed or missing stage input. Never retried automatically."""


class EmptyInputError(InputError):
    pass


class ArtifactNotFoundError(InputError):
    def __init__(self, epoch: str, name: str) -> None:
        super().__init__(f"artifact {name!r} not found for epoch {epoch!r}")
        self.epoch = epoch
        self.name = name


class TransientIOError(SolvencyError):
    """Transport failure talking to a ledger or registry.

    The pipeline never retries these; the caller owns the backoff policy.
    """


class ReserveReadError(TransientIOError):
    pass


class RegistryReadError(TransientIOError):
    pass


class IntegrityError(SolvencyError):
    """A recomputed hash did not match the one it was checked against."""

    def __init__(self, message: str, *, expected: str, actual: str) -> None:
        super().__init__(f"{message} (expected={expected}, actual={actual})")
        self.expected = expected
        self.actual = actual


class ProofConstructionError(IntegrityError):
    pass


class PublishFailedError(SolvencyError):
    """The registry write did not happen. The underlying cause is chained.

    Registry adapters only know the epoch key; LedgerPublisher fills in the
    epoch id before the error reaches its caller.
    """

    def __init__(self, epoch_id: str | None, reason: str, *, epoch_key: str | None = None) -> None:
        super().__init__(reason)
        self.epoch_id = epoch_id
        self.epoch_key = epoch_key
        self.reason = reason

    def __str__(self) -> str:
        subject = f"epoch {self.epoch_id!r}" if self.epoch_id else f"registry key {self.epoch_key}"
        return f"publishing {subject} failed: {self.reason}"


class PublishTimeoutError(PublishFailedError):
    """The deadline elapsed before a receipt arrived; the write may still land."""


class AlreadyPublishedError(SolvencyError):
    def __init__(self, epoch_id: str, record: object) -> None:
        super().__init__(f"epoch {epoch_id!r} is already published")
        self.epoch_id = epoch_id
        self.record = record
