"""Error taxonomy shared by the repositories and engines.

Controllers map these onto HTTP status codes; engines raise them for
caller-actionable conditions and let store failures propagate.
"""


class EngineError(Exception):
    """Base class for every error raised by the assessment engines."""


class NotFoundError(EngineError):
    """A referenced question, config, attempt or progress row does not exist."""


class ConflictError(EngineError):
    """A unique constraint rejected an insert or update.

    Engines resolve this by recomputing the conflicting value and retrying
    once; a second conflict propagates.
    """


class ValidationError(EngineError):
    """A gating rule rejected the operation (locked day, attempt limit,
    finished attempt, cooldown and so on). Never retried."""


class StoreError(EngineError):
    """The relational store failed or returned an unusable row."""


class StoreUnavailableError(StoreError):
    """Transient infrastructure failure talking to the store."""
