from __future__ import annotations

from typing import Any


class GsmRelayError(Exception):
    """Base class for every error raised by the registry."""


class NotFound(GsmRelayError, LookupError):
    pass


class InvalidArgument(GsmRelayError, ValueError):
    pass


class MissingParameter(InvalidArgument):
    pass


class InvalidBackupFormat(GsmRelayError, ValueError):
    pass


class Unavailable(GsmRelayError):
    """No SMS-compose surface can be used in this environment."""


class PersistenceFailure(GsmRelayError):
    pass


class BackupFailed(GsmRelayError):
    pass


class IncompleteOperation(GsmRelayError):
    """A compound operation stopped after its primary mutation was committed.

    ``completed_steps`` lists what is already persisted (nothing is rolled back),
    ``failed_step`` names the step that raised, and ``record`` is the record the
    operation produced so far. The original error is chained as ``__cause__``.
    """

    def __init__(
        self,
        operation: str,
        *,
        failed_step: str,
        completed_steps: tuple[str, ...],
        record: dict[str, Any] | None = None,
    ):
        self.operation = operation
        self.failed_step = failed_step
        self.completed_steps = completed_steps
        self.record = record
        super().__init__(f"{operation}: step '{failed_step}' failed after {', '.join(completed_steps) or 'nothing'}")
