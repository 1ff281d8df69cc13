"""Error taxonomy shared by the ledger, the store and the orchestrator."""

from __future__ import annotations

_MAX_MESSAGE_CHARS = 500


class SyncError(Exception):
    """Base class for all Knowledge Sync errors."""


class AlreadyRunning(SyncError):
    """A job for the scope is already running; the request is a duplicate."""

    def __init__(self, scope_id: str) -> None:
        super().__init__(f"A sync job is already running for scope {scope_id}")
        self.scope_id = scope_id


class InvalidTransition(SyncError):
    """A state transition was requested from a state that does not allow it."""

    def __init__(self, entity: str, entity_id: str, current: str | None, action: str) -> None:
        super().__init__(f"Cannot {action} {entity} {entity_id} in state {current or 'missing'}")
        self.entity = entity
        self.entity_id = entity_id
        self.current = current
        self.action = action


class NotFound(SyncError):
    """A referenced record does not exist."""


class RunFailure(SyncError):
    """A run-fatal error; recorded on the run and retried via the job."""


class ConnectorFailure(RunFailure):
    """The content source collaborator failed mid-run."""


class PersistenceFailure(RunFailure):
    """Committing a version or its chunk set failed and was rolled back."""


def short_message(error: BaseException | str, limit: int = _MAX_MESSAGE_CHARS) -> str:
    """Collapse an error into a single human-readable line."""
    text = str(error).strip()
    if not text and isinstance(error, BaseException):
        text = type(error).__name__
    first_line = text.splitlines()[0] if text else "Unknown error"
    if len(first_line) > limit:
        return first_line[: limit - 3].rstrip() + "..."
    return first_line


__all__ = [
    "SyncError",
    "AlreadyRunning",
    "InvalidTransition",
    "NotFound",
    "RunFailure",
    "ConnectorFailure",
    "PersistenceFailure",
    "short_message",
]
