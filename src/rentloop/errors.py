"""Engine error taxonomy.

Every refusal the engine can produce is one of these classes. Callers
(the service facade, the HTTP layer) switch on ``code`` rather than on
message text, so the UI can tell "already happened" apart from
"rejected".
"""

from __future__ import annotations


class EngineError(Exception):
    """Base class for all structured engine errors."""

    code = "internal"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, str]:
        return {"code": self.code, "message": self.message}


class Unauthenticated(EngineError):
    """No actor identity was supplied."""
    code = "unauthenticated"


class PermissionDenied(EngineError):
    """Actor is not a rightful party to the rental or action."""
    code = "permission_denied"


class NotFound(EngineError):
    """Rental, item, user or transaction missing."""
    code = "not_found"


class InvalidState(EngineError):
    """Guard failed: the action is not valid for the current status."""
    code = "invalid_state"


class InvalidArgument(EngineError):
    """Malformed dates, amounts or identifiers."""
    code = "invalid_argument"


class AlreadyDone(EngineError):
    """Idempotent repeat of an action that has already happened."""
    code = "already_done"


class ExternalFailure(EngineError):
    """Payment provider error or timeout."""
    code = "external_failure"


class Internal(EngineError):
    """Unexpected inconsistency. Always logged at CRITICAL."""
    code = "internal"


class LedgerRejected(InvalidArgument):
    """A ledger post was refused. Ledger state is unchanged."""


class LedgerInvariantError(Internal):
    """A money-accounting identity was violated."""