"""Ledger error hierarchy.

Every error carries a ``context`` dict (entity id, attempted amount,
available amount, ...) so callers can act on a rejected request.

    LedgerError
    ├── NotFound
    │   ├── AccountNotFound
    │   ├── ProjectNotFound
    │   └── RecordNotFound
    ├── InvalidInput
    │   └── ProjectInactive
    ├── InsufficientBalance
    ├── InsufficientCredits
    ├── Conflict
    │   └── DuplicateOperation
    ├── StorageFailure
    └── OperationCancelled
"""

from typing import Any, Dict


class LedgerError(Exception):
    """Base class for all ledger errors."""

    retryable = False

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": type(self).__name__,
            "message": self.message,
            "retryable": self.retryable,
            "context": {k: str(v) for k, v in self.context.items()},
        }

    def __str__(self) -> str:
        if not self.context:
            return self.message
        details = ", ".join(f"{k}={v}" for k, v in self.context.items())
        return f"{self.message} ({details})"


class NotFound(LedgerError):
    pass


class AccountNotFound(NotFound):
    def __init__(self, account_id: str):
        super().__init__("Account not found", account_id=account_id)


class ProjectNotFound(NotFound):
    def __init__(self, project_id: str):
        super().__init__("Offset project not found", project_id=project_id)


class RecordNotFound(NotFound):
    pass


class InvalidInput(LedgerError):
    pass


class ProjectInactive(InvalidInput):
    def __init__(self, project_id: str):
        super().__init__("Offset project is not active", project_id=project_id)


class InsufficientBalance(LedgerError):
    def __init__(self, account_id: str, attempted, available):
        super().__init__(
            "Insufficient carbon credit balance",
            account_id=account_id,
            attempted=attempted,
            available=available,
        )


class InsufficientCredits(LedgerError):
    def __init__(self, project_id: str, attempted, available):
        super().__init__(
            "Insufficient offset credits available",
            project_id=project_id,
            attempted=attempted,
            available=available,
        )


class Conflict(LedgerError):
    pass


class DuplicateOperation(Conflict):
    pass


class StorageFailure(LedgerError):
    """The durability layer failed; the request may be retried."""

    retryable = True


class OperationCancelled(LedgerError):
    pass
