"""Carbon credit ledger engine."""

from .audit import RequestOrigin
from .config import LedgerConfig, configure_logging
from .coordinator import CarbonLedger, Discrepancy, LedgerReference, OperationResult
from .emissions import (ActionRatePolicy, ActionType, ActivityType, EmissionCalculator,
                        ProjectType, TransactionType, ratio_policy)
from .errors import (AccountNotFound, Conflict, DuplicateOperation, InsufficientBalance,
                     InsufficientCredits, InvalidInput, LedgerError, NotFound,
                     OperationCancelled, ProjectInactive, ProjectNotFound, RecordNotFound,
                     StorageFailure)

__version__ = "0.1.0"
