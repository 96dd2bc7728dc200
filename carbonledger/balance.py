"""Balance accounting: applies signed credit deltas to stored account balances."""

import logging
from decimal import Decimal, InvalidOperation

from .database import Account, utcnow
from .errors import AccountNotFound, InsufficientBalance, InvalidInput

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def money(value, field="amount"):
    """Coerce ``value`` to a two-place Decimal, rejecting sub-cent precision."""
    if isinstance(value, float):
        value = repr(value)
    try:
        amount = Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidInput(f"{field} is not a number", **{field: value}) from None
    if not amount.is_finite():
        raise InvalidInput(f"{field} must be finite", **{field: value})
    if amount != amount.quantize(CENT):
        raise InvalidInput(f"{field} has more than two decimal places", **{field: value})
    return amount.quantize(CENT)


class BalanceEngine:
    """
    Applies credit deltas inside the caller's unit of work.

    The engine never commits; the Transaction record describing a delta is
    written by the coordinator in the same session, so both land or neither.
    """

    def __init__(self, session):
        self.session = session

    def lock_accounts(self, *account_ids):
        """Load and row-lock accounts in ascending id order."""
        accounts = {}
        for account_id in sorted(set(account_ids)):
            account = self.session.get(Account, account_id, with_for_update=True,
                                       populate_existing=True)
            if account is None:
                raise AccountNotFound(account_id)
            accounts[account_id] = account
        return accounts

    def apply_credit_delta(self, account_id, signed_amount, reason):
        """Add ``signed_amount`` to the account balance and return the new balance.

        Raises:
            AccountNotFound: no such account
            InsufficientBalance: a debit would take the balance below zero
            InvalidInput: zero or malformed amount
        """
        amount = money(signed_amount)
        if amount == 0:
            raise InvalidInput("Credit delta must be non-zero", account_id=account_id)
        account = self.session.get(Account, account_id, with_for_update=True,
                                   populate_existing=True)
        if account is None:
            raise AccountNotFound(account_id)

        new_balance = account.carbon_balance + amount
        if new_balance < 0:
            logger.warning("Rejected %s on account %s: balance %s, delta %s",
                           reason, account_id, account.carbon_balance, amount)
            raise InsufficientBalance(account_id, attempted=-amount,
                                      available=account.carbon_balance)
        account.carbon_balance = new_balance
        account.updated_at = utcnow()
        self.session.flush()
        logger.debug("Applied %s to account %s for %s", amount, account_id, reason)
        return new_balance
