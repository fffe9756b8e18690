"""
Balance Ledger

Pure functions that turn a transaction into the signed balance deltas it
applies to one or two accounts. The same functions back create (apply),
delete (revert) and edit (revert old, apply new), so an account's
current_balance stays equal to its initial_balance plus the effects of the
transactions that still reference it.

Amounts are stored unsigned; this module is the only place a direction is
derived from the transaction type. Arithmetic runs on integer minor units so
repeated apply/revert cycles never drift.
"""
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Mapping, Optional, Protocol

from churchbooks.db.core import TransactionType


CENT = Decimal("0.01")

Effect = Dict[str, int]


class LedgerError(ValueError):
    """Raised when a transaction cannot produce a valid balance effect"""
    pass


class LedgerEntry(Protocol):
    account_id: str
    target_account_id: Optional[str]
    amount: Decimal
    type: TransactionType


# ===== MONEY HELPERS =====

def quantize_amount(value) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def to_minor_units(value) -> int:
    return int(quantize_amount(value) * 100)


def from_minor_units(units: int) -> Decimal:
    return (Decimal(units) / 100).quantize(CENT)


# ===== EFFECTS =====

def validate_entry(txn: LedgerEntry) -> None:
    if quantize_amount(txn.amount) < 0:
        raise LedgerError("Transaction amount must be non-negative")

    if txn.type == TransactionType.TRANSFER:
        if not txn.target_account_id:
            raise LedgerError("Transfer transactions require a target account")
        if txn.target_account_id == txn.account_id:
            raise LedgerError("Cannot transfer into the source account")
    elif txn.target_account_id:
        raise LedgerError(f"{TransactionType(txn.type).value} transactions cannot have a target account")


def _apply_units(txn: LedgerEntry) -> Effect:
    validate_entry(txn)
    units = to_minor_units(txn.amount)

    if txn.type == TransactionType.INCOME:
        return {txn.account_id: units}
    if txn.type == TransactionType.EXPENSE:
        return {txn.account_id: -units}
    if txn.type == TransactionType.TRANSFER:
        return {txn.account_id: -units, txn.target_account_id: units}

    raise LedgerError(f"Unknown transaction type: {txn.type}")


def _to_decimal(effect: Effect) -> Dict[str, Decimal]:
    return {account_id: from_minor_units(units) for account_id, units in effect.items()}


def _merge(*effects: Effect) -> Effect:
    merged: Effect = {}
    for effect in effects:
        for account_id, units in effect.items():
            merged[account_id] = merged.get(account_id, 0) + units
    return merged


def apply_effect(txn: LedgerEntry) -> Dict[str, Decimal]:
    """Balance deltas produced by recording the transaction"""
    return _to_decimal(_apply_units(txn))


def revert_effect(txn: LedgerEntry) -> Dict[str, Decimal]:
    """Exact negation of apply_effect; used on delete and as the first half of an edit"""
    return _to_decimal({account_id: -units for account_id, units in _apply_units(txn).items()})


def edit_effect(old: LedgerEntry, new: LedgerEntry) -> Dict[str, Decimal]:
    """
    Revert the old effect then apply the new one, merged per account.

    Up to four accounts can be touched when both the source and the target of
    a transfer change. Accounts whose net delta is zero are still reported so
    callers rewrite every account involved in the edit.
    """
    reverted = {account_id: -units for account_id, units in _apply_units(old).items()}
    return _to_decimal(_merge(reverted, _apply_units(new)))


def combine(*effects: Mapping[str, Decimal]) -> Dict[str, Decimal]:
    """Sum several effects per account"""
    as_units = [
        {account_id: to_minor_units(delta) for account_id, delta in effect.items()}
        for effect in effects
    ]
    return _to_decimal(_merge(*as_units))


def apply_to_balances(balances: Mapping[str, Decimal], effect: Mapping[str, Decimal]) -> Dict[str, Decimal]:
    """Return the balances after the effect; accounts missing from `balances` raise LedgerError"""
    updated = dict(balances)
    for account_id, delta in effect.items():
        if account_id not in updated:
            raise LedgerError(f"Account {account_id} is not known to the ledger")
        updated[account_id] = from_minor_units(to_minor_units(updated[account_id]) + to_minor_units(delta))
    return updated


def expected_balance(initial_balance: Decimal, account_id: str, transactions) -> Decimal:
    """initial_balance plus the effect of every transaction touching the account"""
    units = to_minor_units(initial_balance)
    for txn in transactions:
        units += _apply_units(txn).get(account_id, 0)
    return from_minor_units(units)
