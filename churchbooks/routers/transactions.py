from fastapi import APIRouter, Depends, HTTPException, status
from typing import List, Optional

from churchbooks.db.core import NotFoundError
from churchbooks.models.transaction import Transaction, TransactionCreate, TransactionUpdate
from churchbooks.routers.deps import get_finance_store
from churchbooks.services.finance_store import FinanceStore

router = APIRouter(
    prefix="/transactions",
    tags=["transactions"],
)


@router.get("/", response_model=List[Transaction])
async def read_transactions(account_id: Optional[str] = None,
                            finance_store: FinanceStore = Depends(get_finance_store)):
    """
    Transactions newest first, optionally only those touching one account.
    """
    if account_id is None:
        return finance_store.transactions
    return [
        txn for txn in finance_store.transactions
        if account_id in (txn.account_id, txn.target_account_id)
    ]


@router.post("/", response_model=Transaction, status_code=status.HTTP_201_CREATED)
async def create_transaction(transaction: TransactionCreate,
                             finance_store: FinanceStore = Depends(get_finance_store)):
    try:
        return await finance_store.create_transaction(transaction)
    except (ValueError, NotFoundError) as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.put("/{transaction_id}", response_model=Transaction)
async def update_transaction(transaction_id: str, transaction_updates: TransactionUpdate,
                             finance_store: FinanceStore = Depends(get_finance_store)):
    """
    Edit a transaction; its old balance effect is reverted and the new one applied.
    """
    try:
        return await finance_store.update_transaction(transaction_id, transaction_updates)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.delete("/{transaction_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_transaction(transaction_id: str, finance_store: FinanceStore = Depends(get_finance_store)):
    try:
        await finance_store.delete_transaction(transaction_id)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
