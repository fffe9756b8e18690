from fastapi import APIRouter, Depends, HTTPException, status
from typing import List

from churchbooks.db.core import NotFoundError
from churchbooks.models.account import Account, AccountCreate, AccountUpdate
from churchbooks.routers.deps import get_finance_store
from churchbooks.services.finance_store import FinanceStore

router = APIRouter(
    prefix="/accounts",
    tags=["accounts"],
)


@router.get("/", response_model=List[Account])
async def read_accounts(finance_store: FinanceStore = Depends(get_finance_store)):
    """
    Every account on this device; viewers see the whole church's books.
    """
    return finance_store.accounts


@router.post("/", response_model=Account, status_code=status.HTTP_201_CREATED)
async def create_account(account: AccountCreate, finance_store: FinanceStore = Depends(get_finance_store)):
    """
    Create an account; its running balance starts at the opening balance.
    """
    try:
        return await finance_store.create_account(account)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.put("/{account_id}", response_model=Account)
async def update_account(account_id: str, account_updates: AccountUpdate,
                         finance_store: FinanceStore = Depends(get_finance_store)):
    try:
        return await finance_store.update_account(account_id, account_updates)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.delete("/{account_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_account(account_id: str, finance_store: FinanceStore = Depends(get_finance_store)):
    """
    Delete an account along with every transaction that references it.
    """
    try:
        await finance_store.delete_account(account_id)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
