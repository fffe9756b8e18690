from fastapi import APIRouter, Depends, HTTPException, status
from typing import List, Optional

from churchbooks.db.core import CategoryType, NotFoundError
from churchbooks.models.category import Category, CategoryCreate, CategoryUpdate
from churchbooks.routers.deps import get_finance_store
from churchbooks.services.finance_store import FinanceStore

router = APIRouter(
    prefix="/categories",
    tags=["categories"],
)


@router.get("/", response_model=List[Category])
async def read_categories(category_type: Optional[CategoryType] = None,
                          finance_store: FinanceStore = Depends(get_finance_store)):
    """
    Shared default categories and user categories, optionally of one type.
    """
    if category_type is None:
        return finance_store.categories
    return [category for category in finance_store.categories if category.type == category_type]


@router.post("/", response_model=Category, status_code=status.HTTP_201_CREATED)
async def create_category(category: CategoryCreate, finance_store: FinanceStore = Depends(get_finance_store)):
    try:
        return await finance_store.create_category(category)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.put("/{category_id}", response_model=Category)
async def update_category(category_id: str, category_updates: CategoryUpdate,
                          finance_store: FinanceStore = Depends(get_finance_store)):
    try:
        return await finance_store.update_category(category_id, category_updates)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.delete("/{category_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_category(category_id: str, finance_store: FinanceStore = Depends(get_finance_store)):
    """
    Delete a category; transactions that used it are left uncategorised.
    """
    try:
        await finance_store.delete_category(category_id)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
