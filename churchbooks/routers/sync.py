from fastapi import APIRouter, Depends, status
from pydantic import BaseModel

from churchbooks.models.sync import SyncStatus
from churchbooks.routers.deps import get_finance_store
from churchbooks.services.finance_store import FinanceStore

router = APIRouter(
    prefix="/sync",
    tags=["sync"],
)


class ConnectivityReport(BaseModel):
    online: bool


@router.get("/status", response_model=SyncStatus)
async def read_sync_status(finance_store: FinanceStore = Depends(get_finance_store)):
    return finance_store.sync_status()


@router.post("/", response_model=SyncStatus, status_code=status.HTTP_202_ACCEPTED)
async def request_sync(finance_store: FinanceStore = Depends(get_finance_store)):
    """
    Ask for a sync cycle. Returns immediately; poll /sync/status for progress.
    """
    if finance_store.is_online:
        finance_store.engine.request_sync()
    return finance_store.sync_status()


@router.post("/connectivity", response_model=SyncStatus)
async def report_connectivity(report: ConnectivityReport, finance_store: FinanceStore = Depends(get_finance_store)):
    """
    Client-reported online/offline transitions. Coming back online triggers a sync.
    """
    finance_store.connectivity.set_online(report.online)
    return finance_store.sync_status()
