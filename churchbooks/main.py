from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from churchbooks.config import Settings
from churchbooks.logging_config import setup_logging_from_settings, get_logger
from churchbooks.routers.accounts import router as accounts_router
from churchbooks.routers.transactions import router as transactions_router
from churchbooks.routers.categories import router as categories_router
from churchbooks.routers.sync import router as sync_router
from churchbooks.services.finance_store import FinanceStore, build_finance_store

logger = get_logger(__name__)


def create_app(settings: Optional[Settings] = None, finance_store: Optional[FinanceStore] = None,
               owner_id: Optional[str] = None) -> FastAPI:
    """Build the HTTP surface over a FinanceStore; the sync loop runs for the app's lifetime"""
    settings = settings or Settings.from_env()
    finance_store = finance_store or build_finance_store(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await finance_store.start()
        await finance_store.load_data(owner_id)
        try:
            yield
        finally:
            await finance_store.stop()

    app = FastAPI(title="churchbooks", lifespan=lifespan)
    app.state.finance_store = finance_store
    app.state.settings = settings

    app.include_router(accounts_router)
    app.include_router(transactions_router)
    app.include_router(categories_router)
    app.include_router(sync_router)

    @app.get("/")
    def read_root():
        return "Server is running."

    return app


def build_app() -> FastAPI:
    """uvicorn factory: `uvicorn churchbooks.main:build_app --factory`"""
    settings = Settings.from_env()
    setup_logging_from_settings(settings)
    return create_app(settings)
