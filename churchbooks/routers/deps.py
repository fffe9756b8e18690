from fastapi import Request

from churchbooks.services.finance_store import FinanceStore


def get_finance_store(request: Request) -> FinanceStore:
    return request.app.state.finance_store
