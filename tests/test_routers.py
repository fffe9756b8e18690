"""
Tests for the HTTP surface. The app runs offline against the in-process
remote unless a test brings it online.
"""

import pytest
from fastapi.testclient import TestClient

from churchbooks.config import Settings
from churchbooks.db.local_store import ACCOUNTS
from churchbooks.main import create_app

from conftest import OWNER


@pytest.fixture
def client(finance, connectivity):
    connectivity.set_online(False)
    app = create_app(settings=Settings(database_url="sqlite://"), finance_store=finance, owner_id=OWNER)
    with TestClient(app) as client:
        yield client


def create_account(client, name="General Fund", initial_balance="1000"):
    response = client.post("/accounts/", json={"name": name, "type": "checking", "initial_balance": initial_balance})
    assert response.status_code == 201
    return response.json()


class TestAccountsRouter:

    def test_root(self, client):
        assert client.get("/").status_code == 200

    def test_create_and_list(self, client):
        account = create_account(client)
        assert account["current_balance"] == "1000.00"
        assert account["owner_id"] == OWNER
        assert account["sync_state"] == "pending"

        accounts = client.get("/accounts/").json()
        assert [a["id"] for a in accounts] == [account["id"]]

    def test_blank_name_is_rejected(self, client):
        response = client.post("/accounts/", json={"name": "  ", "type": "cash"})
        assert response.status_code == 422

    def test_update_missing_account(self, client):
        response = client.put("/accounts/missing", json={"name": "Renamed"})
        assert response.status_code == 404

    def test_delete(self, client):
        account = create_account(client)
        assert client.delete(f"/accounts/{account['id']}").status_code == 204
        assert client.get("/accounts/").json() == []
        assert client.delete(f"/accounts/{account['id']}").status_code == 404


class TestTransactionsRouter:

    def test_expense_updates_balance(self, client):
        account = create_account(client)
        response = client.post("/transactions/", json={
            "account_id": account["id"], "type": "expense", "amount": "200", "date": "2025-07-01",
        })
        assert response.status_code == 201
        assert response.json()["amount"] == "200.00"

        [updated] = client.get("/accounts/").json()
        assert updated["current_balance"] == "800.00"

    def test_transfer_filters_by_either_account(self, client):
        general = create_account(client, "General Fund", "500")
        savings = create_account(client, "Savings", "100")
        client.post("/transactions/", json={
            "account_id": general["id"], "target_account_id": savings["id"], "type": "transfer",
            "amount": "300", "date": "2025-07-01",
        })

        incoming = client.get("/transactions/", params={"account_id": savings["id"]}).json()
        assert len(incoming) == 1
        balances = {a["name"]: a["current_balance"] for a in client.get("/accounts/").json()}
        assert balances == {"General Fund": "200.00", "Savings": "400.00"}

    def test_unknown_account_is_bad_request(self, client):
        response = client.post("/transactions/", json={
            "account_id": "ghost", "type": "income", "amount": "1", "date": "2025-07-01",
        })
        assert response.status_code == 400

    def test_transfer_without_target_is_invalid(self, client):
        account = create_account(client)
        response = client.post("/transactions/", json={
            "account_id": account["id"], "type": "transfer", "amount": "1", "date": "2025-07-01",
        })
        assert response.status_code == 422

    def test_update_pointing_at_unknown_records_is_bad_request(self, client):
        account = create_account(client)
        txn = client.post("/transactions/", json={
            "account_id": account["id"], "type": "expense", "amount": "50", "date": "2025-07-01",
        }).json()

        assert client.put(f"/transactions/{txn['id']}", json={"account_id": "ghost"}).status_code == 400
        assert client.put(f"/transactions/{txn['id']}", json={"category_id": "ghost"}).status_code == 400
        [unchanged] = client.get("/accounts/").json()
        assert unchanged["current_balance"] == "950.00"

    def test_update_and_delete_missing_transaction(self, client):
        assert client.put("/transactions/missing", json={"amount": "1"}).status_code == 404
        assert client.delete("/transactions/missing").status_code == 404


class TestCategoriesRouter:

    def test_defaults_available_offline(self, client):
        categories = client.get("/categories/").json()
        assert len(categories) == 15
        income = client.get("/categories/", params={"category_type": "income"}).json()
        assert len(income) == 5

    def test_create_category(self, client):
        response = client.post("/categories/", json={"name": "Youth Ministry", "type": "expense", "color": "#123ABC"})
        assert response.status_code == 201
        assert response.json()["color"] == "#123abc"
        assert len(client.get("/categories/").json()) == 16


class TestSyncRouter:

    def test_status_counts_pending_changes(self, client):
        create_account(client)
        status = client.get("/sync/status").json()
        assert status["is_online"] is False
        assert status["pending_count"] == 1
        assert status["phase"] == "idle"

    def test_coming_online_pushes_queued_changes(self, finance, connectivity, remote):
        connectivity.set_online(False)
        app = create_app(settings=Settings(database_url="sqlite://"), finance_store=finance, owner_id=OWNER)
        with TestClient(app) as client:
            account = create_account(client)
            response = client.post("/sync/connectivity", json={"online": True})
            assert response.json()["is_online"] is True
        # Shutdown waits for the triggered cycle
        assert [row["id"] for row in remote.rows(ACCOUNTS)] == [account["id"]]
        assert finance.pending_count == 0
