from datetime import timedelta
from decimal import Decimal

import pytest

from banklink.db import utcnow
from banklink.models import Account, Document, Transaction

from conftest import ACCOUNTANT, ADMIN, TENANT_A, VIEWER


def test_status_without_connection(client):
    resp = client.get("/integrations/bank/status", headers=ADMIN)
    assert resp.status_code == 200
    assert resp.json()["connected"] is False
    assert resp.json()["status"] == "none"


def test_status_after_sync(client, make_connection):
    make_connection()
    client.post("/integrations/bank/sync", headers=ADMIN)

    data = client.get("/integrations/bank/status", headers=ACCOUNTANT).json()
    assert data["connected"] is True
    assert data["last_sync_status"] == "completed"
    # Token material is never part of the view
    assert not any("token_enc" in key for key in data)


def test_read_views(client, make_connection):
    make_connection()
    client.post("/integrations/bank/sync", headers=ADMIN)

    accounts = client.get("/integrations/bank/accounts", headers=ACCOUNTANT).json()
    assert [a["currency"] for a in accounts] == ["EUR", "GBP"]

    page = client.get("/integrations/bank/transactions", headers=ACCOUNTANT).json()
    assert page["total"] == 5
    assert len(page["transactions"]) == 5
    eur_id = accounts[0]["id"]
    eur_page = client.get("/integrations/bank/transactions", params={"account_id": eur_id},
                          headers=ACCOUNTANT).json()
    assert {t["external_transaction_id"] for t in eur_page["transactions"]} == {"txn_0", "txn_2", "txn_4"}

    runs = client.get("/integrations/bank/sync-runs", headers=ACCOUNTANT).json()
    assert len(runs) == 1
    assert runs[0]["records_written"] == 7

    # Another tenant sees nothing
    other = client.get("/integrations/bank/transactions", headers={"X-User-Id": "admin-2"}).json()
    assert other == {"transactions": [], "total": 0}


@pytest.mark.parametrize("path", ["/status", "/accounts", "/balances", "/transactions", "/sync-runs", "/payments"])
def test_bank_data_hidden_from_viewers(client, make_connection, path):
    make_connection()
    client.post("/integrations/bank/sync", headers=ADMIN)

    resp = client.get(f"/integrations/bank{path}", headers=VIEWER)
    assert resp.status_code == 403
    assert client.get(f"/integrations/bank{path}", headers=ACCOUNTANT).status_code == 200


def test_balances_by_currency(client, db, make_connection):
    conn = make_connection()
    client.post("/integrations/bank/sync", headers=ADMIN)
    db.add_all([
        Account(tenant_id=TENANT_A, connection_id=conn.id, external_account_id="acc_eur_2",
                balance=Decimal("99.50"), currency="EUR", state="active"),
        Account(tenant_id=TENANT_A, connection_id=conn.id, external_account_id="acc_eur_closed",
                balance=Decimal("1000.00"), currency="EUR", state="inactive"),
    ])
    db.commit()

    balances = client.get("/integrations/bank/balances", headers=ACCOUNTANT).json()
    assert {k: Decimal(str(v)) for k, v in balances.items()} == {
        "EUR": Decimal("12600.00"),
        "GBP": Decimal("830.00"),
    }
    assert client.get("/integrations/bank/balances", headers={"X-User-Id": "admin-2"}).json() == {}


def test_transaction_filters(client, db, make_connection):
    make_connection()
    client.post("/integrations/bank/sync", headers=ADMIN)
    today = utcnow().date()
    old = db.query(Transaction).filter_by(external_transaction_id="txn_4").one()
    old.transaction_date = today - timedelta(days=20)
    db.commit()

    by_type = client.get("/integrations/bank/transactions", params={"type": "transfer"}, headers=ACCOUNTANT).json()
    assert by_type["total"] == 2
    assert {t["external_transaction_id"] for t in by_type["transactions"]} == {"txn_1", "txn_3"}

    recent = client.get("/integrations/bank/transactions",
                        params={"from_date": (today - timedelta(days=10)).isoformat()}, headers=ACCOUNTANT).json()
    assert recent["total"] == 4
    assert "txn_4" not in {t["external_transaction_id"] for t in recent["transactions"]}

    older = client.get("/integrations/bank/transactions",
                       params={"to_date": (today - timedelta(days=10)).isoformat()}, headers=ACCOUNTANT).json()
    assert [t["external_transaction_id"] for t in older["transactions"]] == ["txn_4"]

    # Total counts every match, not just the page
    paged = client.get("/integrations/bank/transactions", params={"limit": 2}, headers=ACCOUNTANT).json()
    assert paged["total"] == 5
    assert len(paged["transactions"]) == 2


def test_reconcile_and_unreconcile(client, db, make_connection):
    make_connection()
    client.post("/integrations/bank/sync", headers=ADMIN)
    doc = Document(tenant_id=TENANT_A, number="INV-7")
    db.add(doc)
    db.commit()
    txn = db.query(Transaction).filter_by(external_transaction_id="txn_0").one()

    resp = client.post(f"/integrations/bank/transactions/{txn.id}/reconcile", json={"documentId": doc.id},
                       headers=ACCOUNTANT)
    assert resp.status_code == 200
    assert resp.json()["is_reconciled"] is True
    assert resp.json()["document_id"] == doc.id

    unreconciled = client.get("/integrations/bank/transactions", params={"reconciled": False},
                              headers=ADMIN).json()
    assert txn.id not in [t["id"] for t in unreconciled["transactions"]]

    resp = client.post(f"/integrations/bank/transactions/{txn.id}/unreconcile", headers=ADMIN)
    assert resp.status_code == 200
    assert resp.json()["is_reconciled"] is False
    assert resp.json()["document_id"] is None


def test_reconcile_guards(client, db, make_connection):
    make_connection()
    client.post("/integrations/bank/sync", headers=ADMIN)
    txn = db.query(Transaction).first()

    assert client.post(f"/integrations/bank/transactions/{txn.id}/reconcile", headers=VIEWER).status_code == 403
    assert client.post(f"/integrations/bank/transactions/{txn.id}/reconcile",
                       headers={"X-User-Id": "admin-2"}).status_code == 404
    assert client.post(f"/integrations/bank/transactions/{txn.id}/reconcile", json={"documentId": 999},
                       headers=ADMIN).status_code == 404


def test_request_id_header(client):
    resp = client.get("/integrations/bank/status", headers=ADMIN)
    assert resp.headers["X-Request-Id"]
