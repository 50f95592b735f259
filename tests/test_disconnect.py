from decimal import Decimal

from banklink.models import (
    CONNECTION_REVOKED,
    Account,
    Connection,
    Payment,
    SyncRun,
    Transaction,
)

from conftest import ADMIN, TENANT_A, TENANT_B, VIEWER


def sync(client):
    resp = client.post("/integrations/bank/sync", headers=ADMIN)
    assert resp.status_code == 200


def test_disconnect_revokes_and_keeps_data(client, db, make_connection):
    make_connection()
    sync(client)

    resp = client.post("/integrations/bank/disconnect", json={"deleteData": False}, headers=ADMIN)
    assert resp.status_code == 200
    assert resp.json() == {"success": True, "dataDeleted": False}

    db.expire_all()
    conn = db.query(Connection).filter_by(tenant_id=TENANT_A).one()
    assert conn.status == CONNECTION_REVOKED
    assert conn.disconnected_at is not None
    assert conn.access_token_enc == ""
    assert conn.refresh_token_enc == ""
    assert db.query(Account).count() == 2
    assert db.query(Transaction).count() == 5

    # A revoked connection cannot be used
    resp = client.post("/integrations/bank/sync", headers=ADMIN)
    assert resp.status_code == 400
    assert resp.json()["code"] == "NO_CONNECTION"


def test_disconnect_with_delete_purges_tenant_data(client, db, make_connection):
    conn = make_connection()
    make_connection(tenant_id=TENANT_B)
    sync(client)
    account = db.query(Account).filter_by(tenant_id=TENANT_A).first()
    db.add(Payment(tenant_id=TENANT_A, connection_id=conn.id, source_account_id=account.id,
                   request_id="req_purge", amount=Decimal("1"), currency="EUR", recipient_name="A"))
    db.commit()

    resp = client.post("/integrations/bank/disconnect", json={"deleteData": True}, headers=ADMIN)
    assert resp.status_code == 200
    assert resp.json() == {"success": True, "dataDeleted": True}

    db.expire_all()
    for model in (Connection, Account, Transaction, Payment, SyncRun):
        assert db.query(model).filter_by(tenant_id=TENANT_A).count() == 0
    # Other tenants are untouched
    assert db.query(Connection).filter_by(tenant_id=TENANT_B).count() == 1


def test_disconnect_without_body_defaults_to_revoke(client, db, make_connection):
    make_connection()
    resp = client.post("/integrations/bank/disconnect", headers=ADMIN)
    assert resp.json()["dataDeleted"] is False
    db.expire_all()
    assert db.query(Connection).one().status == CONNECTION_REVOKED


def test_disconnect_without_connection(client):
    resp = client.post("/integrations/bank/disconnect", json={"deleteData": True}, headers=ADMIN)
    assert resp.status_code == 400
    assert resp.json()["code"] == "NO_CONNECTION"


def test_disconnect_requires_superadmin(client, db, make_connection):
    make_connection()
    resp = client.post("/integrations/bank/disconnect", json={"deleteData": True}, headers=VIEWER)
    assert resp.status_code == 403
    db.expire_all()
    assert db.query(Connection).one().status == "active"
