import hashlib
import hmac
import json
from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from banklink.models import AuditEvent, Account, Document, Payment, Transaction
from banklink.settings import settings
from banklink.webhooks import WebhookReconciler, parse_event, verify_signature

from conftest import TENANT_A

WEBHOOK_URL = "/integrations/bank/webhook"


def sign(body: bytes, secret: str = "whsec_test") -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def post_event(client, payload, secret="whsec_test", signature=None):
    body = json.dumps(payload).encode()
    headers = {settings.WEBHOOK_SIGNATURE_HEADER: signature if signature is not None else sign(body, secret)}
    return client.post(WEBHOOK_URL, content=body, headers=headers)


@pytest.fixture
def account(db, make_connection):
    conn = make_connection()
    acc = Account(tenant_id=TENANT_A, connection_id=conn.id, external_account_id="acc_main_eur",
                  name="Main EUR", balance=Decimal("100.00"), currency="EUR")
    db.add(acc)
    db.commit()
    return acc


@pytest.fixture
def document(db):
    doc = Document(tenant_id=TENANT_A, number="INV-1001", status="sent")
    db.add(doc)
    db.commit()
    return doc


@pytest.fixture
def payment(db, account, document):
    pay = Payment(
        tenant_id=TENANT_A,
        connection_id=account.connection_id,
        source_account_id=account.id,
        external_payment_id="pay_ext_1",
        request_id="req_1",
        amount=Decimal("42.00"),
        currency="EUR",
        recipient_name="Supplier AS",
        status="pending",
        document_id=document.id,
    )
    db.add(pay)
    db.commit()
    return pay


def audit_actions(db):
    return [e.action for e in db.query(AuditEvent).order_by(AuditEvent.id)]


def test_verify_signature():
    body = b'{"event":"PaymentCreated"}'
    assert verify_signature(body, sign(body), "whsec_test")
    assert verify_signature(body, "sha256=" + sign(body), "whsec_test")
    assert not verify_signature(body, sign(body, "other-secret"), "whsec_test")
    assert not verify_signature(body + b" ", sign(body), "whsec_test")


def test_bad_signature_rejected(client, db, payment):
    resp = post_event(client, {"event": "PaymentStateChanged", "data": {"id": "pay_ext_1", "state": "completed"}},
                      secret="wrong")
    assert resp.status_code == 401
    db.expire_all()
    assert db.query(Payment).one().status == "pending"


def test_missing_signature_rejected(client):
    resp = client.post(WEBHOOK_URL, content=b'{"event":"PaymentCreated","data":{"id":"x"}}')
    assert resp.status_code == 401


def test_unsigned_accepted_without_secret(client, monkeypatch):
    monkeypatch.setattr(settings, "BANK_WEBHOOK_SECRET", None)
    resp = client.post(WEBHOOK_URL, content=b'{"event":"SomethingElse","data":{"id":"x"}}')
    assert resp.status_code == 200
    assert resp.json() == {"received": True}


def test_malformed_payloads(client):
    assert post_event(client, {"event": "PaymentCreated"}).status_code == 400
    assert post_event(client, {"event": "PaymentCreated", "data": {"id": ""}}).status_code == 400

    body = b"not json"
    resp = client.post(WEBHOOK_URL, content=body, headers={settings.WEBHOOK_SIGNATURE_HEADER: sign(body)})
    assert resp.status_code == 400


def test_unknown_event_acknowledged(client):
    resp = post_event(client, {"event": "AccountUpdated", "data": {"id": "acc_1"}})
    assert resp.status_code == 200
    assert resp.json() == {"received": True}


def test_get_acknowledges(client):
    resp = client.get(WEBHOOK_URL)
    assert resp.status_code == 200
    assert resp.json()["received"] is True
    assert resp.json()["status"] == "ok"


def test_transaction_state_change(client, db, account):
    db.add(Transaction(tenant_id=TENANT_A, account_id=account.id, external_transaction_id="txn_9",
                       state="pending", amount=Decimal("-5.00"), currency="EUR"))
    db.commit()

    resp = post_event(client, {"event": "TransactionStateChanged",
                               "data": {"id": "txn_9", "old_state": "pending", "new_state": "completed",
                                        "state": "completed"}})
    assert resp.status_code == 200
    db.expire_all()
    assert db.query(Transaction).one().state == "completed"


def test_unknown_transaction_is_noop(client, db):
    resp = post_event(client, {"event": "TransactionCreated", "data": {"id": "txn_missing", "state": "pending"}})
    assert resp.status_code == 200
    assert db.query(Transaction).count() == 0


def test_completion_marks_document_paid(client, db, payment, document):
    resp = post_event(client, {"event": "PaymentStateChanged",
                               "timestamp": "2024-05-01T10:00:00Z",
                               "data": {"id": "pay_ext_1", "state": "completed",
                                        "completed_at": "2024-05-01T09:59:00Z"}})
    assert resp.status_code == 200

    db.expire_all()
    pay = db.query(Payment).one()
    assert pay.status == "completed"
    assert pay.completed_at is not None
    doc = db.query(Document).one()
    assert doc.status == "paid"
    assert doc.paid_at is not None

    event = db.query(AuditEvent).one()
    assert event.action == "payment.completed"
    assert event.entity_type == "bank_payment"
    assert event.entity_id == str(pay.id)
    assert event.details["found_by"] == "external"


def test_redelivered_completion_is_noop(client, db, payment):
    payload = {"event": "PaymentStateChanged", "data": {"id": "pay_ext_1", "state": "completed"}}
    post_event(client, payload)
    resp = post_event(client, payload)

    assert resp.status_code == 200
    assert audit_actions(db) == ["payment.completed"]


def test_lookup_by_request_id_learns_external_id(client, db, payment):
    payment.external_payment_id = None
    db.commit()

    resp = post_event(client, {"event": "PaymentCreated",
                               "data": {"id": "pay_new_99", "request_id": "req_1", "state": "processing"}})
    assert resp.status_code == 200

    db.expire_all()
    pay = db.query(Payment).one()
    assert pay.external_payment_id == "pay_new_99"
    assert pay.status == "processing"


def test_request_id_used_as_event_id(db, payment):
    event = parse_event(json.dumps({"event": "PaymentStateChanged",
                                    "data": {"id": "req_1", "state": "processing"}}).encode())
    assert WebhookReconciler(db).handle(event) == "payment_updated"
    db.expire_all()
    pay = db.query(Payment).one()
    assert pay.status == "processing"
    # The request id is never mistaken for the provider id
    assert pay.external_payment_id == "pay_ext_1"


def test_declined_maps_to_failed_with_reason(client, db, payment, document):
    resp = post_event(client, {"event": "PaymentStateChanged",
                               "data": {"id": "pay_ext_1", "state": "declined", "reason_code": "insufficient_funds"}})
    assert resp.status_code == 200

    db.expire_all()
    pay = db.query(Payment).one()
    assert pay.status == "failed"
    assert pay.reason_code == "insufficient_funds"
    assert db.query(Document).one().status == "sent"

    event = db.query(AuditEvent).one()
    assert event.action == "payment.failed"
    assert event.details["reason_code"] == "insufficient_funds"


def test_conflicting_terminal_state_is_an_anomaly(client, db, payment, document):
    post_event(client, {"event": "PaymentStateChanged", "data": {"id": "pay_ext_1", "state": "completed"}})
    resp = post_event(client, {"event": "PaymentStateChanged",
                               "data": {"id": "pay_ext_1", "state": "failed", "reason_code": "late_reject"}})
    assert resp.status_code == 200

    db.expire_all()
    assert db.query(Payment).one().status == "completed"
    assert db.query(Document).one().status == "paid"
    assert audit_actions(db) == ["payment.completed", "payment.state_anomaly"]
    anomaly = db.query(AuditEvent).filter_by(action="payment.state_anomaly").one()
    assert anomaly.details["current_status"] == "completed"
    assert anomaly.details["reported_status"] == "failed"


def test_terminal_payment_not_reopened(db, payment):
    payment.status = "failed"
    db.commit()

    event = parse_event(json.dumps({"event": "PaymentStateChanged",
                                    "data": {"id": "pay_ext_1", "state": "pending"}}).encode())
    assert WebhookReconciler(db).handle(event) == "stale"
    db.expire_all()
    assert db.query(Payment).one().status == "failed"


def test_unknown_payment_acknowledged(client, db):
    resp = post_event(client, {"event": "PaymentStateChanged", "data": {"id": "pay_unknown", "state": "completed"}})
    assert resp.status_code == 200
    assert db.query(AuditEvent).count() == 0


def test_storage_error_still_acknowledged(client, db, payment, monkeypatch):
    def broken_handle(self, event):
        raise OperationalError("UPDATE payments", {}, Exception("database is locked"))

    monkeypatch.setattr(WebhookReconciler, "handle", broken_handle)
    resp = post_event(client, {"event": "PaymentStateChanged", "data": {"id": "pay_ext_1", "state": "completed"}})
    assert resp.status_code == 200
    assert resp.json() == {"received": True}
