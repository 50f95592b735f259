"""Inbound provider events: authenticate, parse, reconcile.

Only a bad signature or an unparseable payload is a hard failure. Events we
do not handle, entities we cannot find and repeated deliveries are
acknowledged so the provider does not keep retrying them.
"""
import hmac
import json
import hashlib
import logging
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from sqlalchemy.orm import Session

from banklink.collaborators import AuditLogWriter, DocumentStatusWriter
from banklink.db import utcnow
from banklink.errors import PayloadError, SignatureError
from banklink.models import (
    PAYMENT_CANCELLED,
    PAYMENT_COMPLETED,
    PAYMENT_FAILED,
    PAYMENT_TERMINAL,
    TRANSACTION_TERMINAL,
    Payment,
    Transaction,
)
from banklink.payments import normalize_payment_state, resolve_payment

logger = logging.getLogger(__name__)

TRANSACTION_EVENTS = ("TransactionCreated", "TransactionStateChanged")
PAYMENT_EVENTS = ("PaymentCreated", "PaymentStateChanged")

PAYMENT_ENTITY = "bank_payment"


class WebhookData(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str = Field(min_length=1)
    state: Optional[str] = None
    old_state: Optional[str] = None
    reason_code: Optional[str] = None
    completed_at: Optional[datetime] = None
    request_id: Optional[str] = None


class WebhookEvent(BaseModel):
    event: str
    timestamp: Optional[datetime] = None
    data: WebhookData


def verify_signature(raw_body: bytes, signature: str, secret: str) -> bool:
    expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    if signature.startswith("sha256="):
        signature = signature[len("sha256="):]
    return hmac.compare_digest(expected.encode("utf-8"), signature.strip().lower().encode("utf-8"))


def authenticate(raw_body: bytes, signature: Optional[str], secret: Optional[str]):
    """Raises SignatureError unless the body is signed with the configured secret."""
    if not secret:
        return
    if not signature:
        raise SignatureError("Missing webhook signature")
    if not verify_signature(raw_body, signature, secret):
        raise SignatureError("Invalid webhook signature")


def parse_event(raw_body: bytes) -> WebhookEvent:
    try:
        payload = json.loads(raw_body)
    except ValueError as e:
        raise PayloadError("Webhook body is not valid JSON") from e
    try:
        return WebhookEvent.model_validate(payload)
    except ValidationError as e:
        raise PayloadError(f"Webhook payload rejected: {e.error_count()} validation error(s)") from e


class WebhookReconciler:
    def __init__(self, db: Session, documents: Optional[DocumentStatusWriter] = None,
                 audit: Optional[AuditLogWriter] = None):
        self.db = db
        self.documents = documents or DocumentStatusWriter()
        self.audit = audit or AuditLogWriter()

    def handle(self, event: WebhookEvent) -> str:
        """Applies the event and returns a short outcome label."""
        log_extra = {"event_type": event.event, "entity_id": event.data.id}
        logger.info("Received bank webhook", extra=log_extra)

        if event.event in TRANSACTION_EVENTS:
            return self._handle_transaction(event)
        if event.event in PAYMENT_EVENTS:
            return self._handle_payment(event)

        logger.info("Unhandled webhook event type", extra=log_extra)
        return "ignored"

    def _handle_transaction(self, event: WebhookEvent) -> str:
        data = event.data
        txn = self.db.query(Transaction).filter(Transaction.external_transaction_id == data.id).first()
        if not txn:
            # May arrive before the next sync mirrors it
            logger.info(f"Transaction {data.id} not mirrored yet", extra={"event_type": event.event})
            return "not_found"
        if not data.state or data.state == txn.state:
            return "unchanged"
        if txn.state in TRANSACTION_TERMINAL and data.state not in TRANSACTION_TERMINAL:
            logger.warning(
                f"Refusing to move transaction {data.id} from {txn.state} back to {data.state}",
                extra={"tenant_id": txn.tenant_id},
            )
            return "stale"

        txn.state = data.state
        if data.state == "completed" and data.completed_at:
            txn.completed_at_provider = data.completed_at
        self.db.commit()
        logger.info(f"Transaction {data.id} updated to state: {data.state}", extra={"tenant_id": txn.tenant_id})
        return "transaction_updated"

    def _handle_payment(self, event: WebhookEvent) -> str:
        data = event.data
        lookup = resolve_payment(self.db, data.id)
        if not lookup.found and data.request_id:
            lookup = resolve_payment(self.db, data.request_id)
        if not lookup.found:
            logger.info(f"Payment {data.id} not found", extra={"event_type": event.event})
            return "not_found"

        payment = lookup.payment
        log_extra = {"tenant_id": payment.tenant_id, "entity_id": payment.request_id}

        # Learn the provider id if the event is the first place we see it
        if payment.external_payment_id is None and data.id != payment.request_id:
            payment.external_payment_id = data.id

        new_status = normalize_payment_state(data.state)
        if new_status is None:
            self.db.commit()
            logger.info(f"Ignoring untracked payment state {data.state}", extra=log_extra)
            return "ignored"

        if new_status == payment.status:
            self.db.commit()
            return "unchanged"

        if payment.status in PAYMENT_TERMINAL:
            if new_status in PAYMENT_TERMINAL:
                return self._record_anomaly(payment, new_status, event)
            self.db.commit()
            logger.warning(
                f"Refusing to move payment from {payment.status} back to {new_status}", extra=log_extra
            )
            return "stale"

        payment.status = new_status
        if data.reason_code:
            payment.reason_code = data.reason_code
        if data.completed_at:
            payment.completed_at = data.completed_at
        elif new_status == PAYMENT_COMPLETED:
            payment.completed_at = utcnow()

        details = {
            "external_payment_id": payment.external_payment_id,
            "request_id": payment.request_id,
            "found_by": lookup.found_by,
        }
        if new_status == PAYMENT_COMPLETED:
            self._on_completed(payment, details)
        elif new_status in (PAYMENT_FAILED, PAYMENT_CANCELLED):
            details.update(status=new_status, reason_code=data.reason_code)
            self.audit.write(self.db, payment.tenant_id, "payment.failed", PAYMENT_ENTITY, payment.id, details)
            logger.warning(f"Payment {new_status} with reason: {data.reason_code}", extra=log_extra)

        self.db.commit()
        logger.info(f"Payment updated to state: {new_status}", extra=log_extra)
        return "payment_updated"

    def _on_completed(self, payment: Payment, details: dict):
        if payment.document_id:
            marked = self.documents.mark_paid(self.db, payment.tenant_id, payment.document_id)
            details["document_id"] = payment.document_id
            details["document_marked_paid"] = marked
            if not marked:
                logger.warning(f"Linked document {payment.document_id} not found",
                               extra={"tenant_id": payment.tenant_id})
        self.audit.write(self.db, payment.tenant_id, "payment.completed", PAYMENT_ENTITY, payment.id, details)

    def _record_anomaly(self, payment: Payment, reported: str, event: WebhookEvent) -> str:
        self.audit.write(
            self.db, payment.tenant_id, "payment.state_anomaly", PAYMENT_ENTITY, payment.id,
            {
                "current_status": payment.status,
                "reported_status": reported,
                "event": event.event,
                "event_timestamp": event.timestamp.isoformat() if event.timestamp else None,
                "reason_code": event.data.reason_code,
            },
        )
        self.db.commit()
        logger.error(
            f"Payment already {payment.status}, provider reported {reported}; not overwritten",
            extra={"tenant_id": payment.tenant_id, "entity_id": payment.request_id},
        )
        return "anomaly"
