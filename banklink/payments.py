import uuid
import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional

from sqlalchemy.orm import Session

from banklink.collaborators import Principal, require_admin
from banklink.connections import ConnectionManager
from banklink.db import utcnow
from banklink.errors import NoConnection, NotFound, PaymentFailed, ValidationFailed
from banklink.models import (
    CONNECTION_ACTIVE,
    PAYMENT_FAILED,
    PAYMENT_PENDING,
    PAYMENT_STATUSES,
    Account,
    Connection,
    Document,
    Payment,
)
from banklink.provider_client import ProviderClient, ProviderError

logger = logging.getLogger(__name__)

FOUND_BY_EXTERNAL = "external"
FOUND_BY_REQUEST = "request"
NOT_FOUND = "none"


@dataclass
class PaymentLookup:
    found_by: str
    payment: Optional[Payment] = None

    @property
    def found(self) -> bool:
        return self.payment is not None


def resolve_payment(db: Session, identifier: str) -> PaymentLookup:
    """Finds a payment by provider id, then by our request id."""
    if not identifier:
        return PaymentLookup(NOT_FOUND)
    payment = db.query(Payment).filter(Payment.external_payment_id == identifier).first()
    if payment:
        return PaymentLookup(FOUND_BY_EXTERNAL, payment)
    payment = db.query(Payment).filter(Payment.request_id == identifier).first()
    if payment:
        return PaymentLookup(FOUND_BY_REQUEST, payment)
    return PaymentLookup(NOT_FOUND)


def normalize_payment_state(state: Optional[str]) -> Optional[str]:
    """Maps provider payment states onto ours; None for states we do not track."""
    if not state:
        return None
    state = state.lower()
    if state == "declined":
        return PAYMENT_FAILED
    if state in PAYMENT_STATUSES:
        return state
    return None


def _to_minor_units(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class PaymentService:
    def __init__(self, db: Session, manager: Optional[ConnectionManager] = None,
                 client: Optional[ProviderClient] = None):
        self.db = db
        self.client = client or ProviderClient()
        self.manager = manager or ConnectionManager(db, client=self.client)

    def create_payment(self, principal: Principal, source_account_id: int, recipient_name: str,
                       recipient_iban: str, amount, currency: str, reference: str,
                       recipient_bic: Optional[str] = None, document_id: Optional[int] = None) -> Payment:
        require_admin(principal, "create payments")

        if not recipient_name or not recipient_iban or not currency or not reference:
            raise ValidationFailed("Missing required fields")
        try:
            amount = Decimal(str(amount))
        except (InvalidOperation, ValueError) as e:
            raise ValidationFailed("Amount must be a number") from e
        if amount <= 0:
            raise ValidationFailed("Amount must be positive")

        connection = self.db.query(Connection).filter(
            Connection.tenant_id == principal.tenant_id,
            Connection.status == CONNECTION_ACTIVE,
        ).first()
        if not connection:
            raise NoConnection()

        account = self.db.query(Account).filter(
            Account.id == source_account_id,
            Account.tenant_id == principal.tenant_id,
        ).first()
        if not account:
            raise NotFound("Source account not found")

        if document_id is not None:
            document = self.db.query(Document).filter(
                Document.id == document_id,
                Document.tenant_id == principal.tenant_id,
            ).first()
            if not document:
                raise NotFound("Document not found")

        access_token = self.manager.get_valid_token(principal.tenant_id)

        # The request id exists (and is stored) before the provider assigns its own id
        payment = Payment(
            tenant_id=principal.tenant_id,
            connection_id=connection.id,
            source_account_id=account.id,
            request_id=uuid.uuid4().hex,
            amount=amount,
            currency=currency.upper(),
            reference=reference,
            recipient_name=recipient_name,
            recipient_iban=recipient_iban,
            recipient_bic=recipient_bic,
            status=PAYMENT_PENDING,
            document_id=document_id,
            created_by=principal.user_id,
        )
        self.db.add(payment)
        self.db.commit()
        log_extra = {"tenant_id": principal.tenant_id, "entity_id": payment.request_id}

        try:
            counterparty = self.client.create_counterparty(
                access_token, name=recipient_name, iban=recipient_iban,
                currency=payment.currency, bic=recipient_bic,
            )
            submitted = self.client.create_payment(
                access_token,
                request_id=payment.request_id,
                account_id=account.external_account_id,
                counterparty_id=counterparty["id"],
                amount_minor=_to_minor_units(amount),
                currency=payment.currency,
                reference=reference,
            )
        except (ProviderError, KeyError) as e:
            payment.status = PAYMENT_FAILED
            payment.error_message = str(e)
            self.db.commit()
            logger.error(f"Payment submission failed: {e}", extra=log_extra)
            raise PaymentFailed(f"Payment submission failed: {e}") from e

        payment.external_payment_id = submitted.get("id")
        payment.status = normalize_payment_state(submitted.get("state")) or PAYMENT_PENDING
        payment.submitted_at = utcnow()
        self.db.commit()
        logger.info(f"Payment submitted as {payment.external_payment_id}", extra=log_extra)
        return payment
