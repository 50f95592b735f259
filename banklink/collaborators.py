"""Boundary with the host application.

The integration needs three things from the application around it: who the
caller is (tenant and role), a way to mark an invoice-like document paid, and
an append-only audit log. The SQL-backed defaults below work against the
tables declared in ``banklink.models``.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from banklink.db import utcnow
from banklink.errors import Forbidden
from banklink.models import AuditEvent, Document, Membership, ROLE_SUPERADMIN

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Principal:
    user_id: str
    tenant_id: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_SUPERADMIN


def require_admin(principal: Principal, action: str):
    if not principal.is_admin:
        logger.warning(
            f"Denied {action} for user {principal.user_id} with role {principal.role}",
            extra={"tenant_id": principal.tenant_id},
        )
        raise Forbidden(f"Only superadmins can {action}")


class MembershipDirectory:
    def lookup(self, db: Session, user_id: str) -> Optional[Principal]:
        membership = db.query(Membership).filter(
            Membership.user_id == user_id,
            Membership.is_active.is_(True),
        ).first()
        if not membership:
            return None
        return Principal(user_id=user_id, tenant_id=membership.tenant_id, role=membership.role)


class DocumentStatusWriter:
    def mark_paid(self, db: Session, tenant_id: str, document_id: int) -> bool:
        """Flags the document paid. Returns False if it is not in this tenant."""
        document = db.query(Document).filter(
            Document.id == document_id,
            Document.tenant_id == tenant_id,
        ).first()
        if not document:
            return False
        document.status = "paid"
        document.paid_at = utcnow()
        return True


class AuditLogWriter:
    def write(self, db: Session, tenant_id: str, action: str, entity_type: str, entity_id,
              details: Optional[dict] = None) -> AuditEvent:
        event = AuditEvent(
            tenant_id=tenant_id,
            action=action,
            entity_type=entity_type,
            entity_id=str(entity_id),
            details=details or {},
        )
        db.add(event)
        return event
