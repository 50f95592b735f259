from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from banklink.db import Base, utcnow

CONNECTION_ACTIVE = "active"
CONNECTION_EXPIRED = "expired"
CONNECTION_REVOKED = "revoked"

SYNC_SYNCING = "syncing"
SYNC_COMPLETED = "completed"
SYNC_FAILED = "failed"

PAYMENT_PENDING = "pending"
PAYMENT_PROCESSING = "processing"
PAYMENT_COMPLETED = "completed"
PAYMENT_FAILED = "failed"
PAYMENT_CANCELLED = "cancelled"
PAYMENT_STATUSES = (PAYMENT_PENDING, PAYMENT_PROCESSING, PAYMENT_COMPLETED, PAYMENT_FAILED, PAYMENT_CANCELLED)
PAYMENT_TERMINAL = (PAYMENT_COMPLETED, PAYMENT_FAILED, PAYMENT_CANCELLED)

TRANSACTION_TERMINAL = ("completed", "declined", "reverted", "failed")

ROLE_SUPERADMIN = "superadmin"


class OAuthState(Base):
    __tablename__ = "oauth_states"

    id = Column(Integer, primary_key=True, index=True)
    state = Column(String, unique=True, index=True, nullable=False)
    tenant_id = Column(String, nullable=False)
    expires_at = Column(DateTime(timezone=True), index=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class Connection(Base):
    __tablename__ = "connections"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String, unique=True, index=True, nullable=False)
    access_token_enc = Column(Text, nullable=False, default="")
    refresh_token_enc = Column(Text, nullable=False, default="")
    token_type = Column(String, default="Bearer")
    access_token_expires_at = Column(DateTime(timezone=True), nullable=True)
    refresh_token_expires_at = Column(DateTime(timezone=True), nullable=True)
    status = Column(String, nullable=False, default=CONNECTION_ACTIVE, index=True)

    last_sync_at = Column(DateTime(timezone=True), nullable=True)
    last_sync_status = Column(String, nullable=True)
    last_sync_error = Column(Text, nullable=True)

    connected_at = Column(DateTime(timezone=True), default=utcnow)
    disconnected_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class Account(Base):
    __tablename__ = "accounts"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String, index=True, nullable=False)
    connection_id = Column(Integer, ForeignKey("connections.id"), nullable=False)
    external_account_id = Column(String, nullable=False)
    name = Column(String, nullable=True)
    balance = Column(Numeric(18, 2), nullable=False, default=0)
    currency = Column(String(3), nullable=False)
    state = Column(String, nullable=True)
    account_metadata = Column(JSON, nullable=True)
    balance_updated_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    transactions = relationship("Transaction", back_populates="account")

    __table_args__ = (
        UniqueConstraint("tenant_id", "external_account_id", name="uq_tenant_external_account"),
    )


class Transaction(Base):
    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String, index=True, nullable=False)
    account_id = Column(Integer, ForeignKey("accounts.id"), index=True, nullable=False)
    external_transaction_id = Column(String, nullable=False)
    leg_id = Column(String, nullable=True)
    type = Column(String, nullable=True)
    state = Column(String, nullable=False)
    amount = Column(Numeric(18, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    balance_after = Column(Numeric(18, 2), nullable=True)
    counterparty_name = Column(String, nullable=True)
    reference = Column(String, nullable=True)
    description = Column(Text, nullable=True)
    merchant_name = Column(String, nullable=True)
    transaction_date = Column(Date, nullable=True)
    created_at_provider = Column(DateTime(timezone=True), nullable=True)
    completed_at_provider = Column(DateTime(timezone=True), nullable=True)

    # Local reconciliation
    document_id = Column(Integer, ForeignKey("documents.id"), nullable=True)
    is_reconciled = Column(Boolean, nullable=False, default=False)
    reconciled_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    account = relationship("Account", back_populates="transactions")

    __table_args__ = (
        UniqueConstraint("tenant_id", "external_transaction_id", name="uq_tenant_external_txn"),
    )


class Payment(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String, index=True, nullable=False)
    connection_id = Column(Integer, ForeignKey("connections.id"), nullable=False)
    source_account_id = Column(Integer, ForeignKey("accounts.id"), nullable=True)

    # external id is assigned by the provider; request_id is ours and exists first
    external_payment_id = Column(String, unique=True, index=True, nullable=True)
    request_id = Column(String, unique=True, index=True, nullable=False)

    amount = Column(Numeric(18, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    reference = Column(String(140), nullable=True)
    recipient_name = Column(String, nullable=False)
    recipient_iban = Column(String, nullable=True)
    recipient_bic = Column(String, nullable=True)

    status = Column(String, nullable=False, default=PAYMENT_PENDING, index=True)
    reason_code = Column(String, nullable=True)
    error_message = Column(Text, nullable=True)

    document_id = Column(Integer, ForeignKey("documents.id"), nullable=True)
    created_by = Column(String, nullable=True)

    submitted_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class SyncRun(Base):
    __tablename__ = "sync_runs"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String, index=True, nullable=False)
    connection_id = Column(Integer, ForeignKey("connections.id"), nullable=False)
    sync_type = Column(String, nullable=False, default="full")
    status = Column(String, nullable=False, default=SYNC_SYNCING)
    records_fetched = Column(Integer, nullable=False, default=0)
    records_written = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)
    started_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    duration_ms = Column(Integer, nullable=True)


class AuditEvent(Base):
    __tablename__ = "audit_events"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String, index=True, nullable=False)
    action = Column(String, nullable=False)
    entity_type = Column(String, nullable=False)
    entity_id = Column(String, nullable=False)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)


# Host application tables. The surrounding application owns these; they are
# declared here so the integration can run and be tested on its own.

class Membership(Base):
    __tablename__ = "memberships"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, index=True, nullable=False)
    tenant_id = Column(String, index=True, nullable=False)
    role = Column(String, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)


class Document(Base):
    __tablename__ = "documents"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String, index=True, nullable=False)
    number = Column(String, nullable=True)
    status = Column(String, nullable=False, default="sent")
    paid_at = Column(DateTime(timezone=True), nullable=True)
