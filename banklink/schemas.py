from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class DisconnectRequest(BaseModel):
    deleteData: bool = False


class PaymentRecipient(BaseModel):
    name: str
    iban: str
    bic: Optional[str] = None


class PaymentRequest(BaseModel):
    sourceAccountId: int
    recipient: PaymentRecipient
    amount: Decimal = Field(gt=0)
    currency: str = Field(min_length=3, max_length=3)
    reference: str = Field(min_length=1, max_length=140)
    documentId: Optional[int] = None


class ReconcileRequest(BaseModel):
    documentId: Optional[int] = None


class ConnectionStatusOut(BaseModel):
    connected: bool
    status: str
    connected_at: Optional[datetime] = None
    disconnected_at: Optional[datetime] = None
    access_token_expires_at: Optional[datetime] = None
    refresh_token_expires_at: Optional[datetime] = None
    last_sync_at: Optional[datetime] = None
    last_sync_status: Optional[str] = None
    last_sync_error: Optional[str] = None


class AccountOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    external_account_id: str
    name: Optional[str] = None
    balance: Decimal
    currency: str
    state: Optional[str] = None
    balance_updated_at: Optional[datetime] = None


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    account_id: int
    external_transaction_id: str
    type: Optional[str] = None
    state: str
    amount: Decimal
    currency: str
    counterparty_name: Optional[str] = None
    reference: Optional[str] = None
    description: Optional[str] = None
    merchant_name: Optional[str] = None
    transaction_date: Optional[date] = None
    document_id: Optional[int] = None
    is_reconciled: bool
    reconciled_at: Optional[datetime] = None


class PaymentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    external_payment_id: Optional[str] = None
    request_id: str
    amount: Decimal
    currency: str
    reference: Optional[str] = None
    recipient_name: str
    status: str
    reason_code: Optional[str] = None
    document_id: Optional[int] = None
    submitted_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class SyncRunOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    sync_type: str
    status: str
    records_fetched: int
    records_written: int
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None


class TransactionPage(BaseModel):
    transactions: List[TransactionOut]
    total: int
