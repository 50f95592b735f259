import uuid
import logging
from datetime import date
from decimal import Decimal
from typing import Dict, List, Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from banklink.collaborators import MembershipDirectory, Principal, require_admin
from banklink.connections import ConnectionManager
from banklink.db import Base, engine, get_db, utcnow
from banklink.errors import (
    AlreadyConnected,
    BankLinkError,
    DeleteFailed,
    Forbidden,
    InvalidCallback,
    NoConnection,
    NotConfigured,
    NotFound,
    OAuthDenied,
    PayloadError,
    PaymentFailed,
    SessionExpired,
    SignatureError,
    StateMismatch,
    StorageFailed,
    UpdateFailed,
    ValidationFailed,
)
from banklink.logging_config import configure_logging
from banklink.models import ROLE_SUPERADMIN, Account, Document, Payment, SyncRun, Transaction
from banklink.payments import PaymentService
from banklink.provider_client import ProviderError
from banklink.provider_mock import router as provider_router
from banklink.schemas import (
    AccountOut,
    ConnectionStatusOut,
    DisconnectRequest,
    PaymentOut,
    PaymentRequest,
    ReconcileRequest,
    SyncRunOut,
    TransactionOut,
    TransactionPage,
)
from banklink.settings import settings
from banklink.sync import run_sync
from banklink.webhooks import WebhookReconciler, authenticate, parse_event

# Create tables
Base.metadata.create_all(bind=engine)

configure_logging()
logger = logging.getLogger(__name__)

STATE_COOKIE = "bank_oauth_state"
FINANCE_ROLES = (ROLE_SUPERADMIN, "accountant")

app = FastAPI(title="BankLink")


@app.middleware("http")
async def add_request_logging(request: Request, call_next):
    request_id = str(uuid.uuid4())
    request.state.request_id = request_id

    extra = {"request_id": request_id, "method": request.method, "path_url": request.url.path}
    logger.info("Request started", extra=extra)

    response = await call_next(request)

    response.headers["X-Request-Id"] = request_id
    logger.info(f"Request finished with status {response.status_code}", extra=extra)
    return response


if settings.MOCK_PROVIDER_ENABLED:
    app.include_router(provider_router, prefix="/provider", tags=["mock-provider"])

router = APIRouter(prefix="/integrations/bank", tags=["bank"])


def resolve_principal(
    x_user_id: Optional[str] = Header(None),
    db: Session = Depends(get_db),
) -> Optional[Principal]:
    if not x_user_id:
        return None
    return MembershipDirectory().lookup(db, x_user_id)


def get_principal(principal: Optional[Principal] = Depends(resolve_principal)) -> Principal:
    if principal is None:
        raise HTTPException(status_code=401, detail="No active membership")
    return principal


def get_finance_principal(principal: Principal = Depends(get_principal)) -> Principal:
    if principal.role not in FINANCE_ROLES:
        raise HTTPException(status_code=403, detail="Only superadmins and accountants can view bank data")
    return principal


def error_response(error: BankLinkError, status_code: int) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": error.message, "code": error.code})


def settings_redirect(**params) -> RedirectResponse:
    query = urlencode({"tab": "integrations", **params})
    return RedirectResponse(url=f"{settings.APP_BASE_URL}{settings.SETTINGS_PATH}?{query}", status_code=302)


@router.get("/authorize")
def authorize(principal: Principal = Depends(get_principal), db: Session = Depends(get_db)):
    manager = ConnectionManager(db)
    try:
        auth = manager.initiate(principal)
    except NotConfigured as e:
        return error_response(e, 503)
    except Forbidden as e:
        return error_response(e, 403)
    except AlreadyConnected:
        return settings_redirect(error="already_connected")
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Bank authorization failed: {e}", extra={"tenant_id": principal.tenant_id})
        return settings_redirect(error="oauth_failed")

    response = RedirectResponse(url=auth.url, status_code=302)
    response.set_cookie(
        STATE_COOKIE,
        auth.state,
        max_age=settings.OAUTH_STATE_TTL_MINUTES * 60,
        httponly=True,
        samesite="lax",
        secure=settings.APP_BASE_URL.startswith("https"),
    )
    return response


@router.get("/callback")
def callback(
    request: Request,
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    error_description: Optional[str] = None,
    principal: Optional[Principal] = Depends(resolve_principal),
    db: Session = Depends(get_db),
):
    bound_state = request.cookies.get(STATE_COOKIE)
    if principal is None:
        logger.warning("Bank callback without an active membership")
        response = settings_redirect(error="callback_failed")
        response.delete_cookie(STATE_COOKIE)
        return response

    manager = ConnectionManager(db)
    try:
        manager.complete(principal, code, state, bound_state=bound_state,
                         error=error, error_description=error_description)
        response = settings_redirect(success="connected")
    except OAuthDenied as e:
        response = settings_redirect(error=e.code, message=e.message)
    except (InvalidCallback, StateMismatch, SessionExpired, StorageFailed) as e:
        logger.warning(f"Bank callback rejected: {e.code}", extra={"tenant_id": principal.tenant_id})
        response = settings_redirect(error=e.code)
    except Forbidden:
        response = settings_redirect(error="callback_failed")
    except (ProviderError, SQLAlchemyError) as e:
        db.rollback()
        logger.error(f"Bank callback failed: {e}", extra={"tenant_id": principal.tenant_id})
        response = settings_redirect(error="callback_failed")

    response.delete_cookie(STATE_COOKIE)
    return response


@router.post("/disconnect")
def disconnect(
    req: Optional[DisconnectRequest] = None,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
):
    delete_data = req.deleteData if req else False
    manager = ConnectionManager(db)
    try:
        data_deleted = manager.disconnect(principal, delete_data=delete_data)
    except Forbidden as e:
        return error_response(e, 403)
    except NoConnection as e:
        return error_response(e, 400)
    except (DeleteFailed, UpdateFailed) as e:
        return error_response(e, 500)
    return {"success": True, "dataDeleted": data_deleted}


@router.post("/sync")
def trigger_sync(request: Request, principal: Principal = Depends(get_principal), db: Session = Depends(get_db)):
    try:
        require_admin(principal, "trigger sync")
    except Forbidden as e:
        return error_response(e, 403)

    try:
        logger.info("Triggering sync", extra={"request_id": request.state.request_id, "tenant_id": principal.tenant_id})
        result = run_sync(db, principal.tenant_id)
    except NoConnection as e:
        return error_response(e, 400)
    except Exception as e:
        db.rollback()
        logger.error(f"Sync exception: {e}", extra={"request_id": request.state.request_id, "tenant_id": principal.tenant_id})
        message = e.message if isinstance(e, BankLinkError) else (str(e) or "Sync failed")
        return JSONResponse(status_code=500, content={"error": message, "code": "SYNC_FAILED"})

    return {
        "success": True,
        "accounts_synced": result.accounts_synced,
        "transactions_synced": result.transactions_synced,
    }


def _process_webhook(db: Session, raw_body: bytes, signature: Optional[str]):
    try:
        authenticate(raw_body, signature, settings.BANK_WEBHOOK_SECRET)
    except SignatureError as e:
        logger.error(f"Rejected webhook: {e.message}")
        return JSONResponse(status_code=401, content={"error": e.message})

    try:
        event = parse_event(raw_body)
    except PayloadError as e:
        logger.error(f"Rejected webhook: {e.message}")
        return JSONResponse(status_code=400, content={"error": e.message})

    try:
        WebhookReconciler(db).handle(event)
    except SQLAlchemyError:
        # Acknowledge anyway; a 5xx would only make the provider redeliver into the same failure
        db.rollback()
        logger.exception("Webhook reconciliation failed", extra={"event_type": event.event})
    return {"received": True}


@router.post("/webhook")
async def receive_webhook(request: Request, db: Session = Depends(get_db)):
    raw_body = await request.body()
    signature = request.headers.get(settings.WEBHOOK_SIGNATURE_HEADER)
    return await run_in_threadpool(_process_webhook, db, raw_body, signature)


@router.get("/webhook")
def webhook_ack():
    return {"received": True, "status": "ok", "message": "bank webhook endpoint"}


@router.get("/status", response_model=ConnectionStatusOut)
def connection_status(principal: Principal = Depends(get_finance_principal), db: Session = Depends(get_db)):
    return ConnectionManager(db).status(principal.tenant_id)


@router.get("/accounts", response_model=List[AccountOut])
def list_accounts(principal: Principal = Depends(get_finance_principal), db: Session = Depends(get_db)):
    return db.query(Account).filter(
        Account.tenant_id == principal.tenant_id
    ).order_by(Account.currency, Account.name).all()


@router.get("/balances", response_model=Dict[str, Decimal])
def account_balances(principal: Principal = Depends(get_finance_principal), db: Session = Depends(get_db)):
    rows = db.query(Account.currency, func.sum(Account.balance)).filter(
        Account.tenant_id == principal.tenant_id,
        Account.state == "active",
    ).group_by(Account.currency).all()
    return {currency: total for currency, total in rows}


@router.get("/transactions", response_model=TransactionPage)
def list_transactions(
    account_id: Optional[int] = None,
    from_date: Optional[date] = None,
    to_date: Optional[date] = None,
    type: Optional[str] = None,
    reconciled: Optional[bool] = None,
    limit: int = Query(50, le=500),
    offset: int = 0,
    principal: Principal = Depends(get_finance_principal),
    db: Session = Depends(get_db),
):
    query = db.query(Transaction).filter(Transaction.tenant_id == principal.tenant_id)
    if account_id is not None:
        query = query.filter(Transaction.account_id == account_id)
    if from_date is not None:
        query = query.filter(Transaction.transaction_date >= from_date)
    if to_date is not None:
        query = query.filter(Transaction.transaction_date <= to_date)
    if type:
        query = query.filter(Transaction.type == type)
    if reconciled is not None:
        query = query.filter(Transaction.is_reconciled.is_(reconciled))

    total = query.count()
    transactions = query.order_by(
        Transaction.transaction_date.desc(), Transaction.id.desc()
    ).offset(offset).limit(limit).all()
    return {"transactions": transactions, "total": total}


@router.get("/sync-runs", response_model=List[SyncRunOut])
def list_sync_runs(
    limit: int = Query(10, le=100),
    principal: Principal = Depends(get_finance_principal),
    db: Session = Depends(get_db),
):
    return db.query(SyncRun).filter(
        SyncRun.tenant_id == principal.tenant_id
    ).order_by(SyncRun.id.desc()).limit(limit).all()


@router.get("/payments", response_model=List[PaymentOut])
def list_payments(
    status: Optional[str] = None,
    limit: int = Query(20, le=100),
    offset: int = 0,
    principal: Principal = Depends(get_finance_principal),
    db: Session = Depends(get_db),
):
    query = db.query(Payment).filter(Payment.tenant_id == principal.tenant_id)
    if status:
        query = query.filter(Payment.status == status)
    return query.order_by(Payment.id.desc()).offset(offset).limit(limit).all()


@router.post("/payments")
def create_payment(req: PaymentRequest, principal: Principal = Depends(get_principal), db: Session = Depends(get_db)):
    service = PaymentService(db)
    try:
        payment = service.create_payment(
            principal,
            source_account_id=req.sourceAccountId,
            recipient_name=req.recipient.name,
            recipient_iban=req.recipient.iban,
            recipient_bic=req.recipient.bic,
            amount=req.amount,
            currency=req.currency,
            reference=req.reference,
            document_id=req.documentId,
        )
    except Forbidden as e:
        return error_response(e, 403)
    except (NoConnection, NotFound, ValidationFailed, PaymentFailed) as e:
        return error_response(e, 400)
    except ProviderError as e:
        logger.error(f"Payment token refresh failed: {e}", extra={"tenant_id": principal.tenant_id})
        return JSONResponse(status_code=502, content={"error": str(e), "code": "PROVIDER_ERROR"})
    except BankLinkError as e:
        return error_response(e, 400)

    return {"success": True, "payment": PaymentOut.model_validate(payment).model_dump(mode="json")}


def _get_tenant_transaction(db: Session, principal: Principal, transaction_id: int) -> Transaction:
    if principal.role not in FINANCE_ROLES:
        raise HTTPException(status_code=403, detail="Only superadmins and accountants can reconcile")
    txn = db.query(Transaction).filter(
        Transaction.id == transaction_id,
        Transaction.tenant_id == principal.tenant_id,
    ).first()
    if not txn:
        raise HTTPException(status_code=404, detail="Transaction not found")
    return txn


@router.post("/transactions/{transaction_id}/reconcile", response_model=TransactionOut)
def reconcile_transaction(
    transaction_id: int,
    req: Optional[ReconcileRequest] = None,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
):
    txn = _get_tenant_transaction(db, principal, transaction_id)
    document_id = req.documentId if req else None
    if document_id is not None:
        document = db.query(Document).filter(
            Document.id == document_id,
            Document.tenant_id == principal.tenant_id,
        ).first()
        if not document:
            raise HTTPException(status_code=404, detail="Document not found")
    txn.document_id = document_id
    txn.is_reconciled = True
    txn.reconciled_at = utcnow()
    db.commit()
    db.refresh(txn)
    return txn


@router.post("/transactions/{transaction_id}/unreconcile", response_model=TransactionOut)
def unreconcile_transaction(
    transaction_id: int,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
):
    txn = _get_tenant_transaction(db, principal, transaction_id)
    txn.document_id = None
    txn.is_reconciled = False
    txn.reconciled_at = None
    db.commit()
    db.refresh(txn)
    return txn


app.include_router(router)
