import time
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from banklink.connections import ConnectionManager
from banklink.db import as_utc, utcnow
from banklink.errors import BankLinkError
from banklink.models import (
    CONNECTION_ACTIVE,
    SYNC_COMPLETED,
    SYNC_FAILED,
    SYNC_SYNCING,
    TRANSACTION_TERMINAL,
    Account,
    Connection,
    SyncRun,
    Transaction,
)
from banklink.provider_client import ProviderClient, RateLimitedError, parse_account, parse_transaction
from banklink.settings import settings

logger = logging.getLogger(__name__)


@dataclass
class SyncResult:
    tenant_id: str
    sync_run_id: Optional[int] = None
    status: str = SYNC_SYNCING
    accounts_fetched: int = 0
    accounts_synced: int = 0
    transactions_fetched: int = 0
    transactions_synced: int = 0
    transactions_skipped: int = 0
    rate_limit_retries: int = 0
    error: Optional[str] = None


def _with_rate_limit_retry(call: Callable, result: SyncResult):
    retries = 0
    while True:
        try:
            return call()
        except RateLimitedError as e:
            retries += 1
            if retries > settings.RATE_LIMIT_MAX_RETRIES:
                raise
            result.rate_limit_retries += 1
            # Exponential backoff: retry_after * (2 ^ (retry-1))
            sleep_time = e.retry_after * (2 ** (retries - 1))
            logger.warning(f"Rate limited. Sleeping {sleep_time}s", extra={"tenant_id": result.tenant_id})
            time.sleep(sleep_time)


def _upsert(db: Session, model, natural_key: dict, values: dict, on_update: Callable = None) -> bool:
    """
    Insert-or-update one mirrored row keyed by its natural key. Each row
    commits on its own so a failing row does not take the rest of the run
    with it. Returns False if the row could not be written.
    """
    for attempt in range(2):
        try:
            row = db.query(model).filter_by(**natural_key).first()
            if row is None:
                db.add(model(**natural_key, **values))
            else:
                row_values = on_update(row, values) if on_update else values
                for key, value in row_values.items():
                    setattr(row, key, value)
            db.commit()
            return True
        except IntegrityError:
            db.rollback()
            # Lost an insert race with an overlapping run; the retry takes the update path
            if attempt == 0:
                continue
            logger.warning(f"Upsert of {model.__name__} {natural_key} kept conflicting")
            return False
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Upsert of {model.__name__} {natural_key} failed: {e}")
            return False
    return False


def _keep_terminal_state(row: Transaction, values: dict) -> dict:
    if row.state in TRANSACTION_TERMINAL and values.get("state") not in TRANSACTION_TERMINAL:
        logger.info(
            f"Keeping terminal state {row.state} for transaction {row.external_transaction_id}",
            extra={"tenant_id": row.tenant_id},
        )
        values = dict(values)
        values.pop("state", None)
    return values


def _finish(db: Session, run: SyncRun, connection: Connection, status: str, error: Optional[str] = None):
    now = utcnow()
    run.status = status
    run.completed_at = now
    run.duration_ms = int((now - as_utc(run.started_at)).total_seconds() * 1000)
    run.error_message = error
    connection.last_sync_at = now
    connection.last_sync_status = status
    connection.last_sync_error = error
    db.commit()


def run_sync(db: Session, tenant_id: str, manager: Optional[ConnectionManager] = None,
             client: Optional[ProviderClient] = None) -> SyncResult:
    """
    Mirrors the tenant's accounts and a trailing window of transactions.

    Raises NoConnection before anything is recorded if the tenant is not
    connected. Once the SyncRun exists, any failure marks it failed and is
    re-raised; rows already upserted stay committed.
    """
    client = client or ProviderClient()
    manager = manager or ConnectionManager(db, client=client)
    result = SyncResult(tenant_id=tenant_id)

    access_token = manager.get_valid_token(tenant_id)
    connection = db.query(Connection).filter(
        Connection.tenant_id == tenant_id,
        Connection.status == CONNECTION_ACTIVE,
    ).one()

    run = SyncRun(tenant_id=tenant_id, connection_id=connection.id, sync_type="full", status=SYNC_SYNCING)
    db.add(run)
    db.commit()
    result.sync_run_id = run.id
    log_extra = {"tenant_id": tenant_id, "sync_run_id": run.id}
    logger.info("Sync started", extra=log_extra)

    try:
        # Accounts
        raw_accounts = _with_rate_limit_retry(lambda: client.list_accounts(access_token), result)
        result.accounts_fetched = len(raw_accounts)
        now = utcnow()
        for raw in raw_accounts:
            values = parse_account(raw)
            key = {"tenant_id": tenant_id, "external_account_id": values.pop("external_account_id")}
            values.update(connection_id=connection.id, balance_updated_at=now)
            if _upsert(db, Account, key, values):
                result.accounts_synced += 1

        # Local rows, not just this page, so previously mirrored accounts resolve too
        account_map = {
            external_id: local_id
            for local_id, external_id in db.query(Account.id, Account.external_account_id).filter(
                Account.tenant_id == tenant_id
            )
        }

        # Transactions
        since = utcnow() - timedelta(days=settings.SYNC_WINDOW_DAYS)
        raw_transactions = _with_rate_limit_retry(
            lambda: client.list_transactions(access_token, since, settings.SYNC_TRANSACTION_COUNT), result
        )
        result.transactions_fetched = len(raw_transactions)
        for raw in raw_transactions:
            values = parse_transaction(raw)
            external_account_id = values.pop("external_account_id")
            account_id = account_map.get(external_account_id)
            if account_id is None:
                result.transactions_skipped += 1
                logger.info(
                    f"Skipping transaction {values['external_transaction_id']}: "
                    f"account {external_account_id} not mirrored",
                    extra=log_extra,
                )
                continue
            key = {"tenant_id": tenant_id, "external_transaction_id": values.pop("external_transaction_id")}
            values["account_id"] = account_id
            if _upsert(db, Transaction, key, values, on_update=_keep_terminal_state):
                result.transactions_synced += 1

    except Exception as e:
        db.rollback()
        result.status = SYNC_FAILED
        result.error = str(e) or e.__class__.__name__
        logger.error(f"Sync failed: {result.error}", extra=log_extra)
        run.records_fetched = result.accounts_fetched + result.transactions_fetched
        run.records_written = result.accounts_synced + result.transactions_synced
        _finish(db, run, connection, SYNC_FAILED, result.error)
        raise

    run.records_fetched = result.accounts_fetched + result.transactions_fetched
    run.records_written = result.accounts_synced + result.transactions_synced
    _finish(db, run, connection, SYNC_COMPLETED)
    result.status = SYNC_COMPLETED
    logger.info(
        f"Sync completed: {result.accounts_synced} accounts, {result.transactions_synced} transactions",
        extra=log_extra,
    )
    return result


def _has_running_sync(db: Session, tenant_id: str) -> bool:
    cutoff = utcnow() - timedelta(minutes=settings.SYNC_STALE_AFTER_MINUTES)
    return db.query(SyncRun).filter(
        SyncRun.tenant_id == tenant_id,
        SyncRun.status == SYNC_SYNCING,
        SyncRun.started_at > cutoff,
    ).first() is not None


def sync_all_connections(db: Session, client: Optional[ProviderClient] = None) -> list:
    """
    Scheduled entry point: syncs every active connection in turn. A tenant
    whose sync fails is reported in its result; the others still run.
    """
    client = client or ProviderClient()
    tenant_ids = [
        tenant_id for (tenant_id,) in db.query(Connection.tenant_id).filter(
            Connection.status == CONNECTION_ACTIVE
        )
    ]

    results = []
    for tenant_id in tenant_ids:
        if _has_running_sync(db, tenant_id):
            logger.info("Skipping scheduled sync, one is already running", extra={"tenant_id": tenant_id})
            results.append(SyncResult(tenant_id=tenant_id, status="skipped"))
            continue
        try:
            results.append(run_sync(db, tenant_id, client=client))
        except BankLinkError as e:
            results.append(SyncResult(tenant_id=tenant_id, status=SYNC_FAILED, error=e.message))
        except Exception as e:
            # run_sync already recorded the failure on the SyncRun
            results.append(SyncResult(tenant_id=tenant_id, status=SYNC_FAILED, error=str(e)))
    return results
