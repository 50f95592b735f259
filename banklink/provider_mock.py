"""In-process stand-in for the banking platform, mounted at /provider in dev.

Serves the small slice of the open-banking API the integration consumes:
consent redirect, token endpoint, accounts, transactions, counterparties and
payments. Data is deterministic so demos and tests can assert on it.
"""
import uuid
import datetime
from typing import Optional

from fastapi import APIRouter, Form, Header, HTTPException, Query, Request, Response

router = APIRouter()

MOCK_CLIENT_ID = "demo-client"
ACCESS_TOKEN_TTL = 2400

# Paths that answer the next request with a single 429
ratelimit_memory = set()


def reset_ratelimits():
    ratelimit_memory.clear()


def arm_rate_limit(path: str):
    ratelimit_memory.add(path)


def _check_rate_limit(path: str, response: Response) -> bool:
    if path in ratelimit_memory:
        ratelimit_memory.discard(path)
        response.headers["Retry-After"] = "1"
        response.status_code = 429
        return True
    return False


def _require_bearer(authorization: Optional[str]):
    if not authorization or not authorization.startswith("Bearer at_"):
        raise HTTPException(status_code=401, detail="invalid or expired access token")


MOCK_ACCOUNTS = [
    {"id": "acc_main_eur", "name": "Main EUR", "balance": 12500.50, "currency": "EUR", "state": "active", "public": False},
    {"id": "acc_ops_gbp", "name": "Operations GBP", "balance": 830.00, "currency": "GBP", "state": "active", "public": False},
]


def generate_mock_txns():
    base_time = datetime.datetime.now(datetime.timezone.utc) - datetime.timedelta(days=3)
    items = []
    for idx in range(5):
        account = MOCK_ACCOUNTS[idx % 2]
        created = base_time + datetime.timedelta(hours=idx)
        items.append({
            "id": f"txn_{idx}",
            "type": "transfer" if idx % 2 else "card_payment",
            "state": "completed",
            "created_at": created.isoformat(),
            "completed_at": (created + datetime.timedelta(minutes=5)).isoformat(),
            "reference": f"Mock ref {idx}",
            "legs": [{
                "leg_id": f"leg_{idx}",
                "account_id": account["id"],
                "amount": -(10 + idx * 2.5),
                "currency": account["currency"],
                "description": f"Mock transaction {idx}",
                "counterparty": {"name": f"Supplier {idx}"},
            }],
            "merchant": {"name": f"Merchant {idx}"} if idx % 2 == 0 else None,
        })
    return items


@router.get("/authorize")
def authorize(client_id: str, redirect_uri: str, state: str, response_type: str = "code",
              scope: Optional[str] = None):
    auth_code = f"mockcode-{state}"
    target_url = f"{redirect_uri}?code={auth_code}&state={state}"
    return {"redirect_to": target_url}


@router.post("/auth/token")
def token(
    grant_type: str = Form(...),
    client_id: str = Form(...),
    client_assertion: str = Form(...),
    client_assertion_type: str = Form(...),
    code: Optional[str] = Form(None),
    refresh_token: Optional[str] = Form(None),
):
    if client_id != MOCK_CLIENT_ID or not client_assertion:
        raise HTTPException(status_code=401, detail="Invalid client credentials")

    if grant_type == "authorization_code":
        if not code or not code.startswith("mockcode-"):
            raise HTTPException(status_code=400, detail="invalid_grant")
    elif grant_type == "refresh_token":
        if not refresh_token or not refresh_token.startswith("rt_"):
            raise HTTPException(status_code=400, detail="invalid_grant")
    else:
        raise HTTPException(status_code=400, detail="unsupported_grant_type")

    return {
        "access_token": f"at_{uuid.uuid4()}",
        "refresh_token": f"rt_{uuid.uuid4()}",
        "token_type": "bearer",
        "expires_in": ACCESS_TOKEN_TTL,
    }


@router.get("/accounts")
def accounts(response: Response, authorization: Optional[str] = Header(None)):
    _require_bearer(authorization)
    if _check_rate_limit("/accounts", response):
        return {"detail": "rate limited"}
    return MOCK_ACCOUNTS


@router.get("/transactions")
def transactions(
    response: Response,
    authorization: Optional[str] = Header(None),
    from_: Optional[str] = Query(None, alias="from"),
    count: int = Query(100),
):
    _require_bearer(authorization)
    if _check_rate_limit("/transactions", response):
        return {"detail": "rate limited"}
    return generate_mock_txns()[:count]


@router.post("/counterparty")
async def counterparty(request: Request, authorization: Optional[str] = Header(None)):
    _require_bearer(authorization)
    body = await request.json()
    if not body.get("iban"):
        raise HTTPException(status_code=422, detail="iban required")
    return {"id": f"cp_{uuid.uuid4().hex[:12]}", "name": body.get("company_name")}


@router.post("/pay")
async def pay(request: Request, authorization: Optional[str] = Header(None)):
    _require_bearer(authorization)
    body = await request.json()
    if body.get("amount", 0) <= 0:
        raise HTTPException(status_code=422, detail="amount must be positive")
    return {
        "id": f"pay_{uuid.uuid4().hex[:12]}",
        "state": "pending",
        "created_at": datetime.datetime.now(datetime.timezone.utc).isoformat(),
    }
