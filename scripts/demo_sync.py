import sys
from urllib.parse import parse_qs, urlparse

import httpx

from banklink.db import Base, SessionLocal, engine
from banklink.models import ROLE_SUPERADMIN, Membership

BASE_URL = "http://127.0.0.1:8000"
USER_ID = "demo-admin"
TENANT_ID = "demo-tenant"


def ensure_membership():
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        if not db.query(Membership).filter_by(user_id=USER_ID).first():
            db.add(Membership(user_id=USER_ID, tenant_id=TENANT_ID, role=ROLE_SUPERADMIN))
            db.commit()
    finally:
        db.close()


def run_demo():
    ensure_membership()
    http = httpx.Client(base_url=BASE_URL, headers={"X-User-Id": USER_ID}, timeout=30.0)

    print("--- 1. AUTHORIZE ---")
    try:
        resp = http.get("/integrations/bank/authorize")
    except httpx.ConnectError:
        print("Error: Could not connect to server. Make sure it's running (uvicorn banklink.main:app).")
        sys.exit(1)
    if resp.status_code != 302:
        print(f"Authorize failed ({resp.status_code}): {resp.text}")
        sys.exit(1)
    consent_url = resp.headers["location"]
    print(f"Consent URL: {consent_url}")

    # The mock provider answers the consent page with JSON instead of HTML
    print("\n--- 2. CONSENT (mock user click) ---")
    resp = httpx.get(consent_url)
    resp.raise_for_status()
    redirect_to = resp.json()["redirect_to"]
    print(f"Provider redirected to: {redirect_to}")

    print("\n--- 3. CALLBACK ---")
    params = parse_qs(urlparse(redirect_to).query)
    resp = http.get("/integrations/bank/callback", params={k: v[0] for k, v in params.items()})
    print(f"Callback redirected to: {resp.headers.get('location')}")

    print("\n--- 4. SYNC (first run) ---")
    resp = http.post("/integrations/bank/sync")
    print("Sync:", resp.json())

    print("\n--- 5. SYNC (second run, idempotent) ---")
    resp = http.post("/integrations/bank/sync")
    print("Sync:", resp.json())

    print("\n--- 6. STATUS ---")
    print(http.get("/integrations/bank/status").json())

    print("\n--- 7. TRANSACTIONS ---")
    page = http.get("/integrations/bank/transactions").json()
    txns = page["transactions"]
    print(f"Found {page['total']} transactions.")
    if txns:
        print("Sample:", txns[0])


if __name__ == "__main__":
    run_demo()
