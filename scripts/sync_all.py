"""Scheduled job: sync every active bank connection. Run from cron."""
import sys
import logging

from banklink.db import Base, SessionLocal, engine
from banklink.logging_config import configure_logging
from banklink.models import SYNC_FAILED
from banklink.sync import sync_all_connections

logger = logging.getLogger("banklink.scheduled_sync")


def main() -> int:
    configure_logging()
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        results = sync_all_connections(db)
    finally:
        db.close()

    failed = [r for r in results if r.status == SYNC_FAILED]
    logger.info(f"Scheduled sync finished: {len(results)} tenants, {len(failed)} failed")
    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(main())
