import argparse
import logging

from app.core.config import settings
from app.core.logging import configure_logging
from app.db.session import SessionLocal
from app.services.billing import reconcile_linked_users
from app.services.billing_provider import get_provider_adapter

logger = logging.getLogger("reconcile_billing")


def main():
    parser = argparse.ArgumentParser(description="Re-sync invoices, balance credits and premium flags for linked users.")
    parser.add_argument("--limit", type=int, default=500)
    args = parser.parse_args()

    configure_logging(settings.LOG_LEVEL, json_output=settings.LOG_JSON)
    provider = get_provider_adapter()
    db = SessionLocal()
    try:
        result = reconcile_linked_users(db, provider, limit=args.limit)
        db.commit()
        logger.info(
            "ok: billing reconciliation finished "
            f"(processed={result['processed']}, updated={result['updated']}, skipped={result['skipped']}, errors={result['errors']})"
        )
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


if __name__ == "__main__":
    main()
