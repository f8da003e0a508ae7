"""Repair per-size inventory for every product.

Products that declare sizes but are missing a count for some of them get
the unassigned stock spread over the missing sizes (remainder to the first
sizes); product totals are re-derived from the per-size counts.
"""
import logging
import sys

from ..crud import ensure_size_inventory
from ..database import SessionLocal, engine
from ..models import Base

logger = logging.getLogger(__name__)


def main() -> int:
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        repaired = ensure_size_inventory(db)
    except Exception:
        db.rollback()
        logger.exception("Size inventory repair failed")
        return 1
    finally:
        db.close()

    if repaired:
        logger.info("Repaired size inventory for %d product(s): %s", len(repaired), repaired)
        logger.info("Run store-cache-clear so running services drop their cached stock.")
    else:
        logger.info("All products already have complete size inventory")
    return 0


if __name__ == "__main__":
    sys.exit(main())
