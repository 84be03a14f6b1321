"""
Operator tool: refund a completed unlock or credit purchase.
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from fulfillme import marketplace
from fulfillme.dependencies import get_db_client
from fulfillme.errors import MarketplaceError

logger = logging.getLogger(__name__)


def main() -> int:
    parser = argparse.ArgumentParser(description="Refund a ledger transaction")
    parser.add_argument("transaction_id", help="Transaction to refund")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO)
    db = get_db_client()
    try:
        refund = marketplace.refund_transaction(db, args.transaction_id)
    except MarketplaceError as exc:
        logger.error("Refund failed: %s", exc.message)
        return 1
    print(refund.transaction_id)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
