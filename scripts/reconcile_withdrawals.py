"""
결과 불명(PROCESSING) 출금 재확인 배치

크론/스케줄러에서 주기적으로 실행합니다.
    python scripts/reconcile_withdrawals.py --limit 50
"""

import argparse
import logging
import os
import sys

sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from marksapi.config import settings
from marksapi.database.connection import dispose_engine, init_engine
from marksapi.database.session import get_db_context
from marksapi.logging_config import setup_logging
from marksapi.providers.settlement.treasury import TreasuryGateway
from marksapi.services.withdrawal_service import WithdrawalService
from marksapi.utils.conversion import MarksPolicy

logger = logging.getLogger("marksapi.scripts.reconcile")


def run(limit: int) -> int:
    init_engine()
    gateway = TreasuryGateway()
    try:
        with get_db_context() as db:
            service = WithdrawalService(
                db, gateway, policy=MarksPolicy.from_settings(settings)
            )
            result = service.reconcile_stale_withdrawals(limit=limit)
    finally:
        gateway.close()
        dispose_engine()

    logger.info(
        f"checked={result.checked} completed={result.completed} "
        f"failed={result.failed} unchanged={result.unchanged}"
    )
    return result.checked


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Reconcile stale withdrawals")
    parser.add_argument("--limit", type=int, default=settings.RECONCILE_BATCH_SIZE)
    args = parser.parse_args()

    setup_logging(settings.LOG_LEVEL)
    run(args.limit)
