"""
만료 포인트 소멸 스크립트
cron 등 외부 타이머에서 주기적으로 실행 (예: 매일 자정)

    python scripts/sweep_expired.py [--limit N]
"""

import sys
import os

sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import argparse
import logging

from pointledger.config import settings
from pointledger.database.session import get_db_context
from pointledger.logging_config import setup_logging
from pointledger.services.expiration_service import ExpirationService

logger = logging.getLogger("pointledger.scripts.sweep_expired")


def run_sweep(limit=None) -> int:
    """스윕 1회 실행. 실패한 블록이 있으면 1 반환"""
    with get_db_context() as db:
        report = ExpirationService(db, settings=settings).sweep_expired(limit=limit)

    print(report.model_dump_json(indent=2))
    if report.failed:
        logger.warning(f"{report.failed} blocks failed to expire; they will be retried on the next run")
        return 1
    return 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Expire point blocks past their expiry")
    parser.add_argument("--limit", type=int, default=None, help="max blocks per pass")
    args = parser.parse_args()

    setup_logging(log_level=settings.LOG_LEVEL, log_format=settings.LOG_FORMAT)
    sys.exit(run_sweep(limit=args.limit))
