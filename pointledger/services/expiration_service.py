"""
만료 스윕 서비스

만료 시각이 지났지만 잔량이 남은 블록을 찾아 소멸 처리합니다.
외부 타이머(cron, 스케줄러)가 주기적으로 호출하며, 블록 하나를 하나의 트랜잭션으로
처리하므로 중간에 중단되어도 다시 실행하면 남은 블록부터 이어서 처리합니다.
"""

import logging
from datetime import datetime
from typing import List, Optional, Set, Tuple

from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session

from pointledger.config import Settings, settings as default_settings
from pointledger.core.exceptions import BaseAPIException, StoreUnavailableError
from pointledger.repositories.points_repository import PointsRepository
from pointledger.schemas.points import SweepFailure, SweepReport
from pointledger.services.point_service import PointService
from pointledger.utils.timezone_utils import ensure_utc, utc_now

logger = logging.getLogger(__name__)


class ExpirationService:
    """만료 포인트 소멸 처리 서비스"""

    def __init__(
        self,
        db: Session,
        settings: Optional[Settings] = None,
        point_service: Optional[PointService] = None,
    ):
        self.db = db
        self.settings = settings or default_settings
        self.points_repo = PointsRepository(db)
        self.point_service = point_service or PointService(db, settings=self.settings)

    def sweep_expired(
        self, now: Optional[datetime] = None, limit: Optional[int] = None
    ) -> SweepReport:
        """만료 블록 일괄 소멸

        Args:
            now: 기준 시각 (기본: 현재). expires_at <= now 인 블록이 대상
            limit: 이번 패스에서 처리할 최대 블록 수 (기본: 제한 없음)

        Returns:
            SweepReport: 처리/실패/건너뜀 건수와 소멸 포인트 합계

        대상 블록은 SWEEP_BATCH_SIZE 단위로 나누어 조회하며, limit 이 없으면 대상이
        남지 않을 때까지 반복합니다.
        블록 단위 실패는 기록만 하고 다음 블록으로 넘어갑니다.
        실패한 블록은 잔량이 그대로 남아 있으므로 다음 패스에서 다시 대상이 됩니다.
        """
        cutoff = ensure_utc(now) or utc_now()
        report = SweepReport(started_at=utc_now())
        # 이번 패스에서 시도했지만 소멸되지 않은 블록 (재조회 제외)
        unresolved_ids: Set[int] = set()
        remaining = limit

        logger.info(f"Expiration sweep started (cutoff {cutoff.isoformat()}, limit {limit})")

        while remaining is None or remaining > 0:
            batch_size = self.settings.SWEEP_BATCH_SIZE
            if remaining is not None:
                batch_size = min(batch_size, remaining)

            candidates = self._find_candidates(cutoff, batch_size, unresolved_ids)
            if not candidates:
                break
            if remaining is not None:
                remaining -= len(candidates)

            for block_id, user_id in candidates:
                if not self._expire_block(block_id, user_id, cutoff, report):
                    unresolved_ids.add(block_id)

        report.finished_at = utc_now()
        logger.info(
            f"Expiration sweep finished: processed={report.processed}, failed={report.failed}, "
            f"skipped={report.skipped}, forfeited_points={report.forfeited_points}"
        )
        return report

    def _find_candidates(
        self, cutoff: datetime, batch_size: int, exclude_ids: Set[int]
    ) -> List[Tuple[int, int]]:
        try:
            return self.points_repo.find_expired_block_ids(
                cutoff, batch_size, exclude_ids=exclude_ids
            )
        except DBAPIError as e:
            logger.error(f"Failed to query expired point blocks: {str(e)}")
            raise StoreUnavailableError(
                "Failed to query expired point blocks", details={"error": str(e)}
            ) from e
        finally:
            if self.db.in_transaction():
                self.db.rollback()

    def _expire_block(
        self, block_id: int, user_id: int, cutoff: datetime, report: SweepReport
    ) -> bool:
        """블록 하나 소멸 처리 후 report 갱신. 소멸되었으면 True"""
        try:
            forfeited = self.point_service.forfeit_block(
                block_id=block_id, user_id=user_id, now=cutoff
            )
        except BaseAPIException as e:
            self._record_failure(report, block_id, user_id, e.error_code, e.message)
            logger.error(
                f"Failed to expire block {block_id} for user {user_id}: {e.error_code} {e.message}"
            )
            return False
        except Exception as e:
            if self.db.in_transaction():
                self.db.rollback()
            self._record_failure(report, block_id, user_id, "INTERNAL_001", str(e))
            logger.exception(
                f"Unexpected error while expiring block {block_id} for user {user_id}"
            )
            return False

        if not forfeited:
            report.skipped += 1
            return False

        report.processed += 1
        report.forfeited_points += forfeited
        return True

    @staticmethod
    def _record_failure(
        report: SweepReport, block_id: int, user_id: int, error_code: str, message: str
    ) -> None:
        report.failed += 1
        report.failures.append(
            SweepFailure(
                block_id=block_id,
                user_id=user_id,
                error_code=error_code,
                message=message,
            )
        )
