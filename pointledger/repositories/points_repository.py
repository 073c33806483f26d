"""
포인트 리포지토리 - 원장 저장소 접근 계층

이 파일은 원장 엔진이 사용하는 조회/기록 패턴을 모두 담당합니다:
1. 사용자별 사용 가능 블록 조회 (만료 임박 순)
2. 사용자별 사용 가능 잔량 합계
3. 만료되었지만 잔량이 남은 블록 조회 (스윕용)
4. 사용자별 잔액 캐시 조회/잠금

핵심 특징:
- 커밋하지 않습니다. 트랜잭션 경계는 PointService가 결정합니다
- 잠금 조회는 SELECT ... FOR UPDATE 와 populate_existing 을 함께 사용하여
  항상 최신 값을 읽습니다 (FOR UPDATE 미지원 DB에서는 version 검사가 보호)
"""

from datetime import datetime
from typing import Collection, List, Optional, Sequence, Tuple

from sqlalchemy import and_, desc, func
from sqlalchemy.orm import Session, selectinload

from pointledger.models.points import (
    PointBlock,
    PointForfeiture,
    PointUsage,
    PointUsageDetail,
    RemainingPoint,
)
from pointledger.repositories.base import BaseRepository
from pointledger.schemas.points import PointBlockSchema, PointUsageSchema


class PointsRepository(BaseRepository[PointBlock, PointBlockSchema]):
    """포인트 리포지토리 - 블록/사용/잔액 관련 데이터베이스 작업 처리"""

    def __init__(self, db: Session):
        super().__init__(PointBlock, PointBlockSchema, db)

    # ------------------------------------------------------------------
    # 잔액 캐시 (remaining_points)
    # ------------------------------------------------------------------

    def get_balance(self, user_id: int) -> Optional[int]:
        """잔액 캐시 조회 (O(1)). 레코드가 없으면 None"""
        return (
            self.db.query(RemainingPoint.total_remaining_points)
            .filter(RemainingPoint.user_id == user_id)
            .scalar()
        )

    def lock_balance(self, user_id: int) -> Optional[RemainingPoint]:
        """잔액 레코드를 잠그고 최신 값으로 읽음 - 사용자 단위 직렬화 경계"""
        return (
            self.db.query(RemainingPoint)
            .filter(RemainingPoint.user_id == user_id)
            .with_for_update()
            .populate_existing()
            .first()
        )

    def add_balance(self, user_id: int, now: datetime) -> RemainingPoint:
        """잔액 레코드 생성 (최초 적립/사용/스윕 시 지연 생성)

        동시에 생성하면 PK 충돌(IntegrityError)이 flush 시점에 발생합니다.
        """
        balance = RemainingPoint(
            user_id=user_id, total_remaining_points=0, last_updated_at=now
        )
        self.db.add(balance)
        self.db.flush()
        return balance

    # ------------------------------------------------------------------
    # 적립 블록 (point_blocks)
    # ------------------------------------------------------------------

    def add_block(
        self, user_id: int, amount: int, earned_at: datetime, expires_at: datetime
    ) -> PointBlock:
        block = PointBlock(
            user_id=user_id,
            amount=amount,
            remaining_amount=amount,
            earned_at=earned_at,
            expires_at=expires_at,
        )
        self.db.add(block)
        self.db.flush()
        return block

    def get_live_blocks(
        self, user_id: int, now: datetime, for_update: bool = False
    ) -> List[PointBlock]:
        """사용 가능 블록 조회 - 만료 시각 오름차순 (만료 임박 순)

        만료 시각이 now 보다 엄격히 이후이고 잔량이 남은 블록만 반환합니다.
        """
        query = (
            self.db.query(PointBlock)
            .filter(
                and_(
                    PointBlock.user_id == user_id,
                    PointBlock.expires_at > now,
                    PointBlock.remaining_amount > 0,
                )
            )
            .order_by(PointBlock.expires_at.asc(), PointBlock.id.asc())
        )
        if for_update:
            query = query.with_for_update().populate_existing()
        return query.all()

    def sum_live_remaining(self, user_id: int, now: datetime) -> int:
        """사용 가능 잔량 합계"""
        result = (
            self.db.query(func.sum(PointBlock.remaining_amount))
            .filter(
                and_(
                    PointBlock.user_id == user_id,
                    PointBlock.expires_at > now,
                )
            )
            .scalar()
        )
        return int(result or 0)

    def sum_expired_unswept(self, user_id: int, now: datetime) -> int:
        """만료되었지만 아직 스윕되지 않은 잔량 합계"""
        result = (
            self.db.query(func.sum(PointBlock.remaining_amount))
            .filter(
                and_(
                    PointBlock.user_id == user_id,
                    PointBlock.expires_at <= now,
                    PointBlock.remaining_amount > 0,
                )
            )
            .scalar()
        )
        return int(result or 0)

    def find_expired_block_ids(
        self,
        now: datetime,
        limit: Optional[int] = None,
        exclude_ids: Optional[Collection[int]] = None,
    ) -> List[Tuple[int, int]]:
        """만료 시각이 now 이하이고 잔량이 남은 블록의 (block_id, user_id) 목록

        exclude_ids: 이번 패스에서 이미 시도했지만 소멸되지 않은 블록
        """
        query = (
            self.db.query(PointBlock.id, PointBlock.user_id)
            .filter(
                and_(
                    PointBlock.expires_at <= now,
                    PointBlock.remaining_amount > 0,
                )
            )
            .order_by(PointBlock.expires_at.asc(), PointBlock.id.asc())
        )
        if exclude_ids:
            query = query.filter(PointBlock.id.notin_(list(exclude_ids)))
        if limit:
            query = query.limit(limit)
        return [(row.id, row.user_id) for row in query.all()]

    def lock_block(self, block_id: int) -> Optional[PointBlock]:
        return (
            self.db.query(PointBlock)
            .filter(PointBlock.id == block_id)
            .with_for_update()
            .populate_existing()
            .first()
        )

    # ------------------------------------------------------------------
    # 사용 내역 (point_usages, point_usage_details)
    # ------------------------------------------------------------------

    def add_usage(
        self,
        user_id: int,
        amount: int,
        used_at: datetime,
        draws: Sequence[Tuple[PointBlock, int]],
    ) -> PointUsage:
        """사용 1건과 블록별 상세 내역을 차감 순서대로 기록"""
        usage = PointUsage(user_id=user_id, amount=amount, used_at=used_at)
        for block, drawn in draws:
            usage.details.append(PointUsageDetail(block=block, amount=drawn))
        self.db.add(usage)
        self.db.flush()
        return usage

    def get_usages(
        self, user_id: int, limit: int = 50, offset: int = 0
    ) -> Tuple[List[PointUsageSchema], int]:
        """사용 내역 조회 (최신순, 페이징)"""
        total_count = (
            self.db.query(PointUsage).filter(PointUsage.user_id == user_id).count()
        )
        usages = (
            self.db.query(PointUsage)
            .options(selectinload(PointUsage.details))
            .filter(PointUsage.user_id == user_id)
            .order_by(desc(PointUsage.used_at), desc(PointUsage.id))
            .limit(limit)
            .offset(offset)
            .all()
        )
        return [PointUsageSchema.model_validate(u) for u in usages], total_count

    # ------------------------------------------------------------------
    # 소멸 기록 (point_forfeitures)
    # ------------------------------------------------------------------

    def add_forfeiture(
        self, user_id: int, block_id: int, amount: int, forfeited_at: datetime
    ) -> PointForfeiture:
        forfeiture = PointForfeiture(
            user_id=user_id,
            block_id=block_id,
            amount=amount,
            forfeited_at=forfeited_at,
        )
        self.db.add(forfeiture)
        self.db.flush()
        return forfeiture
