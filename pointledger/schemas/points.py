from pydantic import BaseModel, Field
from typing import List, Optional
from datetime import datetime


class PointBlockSchema(BaseModel):
    """적립 블록"""

    id: int = Field(..., description="블록 ID")
    user_id: int = Field(..., description="사용자 ID")
    amount: int = Field(..., description="최초 적립량")
    remaining_amount: int = Field(..., description="남은 수량")
    earned_at: datetime = Field(..., description="적립 시각")
    expires_at: datetime = Field(..., description="만료 시각")

    class Config:
        from_attributes = True


class PointUsageDetailSchema(BaseModel):
    """블록별 차감 내역"""

    id: int = Field(..., description="상세 내역 ID")
    block_id: int = Field(..., description="차감된 블록 ID")
    amount: int = Field(..., description="차감량")

    class Config:
        from_attributes = True


class PointUsageSchema(BaseModel):
    """포인트 사용 1건"""

    id: int = Field(..., description="사용 ID")
    user_id: int = Field(..., description="사용자 ID")
    amount: int = Field(..., description="총 사용량")
    used_at: datetime = Field(..., description="사용 시각")
    details: List[PointUsageDetailSchema] = Field(
        default_factory=list, description="블록별 차감 내역 (차감 순서)"
    )

    class Config:
        from_attributes = True


class PointsBalanceResponse(BaseModel):
    """포인트 잔액 응답"""

    user_id: int = Field(..., description="사용자 ID")
    balance: int = Field(..., description="현재 사용 가능 포인트")


class PointsCreditRequest(BaseModel):
    """포인트 적립 요청"""

    amount: int = Field(..., gt=0, description="적립 포인트")
    expires_at: datetime = Field(..., description="만료 시각")
    timeout: Optional[float] = Field(None, gt=0, description="작업 제한 시간 (초)")


class PointsDebitRequest(BaseModel):
    """포인트 사용 요청"""

    amount: int = Field(..., gt=0, description="사용 포인트")
    timeout: Optional[float] = Field(None, gt=0, description="작업 제한 시간 (초)")


class PointsUsageHistoryResponse(BaseModel):
    """포인트 사용 내역 조회 응답"""

    user_id: int = Field(..., description="사용자 ID")
    usages: List[PointUsageSchema] = Field(..., description="사용 내역 (최신순)")
    total_count: int = Field(..., description="전체 사용 건수")
    has_next: bool = Field(..., description="다음 페이지 존재 여부")


class PointsIntegrityCheckResponse(BaseModel):
    """잔액 캐시 정합성 검증 응답"""

    status: str = Field(..., description="검증 상태 (OK, STALE, MISMATCH)")
    user_id: int = Field(..., description="사용자 ID")
    recorded_balance: int = Field(..., description="캐시된 잔액")
    calculated_balance: int = Field(..., description="만료 전 블록 잔량 합계")
    expired_unswept: int = Field(0, description="만료되었지만 아직 스윕되지 않은 잔량")
    live_block_count: int = Field(0, description="사용 가능 블록 수")
    verified_at: datetime = Field(..., description="검증 시각")


class BalanceRepairResponse(BaseModel):
    """잔액 캐시 재계산 결과"""

    user_id: int
    previous_balance: int
    repaired_balance: int
    changed: bool


class SweepRequest(BaseModel):
    """만료 스윕 요청"""

    now: Optional[datetime] = Field(None, description="기준 시각 (기본: 현재)")
    limit: Optional[int] = Field(None, gt=0, description="이번 패스에서 처리할 최대 블록 수")


class SweepFailure(BaseModel):
    """스윕 중 실패한 블록"""

    block_id: int
    user_id: Optional[int] = None
    error_code: str
    message: str


class SweepReport(BaseModel):
    """만료 스윕 결과"""

    processed: int = Field(0, description="소멸 처리된 블록 수")
    failed: int = Field(0, description="실패한 블록 수")
    skipped: int = Field(0, description="이미 처리되어 건너뛴 블록 수")
    forfeited_points: int = Field(0, description="소멸된 포인트 합계")
    failures: List[SweepFailure] = Field(default_factory=list)
    started_at: datetime
    finished_at: Optional[datetime] = None
