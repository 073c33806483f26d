"""
포인트 원장 API 라우터

사용자 단위 엔드포인트:
- GET /points/users/{user_id}/balance: 잔액 조회
- POST /points/users/{user_id}/credit: 포인트 적립 (만료 시각 지정)
- POST /points/users/{user_id}/debit: 포인트 사용 (만료 임박 순 차감)
- GET /points/users/{user_id}/usages: 사용 내역 (최신순)
- GET /points/users/{user_id}/blocks: 사용 가능 블록 (차감 순서)
- GET /points/users/{user_id}/integrity: 잔액 캐시 정합성 검증

내부 엔드포인트 (Bearer AUTH_TOKEN 필요):
- POST /points/users/{user_id}/repair: 잔액 캐시 재계산
- POST /points/sweep-expired: 만료 포인트 소멸 (외부 타이머 진입점)
"""

import logging
from typing import List, Optional

from dependency_injector.wiring import Provide, inject
from fastapi import APIRouter, Body, Depends, Path, Query

from pointledger.containers import Container
from pointledger.core.auth_middleware import verify_internal_token
from pointledger.schemas.points import (
    BalanceRepairResponse,
    PointBlockSchema,
    PointsBalanceResponse,
    PointsCreditRequest,
    PointsDebitRequest,
    PointsIntegrityCheckResponse,
    PointsUsageHistoryResponse,
    PointUsageSchema,
    SweepReport,
    SweepRequest,
)
from pointledger.services.expiration_service import ExpirationService
from pointledger.services.point_service import PointService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/points", tags=["points"])


@router.get("/users/{user_id}/balance", response_model=PointsBalanceResponse)
@inject
async def get_balance(
    user_id: int = Path(..., gt=0, description="사용자 ID"),
    point_service: PointService = Depends(Provide[Container.services.point_service]),
) -> PointsBalanceResponse:
    """
    포인트 잔액 조회

    HTTP Status:
        200: 성공
        404: 사용자 없음
    """
    balance = point_service.get_balance(user_id)
    return PointsBalanceResponse(user_id=user_id, balance=balance)


@router.post("/users/{user_id}/credit", response_model=PointBlockSchema)
@inject
async def credit_points(
    request: PointsCreditRequest,
    user_id: int = Path(..., gt=0, description="사용자 ID"),
    point_service: PointService = Depends(Provide[Container.services.point_service]),
) -> PointBlockSchema:
    """
    포인트 적립 - 새 적립 블록 생성

    HTTP Status:
        200: 적립 완료 (생성된 블록 반환)
        404: 사용자 없음
        409: 동시성 충돌 (재시도 가능)
        422: 0 이하 금액 또는 이미 지난 만료 시각
        504: 제한 시간 초과 (변경 없음)
    """
    return point_service.credit(
        user_id=user_id,
        amount=request.amount,
        expires_at=request.expires_at,
        timeout=request.timeout,
    )


@router.post("/users/{user_id}/debit", response_model=PointUsageSchema)
@inject
async def debit_points(
    request: PointsDebitRequest,
    user_id: int = Path(..., gt=0, description="사용자 ID"),
    point_service: PointService = Depends(Provide[Container.services.point_service]),
) -> PointUsageSchema:
    """
    포인트 사용 - 만료 임박 블록부터 차감

    HTTP Status:
        200: 사용 완료 (사용 내역과 블록별 상세 반환)
        400: 잔액 부족 (변경 없음)
        404: 사용자 없음
        409: 동시성 충돌 (재시도 가능)
        504: 제한 시간 초과 (변경 없음)
    """
    return point_service.debit(
        user_id=user_id, amount=request.amount, timeout=request.timeout
    )


@router.get("/users/{user_id}/usages", response_model=PointsUsageHistoryResponse)
@inject
async def get_usage_history(
    user_id: int = Path(..., gt=0, description="사용자 ID"),
    limit: int = Query(50, ge=1, le=100, description="페이지 크기"),
    offset: int = Query(0, ge=0, description="오프셋"),
    point_service: PointService = Depends(Provide[Container.services.point_service]),
) -> PointsUsageHistoryResponse:
    """포인트 사용 내역 조회 (최신순)"""
    return point_service.get_usage_history(user_id, limit=limit, offset=offset)


@router.get("/users/{user_id}/blocks", response_model=List[PointBlockSchema])
@inject
async def get_live_blocks(
    user_id: int = Path(..., gt=0, description="사용자 ID"),
    point_service: PointService = Depends(Provide[Container.services.point_service]),
) -> List[PointBlockSchema]:
    """사용 가능 블록 목록 (차감될 순서대로)"""
    return point_service.get_live_blocks(user_id)


@router.get(
    "/users/{user_id}/integrity", response_model=PointsIntegrityCheckResponse
)
@inject
async def verify_integrity(
    user_id: int = Path(..., gt=0, description="사용자 ID"),
    point_service: PointService = Depends(Provide[Container.services.point_service]),
) -> PointsIntegrityCheckResponse:
    """잔액 캐시 정합성 검증 (OK, STALE, MISMATCH)"""
    return point_service.verify_user_integrity(user_id)


@router.post(
    "/users/{user_id}/repair",
    response_model=BalanceRepairResponse,
    dependencies=[Depends(verify_internal_token)],
)
@inject
async def repair_balance(
    user_id: int = Path(..., gt=0, description="사용자 ID"),
    point_service: PointService = Depends(Provide[Container.services.point_service]),
) -> BalanceRepairResponse:
    """잔액 캐시 재계산 (내부 전용)"""
    logger.info(f"Balance repair requested for user {user_id}")
    return point_service.repair_balance(user_id)


@router.post(
    "/sweep-expired",
    response_model=SweepReport,
    dependencies=[Depends(verify_internal_token)],
)
@inject
async def sweep_expired(
    request: Optional[SweepRequest] = Body(None),
    expiration_service: ExpirationService = Depends(
        Provide[Container.services.expiration_service]
    ),
) -> SweepReport:
    """
    만료 포인트 소멸 - 외부 타이머(cron)가 호출

    블록 단위 실패는 응답의 failures 에 담기며, 다음 호출에서 다시 처리됩니다.
    """
    request = request or SweepRequest()
    return expiration_service.sweep_expired(now=request.now, limit=request.limit)
