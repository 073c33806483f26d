"""
포인트 원장 엔진

적립(credit), 사용(debit), 잔액 조회와 잔액 캐시 정합성 관리를 담당합니다.

동시성 모델:
- 모든 변경 작업은 하나의 트랜잭션에서 remaining_points 행을 가장 먼저 잠급니다
  (SELECT ... FOR UPDATE). 같은 사용자의 적립/사용/스윕은 이 행에서 직렬화됩니다.
- remaining_points.version 으로 낙관적 검사도 함께 수행하므로, 행 잠금을 지원하지 않는
  DB(SQLite)에서도 늦게 커밋하는 쪽은 StaleDataError -> 재시도 경로로 빠집니다.
- 잠금 순서는 항상 잔액 행 -> 블록 행 입니다.
- 충돌(StoreConflictError)은 LEDGER_MAX_RETRIES 회까지 지수 백오프로 재시도합니다.
"""

import logging
import time
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, List, Optional, TypeVar

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from pointledger.config import Settings, settings as default_settings
from pointledger.core.exceptions import (
    BaseAPIException,
    InsufficientBalanceError,
    InvariantViolationError,
    NotFoundError,
    OperationTimeoutError,
    StoreConflictError,
    StoreUnavailableError,
    ValidationError,
)
from pointledger.models.points import RemainingPoint
from pointledger.repositories.points_repository import PointsRepository
from pointledger.repositories.user_repository import UserRepository
from pointledger.schemas.points import (
    BalanceRepairResponse,
    PointBlockSchema,
    PointsIntegrityCheckResponse,
    PointsUsageHistoryResponse,
    PointUsageSchema,
)
from pointledger.schemas.user import User as UserSchema
from pointledger.services.allocator import allocate
from pointledger.utils.timezone_utils import ensure_utc, utc_now

logger = logging.getLogger(__name__)

T = TypeVar("T")

# PostgreSQL SQLSTATE
_PG_CONFLICT_CODES = {
    "40001",  # serialization_failure
    "40P01",  # deadlock_detected
    "55P03",  # lock_not_available
}
_PG_UNIQUE_VIOLATION = "23505"
_PG_QUERY_CANCELED = "57014"


class PointService:
    """포인트 원장 비즈니스 로직을 담당하는 서비스"""

    def __init__(self, db: Session, settings: Optional[Settings] = None):
        self.db = db
        self.settings = settings or default_settings
        self.points_repo = PointsRepository(db)
        self.user_repo = UserRepository(db)

    # ------------------------------------------------------------------
    # 조회
    # ------------------------------------------------------------------

    def get_balance(self, user_id: int) -> int:
        """사용자 잔액 조회

        Args:
            user_id: 사용자 ID

        Returns:
            int: 잔액 캐시 값 (레코드가 없으면 0)

        Raises:
            NotFoundError: 사용자가 없는 경우
        """
        with self._store_errors("get_balance"):
            self._resolve_user(user_id)
            balance = self.points_repo.get_balance(user_id)
        return balance or 0

    def get_live_blocks(self, user_id: int) -> List[PointBlockSchema]:
        """사용 가능 블록 목록 (차감될 순서대로)"""
        with self._store_errors("get_live_blocks"):
            self._resolve_user(user_id)
            blocks = self.points_repo.get_live_blocks(user_id, utc_now())
        return [PointBlockSchema.model_validate(block) for block in blocks]

    def get_usage_history(
        self, user_id: int, limit: int = 50, offset: int = 0
    ) -> PointsUsageHistoryResponse:
        """사용 내역 조회 (최신순)

        Args:
            user_id: 사용자 ID
            limit: 페이지 크기 (최대 100)
            offset: 오프셋
        """
        if limit > 100:
            limit = 100

        with self._store_errors("get_usage_history"):
            self._resolve_user(user_id)
            usages, total_count = self.points_repo.get_usages(
                user_id, limit=limit, offset=offset
            )

        return PointsUsageHistoryResponse(
            user_id=user_id,
            usages=usages,
            total_count=total_count,
            has_next=offset + limit < total_count,
        )

    def verify_user_integrity(self, user_id: int) -> PointsIntegrityCheckResponse:
        """잔액 캐시 정합성 검증

        캐시는 (만료 전 블록 잔량) + (만료되었지만 아직 스윕되지 않은 잔량) 과 같아야 합니다.
        - OK: 캐시 == 만료 전 블록 잔량 합계
        - STALE: 차이가 전부 스윕 대기 중인 만료 블록 (허용된 지연)
        - MISMATCH: 그 외 - 버그 또는 데이터 손상
        """
        now = utc_now()
        with self._store_errors("verify_user_integrity"):
            self._resolve_user(user_id)
            recorded = self.points_repo.get_balance(user_id) or 0
            live_blocks = self.points_repo.get_live_blocks(user_id, now)
            calculated = sum(block.remaining_amount for block in live_blocks)
            expired_unswept = self.points_repo.sum_expired_unswept(user_id, now)

        if recorded != calculated + expired_unswept:
            status = "MISMATCH"
            logger.warning(
                f"Points integrity mismatch for user {user_id}: "
                f"recorded={recorded}, calculated={calculated}, expired_unswept={expired_unswept}"
            )
        elif expired_unswept > 0:
            status = "STALE"
            logger.info(
                f"User {user_id} has {expired_unswept} expired points awaiting sweep"
            )
        else:
            status = "OK"

        return PointsIntegrityCheckResponse(
            status=status,
            user_id=user_id,
            recorded_balance=recorded,
            calculated_balance=calculated,
            expired_unswept=expired_unswept,
            live_block_count=len(live_blocks),
            verified_at=now,
        )

    # ------------------------------------------------------------------
    # 변경
    # ------------------------------------------------------------------

    def credit(
        self,
        user_id: int,
        amount: int,
        expires_at: datetime,
        timeout: Optional[float] = None,
    ) -> PointBlockSchema:
        """포인트 적립

        Args:
            user_id: 사용자 ID
            amount: 적립 포인트 (양수)
            expires_at: 만료 시각 (naive 값은 UTC로 간주)
            timeout: 작업 제한 시간 (초)

        Returns:
            PointBlockSchema: 생성된 적립 블록

        Raises:
            ValidationError: 금액이 0 이하이거나 만료 시각이 이미 지난 경우
            NotFoundError: 사용자가 없는 경우
        """
        self._validate_amount(amount)
        expires_at = ensure_utc(expires_at)
        if expires_at is None:
            raise ValidationError("expires_at is required")
        if self.settings.LEDGER_REJECT_PAST_EXPIRY and expires_at <= utc_now():
            raise ValidationError(
                "Expiry must be in the future",
                details={"expires_at": expires_at.isoformat()},
            )
        with self._store_errors("credit"):
            self._resolve_user(user_id)

        def work(now: datetime) -> PointBlockSchema:
            balance = self._lock_or_create_balance(user_id, now)
            block = self.points_repo.add_block(
                user_id=user_id, amount=amount, earned_at=now, expires_at=expires_at
            )
            self._adjust_balance(balance, amount, now)
            return PointBlockSchema.model_validate(block)

        block = self._run_in_transaction("credit", work, timeout)
        logger.info(
            f"Credited {amount} points to user {user_id} (block {block.id}, expires {expires_at.isoformat()})"
        )
        return block

    def debit(
        self, user_id: int, amount: int, timeout: Optional[float] = None
    ) -> PointUsageSchema:
        """포인트 사용 - 만료 임박 블록부터 차감

        Args:
            user_id: 사용자 ID
            amount: 사용 포인트 (양수)
            timeout: 작업 제한 시간 (초)

        Returns:
            PointUsageSchema: 사용 내역 (블록별 상세 포함)

        Raises:
            ValidationError: 금액이 0 이하인 경우
            NotFoundError: 사용자가 없는 경우
            InsufficientBalanceError: 사용 가능 잔량이 부족한 경우 (변경 없음)
            InvariantViolationError: 잔액 캐시가 음수가 되는 경우
        """
        self._validate_amount(amount)
        with self._store_errors("debit"):
            self._resolve_user(user_id)

        def work(now: datetime) -> PointUsageSchema:
            balance = self._lock_or_create_balance(user_id, now)
            blocks = self.points_repo.get_live_blocks(user_id, now, for_update=True)

            total_available = sum(block.remaining_amount for block in blocks)
            if total_available < amount:
                raise InsufficientBalanceError(
                    requested=amount,
                    available=total_available,
                    message=f"Not enough points available for user id: {user_id}. "
                    f"Required: {amount}, Available: {total_available}",
                )

            allocation = allocate(amount, blocks)
            if not allocation.is_satisfied:
                raise InvariantViolationError(
                    "Allocation did not cover a pre-checked amount",
                    details={"requested": amount, "allocated": allocation.allocated},
                )

            usage = self.points_repo.add_usage(
                user_id=user_id,
                amount=amount,
                used_at=now,
                draws=[(draw.block, draw.amount) for draw in allocation.draws],
            )
            self._adjust_balance(balance, -amount, now)
            return PointUsageSchema.model_validate(usage)

        usage = self._run_in_transaction("debit", work, timeout)
        logger.info(
            f"Debited {amount} points from user {user_id} "
            f"(usage {usage.id}, {len(usage.details)} blocks)"
        )
        return usage

    def forfeit_block(
        self,
        block_id: int,
        user_id: int,
        now: Optional[datetime] = None,
        timeout: Optional[float] = None,
    ) -> int:
        """만료 블록의 잔량 소멸 (스윕의 블록 단위 처리)

        잔액 캐시를 블록 잔량만큼 줄이고 블록 잔량을 0으로 만든 뒤 소멸 기록을 남깁니다.
        이미 0이거나 아직 만료되지 않은 블록이면 아무 것도 하지 않고 0을 반환합니다.

        Returns:
            int: 소멸된 포인트
        """
        cutoff = ensure_utc(now)

        def work(current: datetime) -> int:
            as_of = cutoff or current
            balance = self._lock_or_create_balance(user_id, current)
            block = self.points_repo.lock_block(block_id)
            if block is None or block.user_id != user_id:
                raise NotFoundError(
                    f"Point block {block_id} not found for user {user_id}",
                    details={"block_id": block_id, "user_id": user_id},
                )
            if block.remaining_amount <= 0 or ensure_utc(block.expires_at) > as_of:
                return 0

            forfeited = block.remaining_amount
            self._adjust_balance(balance, -forfeited, current)
            block.remaining_amount = 0
            self.points_repo.add_forfeiture(
                user_id=user_id,
                block_id=block_id,
                amount=forfeited,
                forfeited_at=current,
            )
            return forfeited

        forfeited = self._run_in_transaction("forfeit_block", work, timeout)
        if forfeited:
            logger.info(
                f"Forfeited {forfeited} expired points from block {block_id} (user {user_id})"
            )
        return forfeited

    def repair_balance(
        self, user_id: int, timeout: Optional[float] = None
    ) -> BalanceRepairResponse:
        """잔액 캐시 재계산 (감사 로그를 남기는 명시적 복구 경로)

        잔량이 남은 모든 블록(만료 전 + 스윕 대기)의 합으로 캐시를 다시 씁니다.
        스윕 대기분을 포함해야 이후 스윕이 캐시를 음수로 만들지 않습니다.
        """
        with self._store_errors("repair_balance"):
            self._resolve_user(user_id)

        def work(now: datetime) -> BalanceRepairResponse:
            balance = self._lock_or_create_balance(user_id, now)
            derived = self.points_repo.sum_live_remaining(
                user_id, now
            ) + self.points_repo.sum_expired_unswept(user_id, now)
            previous = balance.total_remaining_points
            if previous != derived:
                balance.total_remaining_points = derived
                balance.last_updated_at = now
            return BalanceRepairResponse(
                user_id=user_id,
                previous_balance=previous,
                repaired_balance=derived,
                changed=previous != derived,
            )

        result = self._run_in_transaction("repair_balance", work, timeout)
        if result.changed:
            logger.warning(
                f"Repaired balance for user {user_id}: {result.previous_balance} -> {result.repaired_balance}"
            )
        else:
            logger.info(f"Balance for user {user_id} already consistent ({result.repaired_balance})")
        return result

    # ------------------------------------------------------------------
    # 내부 헬퍼
    # ------------------------------------------------------------------

    @staticmethod
    def _validate_amount(amount: int) -> None:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValidationError("Amount must be positive", details={"amount": amount})

    def _resolve_user(self, user_id: int) -> UserSchema:
        user = self.user_repo.resolve(user_id)
        if user is None:
            raise NotFoundError("User not found", details={"user_id": user_id})
        return user

    def _lock_or_create_balance(self, user_id: int, now: datetime) -> RemainingPoint:
        """사용자 잔액 행 잠금 (없으면 생성) - 모든 변경 작업의 첫 단계"""
        balance = self.points_repo.lock_balance(user_id)
        if balance is None:
            balance = self.points_repo.add_balance(user_id, now)
        return balance

    def _adjust_balance(
        self, balance: RemainingPoint, delta: int, now: datetime
    ) -> RemainingPoint:
        """잔액 캐시 증감 - 음수가 되면 InvariantViolationError 로 트랜잭션 중단"""
        new_total = balance.total_remaining_points + delta
        if new_total < 0:
            logger.error(
                f"Remaining points for user {balance.user_id} would become negative: "
                f"current={balance.total_remaining_points}, delta={delta}"
            )
            raise InvariantViolationError(
                "Remaining points cannot be negative",
                details={
                    "user_id": balance.user_id,
                    "current": balance.total_remaining_points,
                    "delta": delta,
                },
            )

        balance.total_remaining_points = new_total
        balance.last_updated_at = now
        return balance

    def _ensure_clean_session(self) -> None:
        """이전 조회로 열린 트랜잭션이 있으면 정리 - 트랜잭션 경계는 엔진이 소유"""
        if self.db.in_transaction():
            self.db.rollback()

    def _apply_statement_timeout(self, deadline: Optional[float]) -> None:
        if deadline is None or self.db.get_bind().dialect.name != "postgresql":
            return
        remaining_ms = max(1, int((deadline - time.monotonic()) * 1000))
        self.db.execute(text(f"SET LOCAL statement_timeout = {remaining_ms}"))

    @staticmethod
    def _check_deadline(operation: str, deadline: Optional[float]) -> None:
        if deadline is not None and time.monotonic() >= deadline:
            raise OperationTimeoutError(
                f"{operation} timed out before commit",
                details={"operation": operation},
            )

    def _translate_store_error(
        self, error: Exception, operation: str, deadline: Optional[float]
    ) -> BaseAPIException:
        """DB 예외를 원장 예외로 변환"""
        if deadline is not None and time.monotonic() >= deadline:
            return OperationTimeoutError(
                f"{operation} timed out before commit",
                details={"operation": operation},
            )

        if isinstance(error, StaleDataError):
            return StoreConflictError(
                "Balance record was modified concurrently",
                details={"operation": operation},
            )

        orig = getattr(error, "orig", None)
        pgcode = getattr(orig, "pgcode", None)
        message = str(orig or error)

        if isinstance(error, IntegrityError):
            if pgcode == _PG_UNIQUE_VIOLATION or "UNIQUE constraint failed" in message:
                return StoreConflictError(
                    "Balance record was created concurrently",
                    details={"operation": operation},
                )
            return InvariantViolationError(
                "Ledger constraint violated",
                details={"operation": operation, "error": message},
            )

        if pgcode in _PG_CONFLICT_CODES or "database is locked" in message:
            return StoreConflictError(
                "Ledger store contention",
                details={"operation": operation, "error": message},
            )

        if pgcode == _PG_QUERY_CANCELED:
            return OperationTimeoutError(
                f"{operation} statement timed out",
                details={"operation": operation},
            )

        return StoreUnavailableError(
            "Ledger store unavailable",
            details={"operation": operation, "error": message},
        )

    @contextmanager
    def _store_errors(self, operation: str):
        """조회 작업의 DB 예외를 원장 예외로 변환"""
        try:
            yield
        except DBAPIError as e:
            logger.error(f"Store error during {operation}: {str(e)}")
            raise self._translate_store_error(e, operation, None) from e

    def _run_in_transaction(
        self,
        operation: str,
        work: Callable[[datetime], T],
        timeout: Optional[float] = None,
    ) -> T:
        """work 를 하나의 트랜잭션으로 실행 - 충돌 시 롤백 후 재시도

        work 는 시도마다 새로운 현재 시각을 받아 실행되며, 예외가 나면 모든 변경이 롤백됩니다.
        """
        if timeout is None:
            timeout = self.settings.LEDGER_OPERATION_TIMEOUT_SECONDS
        deadline = time.monotonic() + timeout if timeout and timeout > 0 else None
        max_retries = max(1, self.settings.LEDGER_MAX_RETRIES)
        last_conflict: Optional[StoreConflictError] = None

        for attempt in range(max_retries):
            self._ensure_clean_session()
            try:
                self._check_deadline(operation, deadline)
                self._apply_statement_timeout(deadline)
                result = work(utc_now())
                self.db.flush()
                self._check_deadline(operation, deadline)
                self.db.commit()
                return result
            except (StaleDataError, DBAPIError) as e:
                self.db.rollback()
                error = self._translate_store_error(e, operation, deadline)
                if not isinstance(error, StoreConflictError):
                    logger.error(f"{operation} failed: {error.error_code} {str(e)}")
                    raise error from e

                last_conflict = error
                if attempt == max_retries - 1:
                    break

                backoff = self.settings.LEDGER_RETRY_BACKOFF_SECONDS * (2**attempt)
                if deadline is not None:
                    backoff = min(backoff, max(0.0, deadline - time.monotonic()))
                logger.warning(
                    f"{operation} conflict on attempt {attempt + 1}/{max_retries}, retrying in {backoff:.3f}s"
                )
                time.sleep(backoff)
            except Exception:
                self.db.rollback()
                raise

        logger.error(f"{operation} failed after {max_retries} attempts due to contention")
        raise StoreConflictError(
            f"{operation} failed after {max_retries} attempts due to concurrent modification",
            details={
                "operation": operation,
                "attempts": max_retries,
                "last_error": last_conflict.message if last_conflict else None,
            },
        )
