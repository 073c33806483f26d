"""
포인트 원장 데이터 모델

적립 단위(PointBlock)마다 독립적인 만료 시각을 가지며, 사용(PointUsage)은
만료 임박 순으로 여러 블록에서 차감된 내역(PointUsageDetail)으로 구성됩니다.

원칙:
1. 추가 전용(Append-only): 블록/사용 내역은 삭제되지 않음. 블록의 remaining_amount만 갱신
2. 정합성(Integrity): remaining_points.total_remaining_points 는 만료되지 않은
   블록들의 remaining_amount 합과 항상 일치하도록 같은 트랜잭션에서 갱신
3. 직렬화(Serialization): remaining_points 행이 사용자 단위 락 역할을 하며,
   version 컬럼으로 갱신 손실(lost update)을 감지
"""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from pointledger.models.base import BaseModel, BigIntPK


class PointBlock(BaseModel):
    """적립 블록 - 한 번의 적립으로 생긴 포인트 묶음"""

    __tablename__ = "point_blocks"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_point_blocks_amount_positive"),
        CheckConstraint(
            "remaining_amount >= 0 AND remaining_amount <= amount",
            name="ck_point_blocks_remaining_range",
        ),
        # 사용 가능 블록 조회 (user_id, expires_at > now ORDER BY expires_at)
        Index("idx_point_blocks_user_expires", "user_id", "expires_at"),
        # 만료 스윕 조회 (expires_at <= now AND remaining_amount > 0)
        Index("idx_point_blocks_expires_remaining", "expires_at", "remaining_amount"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("users.id"), nullable=False
    )
    # 최초 적립량
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    # 남은 수량 - 사용/만료 시 감소
    remaining_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    earned_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def __repr__(self):
        return (
            f"<PointBlock(id={self.id}, user_id={self.user_id}, "
            f"remaining={self.remaining_amount}/{self.amount}, expires_at={self.expires_at})>"
        )


class PointUsage(BaseModel):
    """포인트 사용 1건 - 생성 후 변경되지 않음"""

    __tablename__ = "point_usages"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_point_usages_amount_positive"),
        Index("idx_point_usages_user_used_at", "user_id", "used_at"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("users.id"), nullable=False
    )
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    used_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # 상세 내역은 사용 건에 종속 (삽입 순서 = 블록 차감 순서)
    details: Mapped[List["PointUsageDetail"]] = relationship(
        back_populates="usage",
        cascade="all, delete-orphan",
        order_by="PointUsageDetail.id",
    )


class PointUsageDetail(BaseModel):
    """사용 1건 중 특정 블록에서 차감된 양"""

    __tablename__ = "point_usage_details"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_point_usage_details_amount_positive"),
        Index("idx_point_usage_details_block", "block_id"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    usage_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("point_usages.id"), nullable=False
    )
    block_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("point_blocks.id"), nullable=False
    )
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)

    usage: Mapped[PointUsage] = relationship(back_populates="details")
    # 블록은 참조만 함 (소유하지 않음)
    block: Mapped[PointBlock] = relationship()


class RemainingPoint(BaseModel):
    """사용자별 사용 가능 포인트 캐시 (사용자와 1:1)"""

    __tablename__ = "remaining_points"
    __table_args__ = (
        CheckConstraint(
            "total_remaining_points >= 0", name="ck_remaining_points_non_negative"
        ),
    )

    user_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("users.id"), primary_key=True
    )
    total_remaining_points: Mapped[int] = mapped_column(
        BigInteger, nullable=False, default=0
    )
    last_updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    # 낙관적 동시성 제어용 버전 (UPDATE ... WHERE version = :old)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}


class PointForfeiture(BaseModel):
    """만료 스윕으로 소멸된 포인트 기록 (감사용)"""

    __tablename__ = "point_forfeitures"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_point_forfeitures_amount_positive"),
        Index("idx_point_forfeitures_user", "user_id", "forfeited_at"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("users.id"), nullable=False
    )
    block_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("point_blocks.id"), nullable=False
    )
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    forfeited_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
